"""FastAPI dependency that applies the Identity Gate to HTTP requests."""
from typing import Optional

from fastapi import Depends, Header

from chatrelay.container import ChatServices, get_services

from .schemas import Identity


async def get_identity(
    authorization: Optional[str] = Header(None),
    services: ChatServices = Depends(get_services),
) -> Identity:
    """Resolve the caller from ``Authorization: Bearer <token>``.

    Raises:
        Unauthenticated: Rendered as 401 by the app's exception handler.
    """
    return await services.gate.authenticate_header(authorization)
