"""User lookup endpoints.

Endpoints:
    GET /users/me             - the caller's profile
    GET /users/search?q=...   - username prefix search
"""
from fastapi import APIRouter, Depends, Query

from chatrelay.auth.dependencies import get_identity
from chatrelay.auth.schemas import Identity
from chatrelay.container import ChatServices, get_services
from chatrelay.conversations.serializers import serialize_user
from chatrelay.errors import NotFound

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me")
async def me(
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    user = await services.store.get_user(identity.user_id)
    if user is None:
        raise NotFound("User not found")
    return serialize_user(user.id, {user.id: user})


@router.get("/search")
async def search(
    q: str = Query(..., min_length=1, description="Username prefix"),
    limit: int = Query(20, ge=1, le=50),
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    """Users whose username starts with ``q``, excluding the caller."""
    users = await services.store.search_users(q.strip(), limit + 1)
    results = [u for u in users if u.id != identity.user_id][:limit]
    return {"users": [serialize_user(u.id, {u.id: u}) for u in results]}
