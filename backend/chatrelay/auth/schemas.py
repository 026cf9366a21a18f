"""Pydantic schemas for the Identity Gate."""
from typing import Optional

from pydantic import BaseModel, Field


class Identity(BaseModel):
    """An authenticated caller.

    Attributes:
        user_id: Id of the user the credential was issued for.
        username: Username resolved from the user directory.
    """
    user_id: str = Field(..., description="Authenticated user id")
    username: str = Field(default="", description="Username of the caller")


class TokenClaims(BaseModel):
    """Claims the gate needs from a verified credential."""
    sub: str
    exp: Optional[int] = None
