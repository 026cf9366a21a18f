"""Token verification backed by PyJWT.

The auth collaborator is reduced to one question: does this token carry a
valid subject? ``TokenVerifier`` is the seam; ``JWTTokenVerifier`` answers it
for HS256 tokens signed with the configured secret.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from chatrelay.errors import AuthErrorKind, Unauthenticated

from .schemas import TokenClaims

logger = logging.getLogger(__name__)


class TokenVerifier(ABC):
    """Validates a bearer token and returns its claims."""

    @abstractmethod
    def verify(self, token: str) -> TokenClaims:
        """Return the claims of ``token`` or raise ``Unauthenticated``."""


class JWTTokenVerifier(TokenVerifier):
    """HS256 JWT verifier.

    Args:
        secret_key: Shared signing secret.
        algorithm: JWT algorithm; HS256 unless configured otherwise.
        expire_minutes: Lifetime of tokens minted by ``issue``.
    """

    def __init__(
        self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 60
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated(AuthErrorKind.EXPIRED, "Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug("[Auth] Rejected token: %s", exc)
            raise Unauthenticated(AuthErrorKind.MALFORMED, "Token is invalid") from exc

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise Unauthenticated(AuthErrorKind.MALFORMED, "Token has no subject")
        return TokenClaims(sub=subject, exp=payload.get("exp"))

    def issue(self, user_id: str, expires_in: Optional[timedelta] = None) -> str:
        """Sign a token for ``user_id``. Used by deployments and tests."""
        now = datetime.now(timezone.utc)
        if expires_in is None:
            expires_in = timedelta(minutes=self._expire_minutes)
        payload = {"sub": user_id, "iat": now, "exp": now + expires_in}
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
