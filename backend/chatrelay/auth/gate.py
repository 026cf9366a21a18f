"""Identity Gate: bearer credential to Identity.

Applied once per WebSocket handshake and once per HTTP request. A refused
credential never reaches the conversation store and a refused connection
never joins a broadcast group. There are no retries.
"""
import logging
from typing import Optional

from chatrelay.conversations.service import ConversationStore
from chatrelay.errors import AuthErrorKind, Unauthenticated

from .schemas import Identity
from .service import TokenVerifier

logger = logging.getLogger(__name__)


def extract_bearer(header: Optional[str]) -> str:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not header or not header.strip():
        raise Unauthenticated(AuthErrorKind.MISSING, "Authorization header is missing")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated(AuthErrorKind.MALFORMED, "Expected a Bearer token")
    return token.strip()


class IdentityGate:
    """Turns a credential into an Identity, or refuses it."""

    def __init__(self, verifier: TokenVerifier, store: ConversationStore) -> None:
        self._verifier = verifier
        self._store = store

    async def authenticate(self, token: Optional[str]) -> Identity:
        """Validate ``token`` and resolve the user it names.

        Raises:
            Unauthenticated: kind is ``missing``, ``malformed``, ``expired``
                or ``unknownIdentity``.
        """
        if not token:
            raise Unauthenticated(AuthErrorKind.MISSING, "No credential supplied")

        claims = self._verifier.verify(token)
        user = await self._store.get_user(claims.sub)
        if user is None:
            logger.warning("[Auth] Token for unknown user %s", claims.sub)
            raise Unauthenticated(AuthErrorKind.UNKNOWN_IDENTITY, "Unknown identity")
        return Identity(user_id=user.id, username=user.username)

    async def authenticate_header(self, header: Optional[str]) -> Identity:
        return await self.authenticate(extract_bearer(header))
