"""Service container: builds and wires every chatrelay component.

One ``ChatServices`` instance lives on ``app.state.services``. Components get
their collaborators through constructors; there are no module-level
singletons, so tests can build an isolated container around an in-memory
repository.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from starlette.requests import HTTPConnection

from chatrelay.auth.gate import IdentityGate
from chatrelay.auth.service import JWTTokenVerifier, TokenVerifier
from chatrelay.concurrency import KeyedLock
from chatrelay.config import AppSettings
from chatrelay.conversations.service import ConversationStore
from chatrelay.media.service import BlobStore, LocalBlobStore
from chatrelay.membership.service import MembershipManager
from chatrelay.messaging.pipeline import MessagePipeline
from chatrelay.readstate.tracker import ReadStateTracker
from chatrelay.realtime.presence import PresenceRouter
from chatrelay.store.base import ChatRepository
from chatrelay.store.duckdb_store import DuckDBChatRepository
from chatrelay.store.gateway import StoreGateway

logger = logging.getLogger(__name__)


@dataclass
class ChatServices:
    config: AppSettings
    repository: ChatRepository
    store: ConversationStore
    presence: PresenceRouter
    verifier: TokenVerifier
    gate: IdentityGate
    pipeline: MessagePipeline
    read_state: ReadStateTracker
    membership: MembershipManager
    blobs: BlobStore

    def close(self) -> None:
        self.repository.close()


def build_services(
    config: AppSettings,
    repository: Optional[ChatRepository] = None,
    verifier: Optional[TokenVerifier] = None,
    blobs: Optional[BlobStore] = None,
) -> ChatServices:
    """Wire the components for ``config``.

    Args:
        config: Application settings.
        repository: Document store; defaults to DuckDB at ``store.db_path``.
        verifier: Token verifier; defaults to HS256 JWT with the configured secret.
        blobs: Blob store; defaults to the local upload directory.
    """
    repository = repository or DuckDBChatRepository(config.store.db_path)
    gateway = StoreGateway(repository, timeout=config.store.timeout_seconds)

    store = ConversationStore(gateway, config.conversations, locks=KeyedLock())
    presence = PresenceRouter(send_timeout=config.realtime.send_timeout_seconds)
    verifier = verifier or JWTTokenVerifier(
        config.secrets.jwt.secret_key,
        config.secrets.jwt.algorithm,
        config.auth.token_expire_minutes,
    )
    blobs = blobs or LocalBlobStore(
        config.media.upload_dir,
        config.media.public_base_url,
        config.media.max_size_bytes,
    )

    logger.info("Chat services ready (store=%s)", config.store.db_path)
    return ChatServices(
        config=config,
        repository=repository,
        store=store,
        presence=presence,
        verifier=verifier,
        gate=IdentityGate(verifier, store),
        pipeline=MessagePipeline(store, presence),
        read_state=ReadStateTracker(store, presence),
        membership=MembershipManager(store, presence, config.conversations),
        blobs=blobs,
    )


def get_services(connection: HTTPConnection) -> ChatServices:
    """FastAPI dependency: the container of the running app."""
    return connection.app.state.services
