"""Presence Router: live connections and their broadcast groups.

This module tracks which live connections belong to which user and which
broadcast groups each connection has joined. It never holds durable state;
everything here is a projection that a reconnecting client rebuilds by
re-fetching conversations and messages.

Groups:
    - personal group ``user:<id>``: every connection of that user joins it
      on connect; used for cross-conversation notifications
    - conversation group ``conversation:<id>``: joined explicitly by clients
      that are viewing the conversation

Delivery:
    - broadcast() is fire-and-forget; an empty group is a no-op and nothing
      is queued for absent clients
    - sends to one group run concurrently with asyncio.gather()
    - a connection whose send fails, or does not complete within
      ``send_timeout`` seconds, is disconnected and dropped
    - disconnect() marks the connection closed before removing it from its
      groups, so any broadcast still in flight skips it
    - there is no ordering guarantee between different groups

Thread Safety:
    Designed for a single event loop. Group tables are guarded per group key
    by a KeyedLock so concurrent join/leave/broadcast on the same group see a
    consistent member set.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from chatrelay.auth.schemas import Identity
from chatrelay.concurrency import KeyedLock

logger = logging.getLogger(__name__)

SendFn = Callable[[dict], Awaitable[None]]


def personal_group(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_group(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class LiveConnection:
    """One authenticated client connection.

    Attributes:
        id: Server-assigned connection id.
        identity: The identity the connection authenticated as.
        groups: Group keys this connection currently belongs to.
        closed: Set once the connection is being torn down.
    """

    def __init__(
        self, identity: Identity, send: SendFn, connection_id: Optional[str] = None
    ) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.identity = identity
        self.groups: Set[str] = set()
        self.closed = False
        self._send = send

    @classmethod
    def from_websocket(cls, websocket, identity: Identity) -> "LiveConnection":
        return cls(identity, websocket.send_json)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    async def send(self, event: dict) -> None:
        await self._send(event)

    def __repr__(self) -> str:
        return f"LiveConnection(id={self.id!r}, user={self.user_id!r})"


class PresenceRouter:
    """Maps identities to live connections and connections to broadcast groups."""

    def __init__(self, send_timeout: float = 5.0) -> None:
        self.send_timeout = send_timeout

        # group key -> connections currently joined
        self._groups: Dict[str, Set[LiveConnection]] = {}

        # connection id -> connection, for every registered connection
        self._connections: Dict[str, LiveConnection] = {}

        self._locks = KeyedLock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def register(self, connection: LiveConnection) -> None:
        """Track a freshly authenticated connection and join its personal group."""
        self._connections[connection.id] = connection
        await self.join(connection, personal_group(connection.user_id))
        logger.info(
            "[Presence] %s registered (%d live for user)",
            connection, len(self.connections_for(connection.user_id)),
        )

    async def disconnect(self, connection: LiveConnection) -> None:
        """Remove a connection from every group it joined.

        Safe to call more than once.
        """
        connection.closed = True
        self._connections.pop(connection.id, None)
        for group_key in list(connection.groups):
            await self.leave(connection, group_key)
        logger.info("[Presence] %s disconnected", connection)

    # =========================================================================
    # Group membership
    # =========================================================================

    async def join(self, connection: LiveConnection, group_key: str) -> bool:
        """Add a connection to a group. Returns False for a closed connection."""
        if connection.closed:
            return False
        async with self._locks.hold(group_key):
            self._groups.setdefault(group_key, set()).add(connection)
            connection.groups.add(group_key)
        return True

    async def leave(self, connection: LiveConnection, group_key: str) -> None:
        async with self._locks.hold(group_key):
            members = self._groups.get(group_key)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._groups[group_key]
            connection.groups.discard(group_key)

    async def evict(self, user_id: str, group_key: str) -> int:
        """Remove every connection of ``user_id`` from a group."""
        targets = [c for c in self.members(group_key) if c.user_id == user_id]
        for connection in targets:
            await self.leave(connection, group_key)
        return len(targets)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(
        self,
        group_key: str,
        event: dict,
        exclude: Optional[LiveConnection] = None,
    ) -> int:
        """Deliver ``event`` to every connection currently in ``group_key``.

        Args:
            group_key: Group to deliver to.
            event: JSON-serializable event.
            exclude: Optional connection to skip (e.g. the typing client).

        Returns:
            Number of connections the event was delivered to.
        """
        async with self._locks.hold(group_key):
            targets = [
                c for c in self._groups.get(group_key, ())
                if c is not exclude and not c.closed
            ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, event) for conn in targets],
            return_exceptions=True,
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        for conn in failed:
            await self.disconnect(conn)
        return len(targets) - len(failed)

    async def broadcast_to_users(self, user_ids: Iterable[str], event: dict) -> None:
        """Deliver the same event to several users' personal groups."""
        await asyncio.gather(
            *[self.broadcast(personal_group(u), event) for u in dict.fromkeys(user_ids)]
        )

    async def send_each(self, events: Dict[str, dict]) -> None:
        """Deliver a per-user event to each user's personal group."""
        await asyncio.gather(
            *[self.broadcast(personal_group(u), e) for u, e in events.items()]
        )

    async def _safe_send(self, connection: LiveConnection, event: dict) -> bool:
        if connection.closed:
            return False
        try:
            await asyncio.wait_for(connection.send(event), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "[Presence] %s did not accept an event within %.1fs, dropping it",
                connection, self.send_timeout,
            )
            return False
        except Exception as e:
            logger.debug("[Presence] Failed to send to %s: %s", connection, e)
            return False

    # =========================================================================
    # Introspection
    # =========================================================================

    def members(self, group_key: str) -> List[LiveConnection]:
        return list(self._groups.get(group_key, ()))

    def group_size(self, group_key: str) -> int:
        return len(self._groups.get(group_key, ()))

    def connections_for(self, user_id: str) -> List[LiveConnection]:
        return self.members(personal_group(user_id))

    def is_online(self, user_id: str) -> bool:
        return self.group_size(personal_group(user_id)) > 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)
