"""Shared test fixtures and configuration for backend tests."""
from typing import List

import pytest
from fastapi.testclient import TestClient

from chatrelay.auth.schemas import Identity
from chatrelay.config import AppSettings, JWTSecrets, MediaSettings, Secrets, StoreSettings
from chatrelay.container import build_services
from chatrelay.conversations.schemas import User
from chatrelay.main import create_app
from chatrelay.realtime.presence import LiveConnection
from chatrelay.store.duckdb_store import DuckDBChatRepository

USERS = ["alice", "bob", "carol", "dave", "erin"]


class Recorder:
    """Stand-in for a WebSocket send: records every event it is given."""

    def __init__(self, fail: bool = False):
        self.events: List[dict] = []
        self.fail = fail

    async def __call__(self, event: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.events.append(event)

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def config(tmp_path):
    """Settings pointing at an in-memory store and a temp upload directory."""
    return AppSettings(
        store=StoreSettings(db_path=":memory:", timeout_seconds=5.0),
        media=MediaSettings(upload_dir=str(tmp_path / "uploads"), max_size_bytes=1024),
        secrets=Secrets(jwt=JWTSecrets(secret_key="chatrelay-test-secret-0123456789abcdef")),
    )


@pytest.fixture
def repository():
    repo = DuckDBChatRepository(db_path=":memory:")
    for name in USERS:
        repo.upsert_user(User(id=name, username=name.capitalize()))
    yield repo
    repo.close()


@pytest.fixture
def services(config, repository):
    return build_services(config, repository=repository)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def presence(services):
    return services.presence


@pytest.fixture
def connect(presence):
    """Register a recording connection for a user; returns its Recorder."""

    async def _connect(user_id: str, fail: bool = False):
        recorder = Recorder(fail=fail)
        connection = LiveConnection(Identity(user_id=user_id, username=user_id), recorder)
        await presence.register(connection)
        recorder.connection = connection
        return recorder

    return _connect


@pytest.fixture
def token(services):
    """Mint a valid bearer token for a user id."""
    return services.verifier.issue


@pytest.fixture
def auth_headers(token):
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {token(user_id)}"}

    return _headers


@pytest.fixture
def api_client(services):
    """TestClient around an app wired to the in-memory services.

    Used as a context manager so HTTP calls and WebSocket sessions share one
    event loop, which the presence groups require.
    """
    with TestClient(create_app(services)) as client:
        yield client
