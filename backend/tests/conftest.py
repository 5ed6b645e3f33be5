"""Shared test fixtures and configuration for backend tests."""
import asyncio
import time

import jwt
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from roomwire.chat.connection import Connection
from roomwire.chat.hub import ChatHub
from roomwire.chat.schemas import Participant
from roomwire.config import (
    AppSettings,
    ChatSettings,
    FileSettings,
    HistorySettings,
    JWTSecrets,
    Secrets,
    set_config,
)
from roomwire.main import app

TEST_SECRET = "roomwire-test-secret-key-0123456789abcdef"


class FakeTransport:
    """Stands in for a WebSocket: records every event written to it."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent = []
        self.fail = fail
        self.delay = delay
        self.closed_with = None

    async def send_json(self, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("peer went away")
        self.sent.append(payload)

    async def close(self, code=1000):
        self.closed_with = code

    def of_type(self, event_type):
        return [p for p in self.sent if p["type"] == event_type]

    def texts(self):
        """Contents of every chat message received, in order."""
        return [p["message"]["content"] for p in self.of_type("message")]


def make_token(sub, name=None, expires_in=3600, secret=TEST_SECRET, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + expires_in, **claims}
    if name is not None:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm="HS256")


async def drain(*connections):
    """Wait until every connection's writer has caught up."""
    for connection in connections:
        await connection.flush()


@pytest.fixture
def test_config(tmp_path):
    """Install in-memory settings for the app and hub singletons."""
    config = AppSettings(
        chat=ChatSettings(typing_timeout_seconds=0.2, send_timeout_seconds=1.0),
        history=HistorySettings(db_path=":memory:", purge_interval_minutes=0),
        files=FileSettings(
            upload_dir=str(tmp_path / "uploads"),
            db_path=":memory:",
            public_base_url="http://testserver",
            max_file_size_mb=1,
        ),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    ChatHub.reset_instance()
    set_config(config)
    yield config
    ChatHub.reset_instance()
    set_config(None)


@pytest.fixture
def hub(test_config):
    """A standalone hub for engine-level tests."""
    hub = ChatHub.from_config(test_config)
    yield hub
    hub.log.close()
    hub.blobs.close()


@pytest_asyncio.fixture
async def connect(hub):
    """Factory for admitted connections on ``hub`` backed by FakeTransport."""
    created = []

    def _connect(participant_id, display_name=None, transport=None, **kwargs):
        connection = Connection(
            transport or FakeTransport(),
            Participant(participant_id, display_name or participant_id.title()),
            on_dead=hub._on_dead,
            **kwargs,
        )
        connection.start()
        hub.registry.attach(connection)
        created.append(connection)
        return connection

    yield _connect
    # Stop every writer task so the event loop can shut down cleanly.
    for connection in created:
        await connection.close()


@pytest.fixture
def api_client(test_config):
    """TestClient running the app lifespan, so all sockets share one loop."""
    with TestClient(app) as client:
        yield client
