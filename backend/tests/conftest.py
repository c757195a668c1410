"""Shared test fixtures and configuration for backend tests."""
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.auth.verifier import IdentityVerifier
from app.chat.manager import ChatManager, set_manager
from app.chat.registry import Connection
from app.files.service import AttachmentStore
from app.main import app
from app.messages.store import MessageStore
from helpers import TEST_SECRET, FakeWebSocket, make_token


@pytest.fixture
def store():
    """An in-memory message store."""
    s = MessageStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def attachments(tmp_path):
    return AttachmentStore(str(tmp_path / "uploads"), max_bytes=1024)


@pytest.fixture
def verifier():
    return IdentityVerifier(TEST_SECRET)


@pytest.fixture
def chat_manager(verifier, store, attachments):
    """A fresh manager installed as the process-wide one.

    Heartbeats are slow enough never to fire during a test.
    """
    mgr = ChatManager(verifier, store, attachments, ping_interval=60.0, pong_timeout=30.0)
    set_manager(mgr)
    yield mgr
    set_manager(None)


@pytest_asyncio.fixture
async def live_manager(chat_manager):
    """The manager for coroutine tests; closes leftover connections after."""
    yield chat_manager
    await chat_manager.shutdown()


@pytest.fixture
def api_client(chat_manager):
    """TestClient sharing one event loop across all WebSocket sessions."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_connection(live_manager):
    """Factory connecting a FakeWebSocket through the manager."""
    async def _make(user_id=None, username=None, fail=False):
        ws = FakeWebSocket(fail=fail)
        token = make_token(user_id, username or user_id) if user_id else None
        conn = await live_manager.connect(ws, token)
        return conn, ws
    return _make


@pytest.fixture
def raw_connection():
    """Factory for unregistered Connection objects over FakeWebSockets."""
    def _make(fail=False):
        ws = FakeWebSocket(fail=fail)
        return Connection(ws), ws
    return _make
