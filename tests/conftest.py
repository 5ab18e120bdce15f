"""Shared fixtures: in-memory SQL storage, an ASGI client and bearer tokens."""

import os

# Settings are read at import time, so the environment is fixed before kbchat loads
os.environ["STORAGE_BACKEND"] = "sql"
os.environ["DATABASE_URL"] = ""
os.environ["LOCAL_SQLITE_PATH"] = "sqlite+aiosqlite:///:memory:"
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = ""
os.environ["RETRIEVAL_MODE"] = "keyword"
os.environ["STREAM_STRATEGY"] = "passthrough"
os.environ["OPENAI_API_KEY"] = ""
os.environ["EMBEDDING_API_KEY"] = ""
os.environ["LOCAL_AUTH_SECRET"] = "test-secret"
os.environ["AUTH_JWT_AUDIENCE"] = ""
os.environ["REPLAY_DELAY_SECONDS"] = "0"

from typing import AsyncIterator, List, Optional
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from kbchat.db.sql_storage import SQLStorage
from kbchat.db.storage import MESSAGES_TABLE, get_storage
from kbchat.main import app
from kbchat.services.errors import UpstreamError
from kbchat.services.relay import wait_for_pending_persistence
from kbchat.utils.local_tokens import create_local_token

ADMIN = {"user_id": "admin-1", "email": "admin@example.com", "role": "admin"}
USER = {"user_id": "user-1", "email": "user@example.com", "role": "user"}

PEOPLE_CSV = "name,age\nAlice,30\nBob,25"


@pytest_asyncio.fixture
async def storage():
    """Fresh in-memory SQLite storage per test."""
    store = SQLStorage("sqlite+aiosqlite:///:memory:")
    await store.setup()
    yield store
    await wait_for_pending_persistence()
    await store.close()


@pytest_asyncio.fixture
async def api_client(storage):
    """ASGI client with the storage dependency pointed at the test database."""
    app.dependency_overrides[get_storage] = lambda: storage
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(role: str = "user", user_id: Optional[str] = None, email: str = "user@example.com") -> dict:
    token = create_local_token(user_id or str(uuid4()), email, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers() -> dict:
    return auth_headers(role="user", user_id=USER["user_id"], email=USER["email"])


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers(role="admin", user_id=ADMIN["user_id"], email=ADMIN["email"])


def fake_stream(fragments: List[str], fail_at: Optional[int] = None, seen: Optional[list] = None):
    """An ``open_stream`` stand-in yielding the given fragments.

    With ``fail_at`` the iterator raises UpstreamError before that fragment.
    Messages sent upstream are appended to ``seen``.
    """

    async def open_stream(messages) -> AsyncIterator[str]:
        if seen is not None:
            seen.append(messages)

        async def deltas():
            for position, fragment in enumerate(fragments):
                if fail_at is not None and position == fail_at:
                    raise UpstreamError("AI service error (500): upstream went away")
                yield fragment

        return deltas()

    return open_stream


async def count_messages(storage, **filters) -> int:
    return await storage.count_records(MESSAGES_TABLE, filters or None)
