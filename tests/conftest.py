import os
from typing import AsyncGenerator, Callable, Generator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process ledger store; no MongoDB needed
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("MONGODB_DB_NAME", "schoolpoints_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from app.schemas.ledger import ROLE_STUDENT, EntrySign, Owner  # noqa: E402
from app.storage.base import use_store  # noqa: E402
from app.storage.memory import MemoryLedgerStore  # noqa: E402


@pytest.fixture
def store() -> Generator[MemoryLedgerStore, None, None]:
    s = MemoryLedgerStore(lock_timeout=2.0)
    use_store(s)
    yield s
    use_store(None)


@pytest.fixture
def make_owner(store: MemoryLedgerStore) -> Callable:
    async def _make(user_code: str, role_id: int = ROLE_STUDENT, full_name: str = "") -> Owner:
        return await store.add_owner(
            Owner(id=f"u-{user_code.lower()}", user_code=user_code, role_id=role_id, full_name=full_name or user_code)
        )

    return _make


@pytest.fixture
def fund(store: MemoryLedgerStore) -> Callable:
    """Credit an owner through the normal adjustment path."""

    async def _fund(owner: Owner, amount: int) -> None:
        from app.services import points as points_service
        await points_service.adjust_points([owner.id], "u-system", amount=amount, sign=EntrySign.CREDIT)

    return _fund


@pytest_asyncio.fixture
async def client(store: MemoryLedgerStore) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def login(client: AsyncClient) -> Callable:
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME

    def _login(owner: Owner) -> AsyncClient:
        client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"user_id": owner.id}))
        return client

    return _login
