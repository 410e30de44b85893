import os
from datetime import datetime, timedelta

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./interview_credits_test.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ADMIN_ACCOUNT_IDS", "admin-account")
os.environ.setdefault("STORE_RETRY_DELAY_SEC", "0")
os.environ.setdefault("DB_MIGRATIONS_ON_STARTUP", "0")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from interview_credits.db.async_session import build_engine, build_session_factory, get_session_factory
from interview_credits.db.base import Base
import interview_credits.models  # noqa: F401
from interview_credits.services.account_locks import AccountLocks
from interview_credits.services.ledger_service import LedgerService
from interview_credits.services.rule_engine import RuleEngine
from interview_credits.services.session_service import InterviewSessionService


class FakeClock:
    """Deterministic utc clock for duration and interval checks."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def auth_header(account_id: str) -> dict:
    token = jwt.encode({"sub": account_id}, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(session_factory, clock):
    return LedgerService(session_factory, locks=AccountLocks(), clock=clock)


@pytest.fixture
def rule_engine(session_factory, ledger):
    return RuleEngine(session_factory, ledger)


@pytest.fixture
def session_service(session_factory, ledger):
    return InterviewSessionService(session_factory, ledger)


@pytest_asyncio.fixture
async def client(session_factory):
    from interview_credits.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_session_factory, None)
