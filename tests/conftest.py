"""
Shared fixtures for the bank sync test suite.

Every test gets a fresh in-memory SQLite database (aiosqlite) with all
tables created, and a scripted FakeBankProvider in place of TrueLayer.
"""

import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("TRUELAYER_CLIENT_ID", "test-client")
os.environ.setdefault("TRUELAYER_CLIENT_SECRET", "test-client-secret")

from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.config import Settings
from backend.database import Base
from backend.app import models  # noqa: F401  (registers tables on Base.metadata)
from backend.app.bank_integration.errors import ProviderUnauthorized
from backend.app.bank_integration.oauth_state import InMemoryOAuthStateStore
from backend.app.bank_integration.providers.base import BaseBankProvider
from backend.app.bank_integration.service import BankSyncService

TEST_USER_ID = "user-1"
TEST_USER_ID_2 = "user-2"


class FakeBankProvider(BaseBankProvider):
    """
    Scripted provider.

    `transactions` and `balances` map account ids to either the value to
    return or an exception to raise.
    """

    name = "truelayer"

    def __init__(self, settings):
        super().__init__(settings)
        self.accounts: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Any] = {}
        self.balances: Dict[str, Any] = {}
        self.unauthorized = False
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.refresh_omits_refresh_token = False
        self.refresh_tokens_seen: List[str] = []
        self.get_accounts_calls = 0
        self.transaction_ranges: List[tuple] = []

    @property
    def refresh_calls(self) -> int:
        return len(self.refresh_tokens_seen)

    def build_auth_url(self, state: str) -> str:
        return f"https://auth.example.test/?state={state}"

    async def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        if self.exchange_error:
            raise self.exchange_error
        return {"access_token": f"access-{code}", "refresh_token": f"refresh-{code}", "expires_in": 3600}

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        self.refresh_tokens_seen.append(refresh_token)
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error

        n = self.refresh_calls
        response = {"access_token": f"access-refreshed-{n}", "expires_in": 3600}
        if not self.refresh_omits_refresh_token:
            response["refresh_token"] = f"refresh-rotated-{n}"
        return response

    async def get_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        self.get_accounts_calls += 1
        # let concurrent callers interleave
        await asyncio.sleep(0)
        if self.unauthorized:
            raise ProviderUnauthorized()
        return list(self.accounts)

    async def get_transactions(self, access_token, account_id, from_date=None, to_date=None):
        self.transaction_ranges.append((from_date, to_date))
        value = self.transactions.get(account_id, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def get_balance(self, access_token, account_id):
        value = self.balances.get(account_id)
        if isinstance(value, Exception):
            raise value
        if value is None:
            return {"current": Decimal("0"), "available": Decimal("0"), "currency": "GBP"}
        return value


def make_account(account_id: str, name: str, currency: str = "GBP") -> Dict[str, Any]:
    return {"account_id": account_id, "display_name": name, "currency": currency}


def make_transaction(tx_id: str, amount: float, timestamp: str = "2024-03-01T10:00:00Z", **extra) -> Dict[str, Any]:
    tx = {
        "transaction_id": tx_id,
        "amount": amount,
        "currency": "GBP",
        "timestamp": timestamp,
        "description": f"Transaction {tx_id}",
    }
    tx.update(extra)
    return tx


@pytest.fixture
def settings() -> Settings:
    return Settings(
        truelayer_client_id="test-client",
        truelayer_client_secret="test-client-secret",
        truelayer_env="sandbox",
        db_retry_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider(settings) -> FakeBankProvider:
    return FakeBankProvider(settings)


@pytest.fixture
def state_store() -> InMemoryOAuthStateStore:
    return InMemoryOAuthStateStore(ttl_seconds=600)


@pytest.fixture
def service(db_session, provider, state_store, settings) -> BankSyncService:
    return BankSyncService(db_session, provider=provider, state_store=state_store, settings=settings)


@pytest_asyncio.fixture
async def connected(service):
    """A user with a stored, unexpired connection."""
    await service.tokens.store_connection(
        TEST_USER_ID,
        {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
    )
    return TEST_USER_ID


def fail_next_execute(monkeypatch, session, message="Connection terminated unexpectedly"):
    """Make the session's next execute() raise a transient error. Returns the failure counter."""
    real_execute = session.execute
    failures = {"count": 0}

    async def flaky_execute(*args, **kwargs):
        if not failures["count"]:
            failures["count"] += 1
            raise RuntimeError(message)
        return await real_execute(*args, **kwargs)

    monkeypatch.setattr(session, "execute", flaky_execute)
    return failures
