"""Tests for the post-link background sync."""

from decimal import Decimal

from sqlalchemy import func, select

from backend.app.models import Transaction
from backend.app.bank_integration.background import run_post_link_sync
from backend.app.bank_integration.tokens import BankTokenStore

from conftest import TEST_USER_ID, make_account, make_transaction


class TestRunPostLinkSync:

    async def test_quick_then_full_sync(self, session_factory, provider, settings, monkeypatch):
        monkeypatch.setattr("backend.app.bank_integration.service.get_settings", lambda: settings)
        provider.accounts = [make_account("acc-1", "Current Account")]
        provider.balances = {"acc-1": {"current": Decimal("10"), "available": Decimal("10"), "currency": "GBP"}}
        provider.transactions = {
            "acc-1": [make_transaction(f"tx-{i:02d}", -1, timestamp=f"2024-03-{i:02d}T09:00:00Z") for i in range(1, 41)]
        }
        async with session_factory() as db:
            await BankTokenStore(db, provider, settings=settings).store_connection(
                TEST_USER_ID, {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
            )

        await run_post_link_sync(TEST_USER_ID, session_factory=session_factory, provider=provider)

        async with session_factory() as db:
            count = (await db.execute(select(func.count(Transaction.id)))).scalar_one()
        assert count == 40
        # quick sync plus full sync
        assert provider.get_accounts_calls == 2

    async def test_reconnect_required_stops_quietly(self, session_factory, provider):
        await run_post_link_sync(TEST_USER_ID, session_factory=session_factory, provider=provider)

        assert provider.get_accounts_calls == 0

    async def test_quick_sync_failure_still_runs_full_sync(self, session_factory, provider, settings):
        async with session_factory() as db:
            await BankTokenStore(db, provider, settings=settings).store_connection(
                TEST_USER_ID, {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
            )
        provider.accounts = [make_account("acc-1", "Current Account")]
        provider.balances = {"acc-1": RuntimeError("unexpected provider payload")}

        # never raises
        await run_post_link_sync(TEST_USER_ID, session_factory=session_factory, provider=provider)

        assert provider.get_accounts_calls == 2
