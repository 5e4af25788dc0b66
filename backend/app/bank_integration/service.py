"""
Bank Sync Service

Orchestrates the bank link lifecycle for a user:
- OAuth connect/callback (state issue + validation, code exchange, token storage)
- Quick sync (balances + latest transactions, run right after linking)
- Full sync (complete account/transaction sweep)
- Live and cached balance summaries
- Status, disconnect and data reset
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models import BankAccount, Transaction, TransactionSource
from backend.config import get_settings
from .balance import AccountBalance, select_main_account
from .concurrency import SingleFlight
from .errors import (
    InvalidStateError,
    MissingAuthorizationCode,
    ProviderError,
    ProviderUnauthorized,
    ReconnectRequiredError,
)
from .ingestion import AccountFetch, TransactionIngestor, account_display_name
from .oauth_state import OAuthStateStore, get_state_store
from .providers.base import BaseBankProvider
from .providers.truelayer import TrueLayerProvider
from .retry import with_retry
from .tokens import BankTokenStore, TokenStatus, as_utc

logger = logging.getLogger(__name__)

# One full sync per (provider, user) per process. Callers asking for the same
# range share its result; a different range waits for it, then runs its own
_full_sync_flights = SingleFlight()


@dataclass
class SyncResult:
    mode: str
    accounts: int
    inserted: int
    skipped: int
    date_from: date
    date_to: date
    failed_accounts: List[str] = field(default_factory=list)


class BankSyncService:
    """
    Main service for bank connections and sync.

    Args:
        db: Async database session owned by the caller
        provider: Provider client (defaults to TrueLayerProvider())
        state_store: OAuth state store (defaults to the process-wide store)
        token_store: Token store (defaults to BankTokenStore over db/provider)
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: Optional[BaseBankProvider] = None,
        state_store: Optional[OAuthStateStore] = None,
        token_store: Optional[BankTokenStore] = None,
        settings=None
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.provider = provider or TrueLayerProvider(self.settings)
        self.state_store = state_store or get_state_store()
        self.tokens = token_store or BankTokenStore(db, self.provider, settings=self.settings)
        self.ingestor = TransactionIngestor(db, self.provider.name, settings=self.settings)

    async def _retry(self, fn, label: str):
        return await with_retry(
            fn,
            retries=self.settings.db_retry_count,
            delay=self.settings.db_retry_delay_seconds,
            label=label,
            on_retry=self.db.rollback
        )

    # OAuth flow

    async def start_oauth_flow(self, user_id: str) -> str:
        """Create a CSRF state for the user and return the authorization URL."""
        state = await self.state_store.create_state(user_id)
        return self.provider.build_auth_url(state)

    async def handle_oauth_callback(self, state: Optional[str], code: Optional[str]) -> str:
        """
        Validate state, exchange the code and store the connection.

        Returns:
            The user id the state was bound to

        Raises:
            InvalidStateError: Missing, unknown, expired or replayed state
            MissingAuthorizationCode: Callback carried no code
            TokenExchangeFailed: Provider rejected the code
        """
        if not state:
            raise InvalidStateError("missing_state")

        user_id = await self.state_store.validate_state(state)
        if not user_id:
            raise InvalidStateError("invalid_state")

        if not code:
            raise MissingAuthorizationCode()

        token_response = await self.provider.exchange_code_for_token(code)
        await self.tokens.store_connection(user_id, token_response)
        return user_id

    # Sync

    async def _require_access_token(self, user_id: str) -> str:
        resolution = await self.tokens.resolve_access_token(user_id)
        if resolution.ok:
            return resolution.access_token

        if resolution.status is TokenStatus.NO_CONNECTION:
            raise ReconnectRequiredError("No valid bank connection. Please reconnect your bank.")
        raise ReconnectRequiredError(
            f"No valid bank connection: token refresh failed ({resolution.reason}). Please reconnect your bank."
        )

    async def _reconnect_required(self, user_id: str) -> ReconnectRequiredError:
        # Force a refresh attempt on the next resolution before giving up on the link
        await self.tokens.invalidate_access_token(user_id)
        return ReconnectRequiredError("Access token expired. Please reconnect your bank.")

    async def _fetch_account_data(
        self,
        access_token: str,
        accounts: List[Dict[str, Any]],
        from_date: date,
        to_date: date,
        limit: Optional[int] = None
    ) -> List[AccountFetch]:
        """
        Fetch balance and transactions for each account.

        ProviderUnauthorized propagates; every other provider error is
        recorded on that account's AccountFetch.
        """
        fetched = []
        for account in accounts:
            fetch = AccountFetch(account=account)
            name = account_display_name(account)

            try:
                fetch.balance = await self.provider.get_balance(access_token, account['account_id'])
                logger.info(f"Account {name} balance: {fetch.balance['current']} {fetch.balance['currency']}")
            except ProviderUnauthorized:
                raise
            except ProviderError as e:
                logger.error(f"Failed to fetch balance for account {account['account_id']}: {e}")

            try:
                transactions = await self.provider.get_transactions(
                    access_token, account['account_id'], from_date, to_date
                )
                if limit is not None:
                    transactions = sorted(
                        transactions, key=lambda t: t.get('timestamp') or '', reverse=True
                    )[:limit]
                fetch.transactions = transactions
            except ProviderUnauthorized:
                raise
            except ProviderError as e:
                fetch.error = e

            fetched.append(fetch)
        return fetched

    async def _run_sync(
        self,
        user_id: str,
        mode: str,
        from_date: date,
        to_date: date,
        limit: Optional[int] = None
    ) -> SyncResult:
        access_token = await self._require_access_token(user_id)
        logger.info(f"[{mode}] Syncing user {user_id} transactions from {from_date} to {to_date}")

        try:
            accounts = await self.provider.get_accounts(access_token)
            fetched = await self._fetch_account_data(access_token, accounts, from_date, to_date, limit)
        except ProviderUnauthorized:
            raise await self._reconnect_required(user_id)

        result = await self.ingestor.ingest_accounts_and_transactions(user_id, fetched)
        logger.info(
            f"[{mode}] Sync complete for user {user_id}: {len(accounts)} accounts, "
            f"{result.inserted} new, {result.skipped} existing"
        )

        return SyncResult(
            mode=mode,
            accounts=len(accounts),
            inserted=result.inserted,
            skipped=result.skipped,
            date_from=from_date,
            date_to=to_date,
            failed_accounts=result.failed_accounts
        )

    async def quick_sync_latest(
        self,
        user_id: str,
        limit: Optional[int] = None,
        days_back: Optional[int] = None
    ) -> SyncResult:
        """
        Balances plus the most recent `limit` transactions per account.

        Meant to be awaited right after linking, while the provider still
        grants post-authentication access.

        Raises:
            ReconnectRequiredError: No usable token, or provider returned 401
        """
        limit = limit or self.settings.quick_sync_limit
        days_back = days_back or self.settings.quick_sync_days_back
        to_date = date.today()
        from_date = to_date - timedelta(days=days_back)
        return await self._run_sync(user_id, "quick", from_date, to_date, limit=limit)

    async def sync_accounts_and_transactions(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> SyncResult:
        """
        Full account/transaction sweep (default: the last FULL_SYNC_DAYS_BACK days).

        A full sync already running for the same user and range is joined
        rather than duplicated. One for a different range is waited out
        first, so the requested range is always the one fetched.

        Raises:
            ReconnectRequiredError: No usable token, or provider returned 401
        """
        to_date = to_date or date.today()
        from_date = from_date or (to_date - timedelta(days=self.settings.full_sync_days_back))

        return await _full_sync_flights.run(
            (self.provider.name, user_id),
            lambda: self._run_sync(user_id, "full", from_date, to_date),
            tag=(from_date, to_date)
        )

    # Status and balances

    async def get_connection_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        connection = await self.tokens.get_connection(user_id)
        if connection is None:
            return None

        return {
            'connected': True,
            'provider': connection.provider,
            'connected_at': as_utc(connection.created_at),
            'token_expires_at': as_utc(connection.token_expires_at),
        }

    async def _stored_accounts(self, user_id: str) -> List[AccountBalance]:
        async def load():
            result = await self.db.execute(
                select(BankAccount)
                .where(BankAccount.user_id == user_id, BankAccount.provider == self.provider.name)
                .order_by(BankAccount.created_at.asc(), BankAccount.provider_account_id.asc())
                .execution_options(populate_existing=True)
            )
            return result.scalars().all()

        rows = await self._retry(load, "bank_accounts")
        return [
            AccountBalance(
                name=row.account_name,
                balance=row.balance,
                available=row.available_balance,
                currency=row.currency,
                provider_account_id=row.provider_account_id,
                created_at=as_utc(row.created_at),
                updated_at=as_utc(row.updated_at),
            )
            for row in rows
        ]

    def _summarize(self, accounts: List[AccountBalance], source: str) -> Dict[str, Any]:
        main = select_main_account(accounts)
        if main is None:
            return {
                'total_balance': None,
                'available_balance': None,
                'currency': 'GBP',
                'last_synced_at': None,
                'accounts': [],
                'source': source,
            }

        logger.info(f"[balance:{source}] Selected main account {main.name!r} of {len(accounts)}")
        return {
            'total_balance': main.balance,
            'available_balance': main.available,
            'currency': main.currency or 'GBP',
            'last_synced_at': main.updated_at,
            'accounts': [
                {'name': a.name, 'balance': a.balance, 'available': a.available, 'currency': a.currency}
                for a in accounts
            ],
            'source': source,
        }

    async def get_cached_balance(self, user_id: str) -> Dict[str, Any]:
        """Last stored balances, even if the bank link has expired."""
        return self._summarize(await self._stored_accounts(user_id), "cached_db")

    async def _refresh_live_balances(self, user_id: str, access_token: str) -> int:
        accounts = await self.provider.get_accounts(access_token)
        fetched = []
        for account in accounts:
            try:
                balance = await self.provider.get_balance(access_token, account['account_id'])
            except ProviderUnauthorized:
                raise
            except ProviderError as e:
                logger.error(f"Failed to fetch live balance for {account['account_id']}: {e}")
                continue
            fetched.append((account, balance))

        async def write():
            for account, balance in fetched:
                await self.ingestor.upsert_account(user_id, account, balance)
            await self.db.commit()

        if fetched:
            await self._retry(write, "bank_accounts")
        return len(fetched)

    async def get_live_balance(self, user_id: str) -> Dict[str, Any]:
        """
        Fetch balances live from the provider, store them, and summarize.

        Falls back to stored balances when there is no usable token or the
        live fetch fails.
        """
        access_token = await self.tokens.get_valid_access_token(user_id)
        if access_token:
            try:
                if await self._refresh_live_balances(user_id, access_token):
                    return self._summarize(await self._stored_accounts(user_id), "live")
            except ProviderUnauthorized:
                await self.db.rollback()
                await self.tokens.invalidate_access_token(user_id)
                logger.warning(f"Live balance rejected for user {user_id} (401), falling back to DB")
            except Exception as e:
                await self.db.rollback()
                logger.warning(f"Live balance fetch failed for user {user_id}, falling back to DB: {e}")

        return self._summarize(await self._stored_accounts(user_id), "db")

    # Teardown

    async def _delete_accounts(self, user_id: str) -> None:
        await self.db.execute(
            delete(BankAccount).where(
                BankAccount.user_id == user_id,
                BankAccount.provider == self.provider.name
            )
        )

    async def disconnect_bank(self, user_id: str) -> None:
        """Remove the connection and its accounts. Ingested transactions are kept."""
        async def write():
            await self.tokens.delete_connection(user_id)
            await self._delete_accounts(user_id)
            await self.db.commit()

        await self._retry(write, "disconnect")
        logger.info(f"Disconnected {self.provider.name} for user {user_id}")

    async def reset_bank_data(self, user_id: str) -> None:
        """Remove the connection, accounts and every bank-sourced transaction."""
        async def write():
            await self.tokens.delete_connection(user_id)
            await self._delete_accounts(user_id)
            await self.db.execute(
                delete(Transaction).where(
                    Transaction.user_id == user_id,
                    Transaction.source == TransactionSource.BANK.value
                )
            )
            await self.db.commit()

        await self._retry(write, "reset")
        logger.info(f"Reset bank data for user {user_id}")
