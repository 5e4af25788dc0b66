"""
Transaction Ingestion Pipeline

Idempotent storage of remote accounts, balances and transactions:
- accounts are upserted on (user, provider, provider_account_id)
- transactions are inserted on (user, provider_transaction_id) only if absent;
  existing rows are never touched, so user edits to category/description survive
- failures are contained per account
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models import BankAccount, Transaction, TransactionSource, TransactionType
from backend.config import get_settings
from .errors import ProviderAccessDenied
from .retry import with_retry
from .upsert import insert_for

logger = logging.getLogger(__name__)


@dataclass
class AccountFetch:
    """Everything fetched for one remote account in a sync pass."""
    account: Dict[str, Any]
    balance: Optional[Dict[str, Any]] = None
    transactions: Optional[List[Dict[str, Any]]] = None
    error: Optional[Exception] = None

    @property
    def account_id(self) -> str:
        return self.account['account_id']


@dataclass
class IngestionResult:
    accounts_processed: int = 0
    inserted: int = 0
    skipped: int = 0
    failed_accounts: List[str] = field(default_factory=list)


def account_display_name(account: Dict[str, Any]) -> str:
    number = account.get('account_number') or {}
    return (
        account.get('display_name')
        or (number.get('number') if isinstance(number, dict) else None)
        or account['account_id']
    )


def _parse_amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


def normalize_transaction(tx: Dict[str, Any], user_id: str, account_id: str) -> Dict[str, Any]:
    """
    Map a provider transaction to a transactions row.

    Negative amounts are money out (expense); stored amounts are absolute.
    """
    raw_amount = _parse_amount(tx.get('amount'))
    timestamp = tx.get('timestamp')
    try:
        tx_date = date.fromisoformat(timestamp[:10]) if timestamp else date.today()
    except ValueError:
        tx_date = date.today()

    description = tx.get('merchant_name') or tx.get('description') or ''

    return {
        'user_id': user_id,
        'provider_transaction_id': str(tx['transaction_id']),
        'provider_account_id': account_id,
        'type': TransactionType.EXPENSE.value if raw_amount < 0 else TransactionType.INCOME.value,
        'amount': abs(raw_amount),
        'currency': tx.get('currency'),
        'date': tx_date,
        'category': tx.get('transaction_category') or 'Other',
        'description': description[:500],
        'source': TransactionSource.BANK.value,
    }


class TransactionIngestor:
    """
    Writes one sync pass into storage.

    Args:
        db: Async database session
        provider_name: Provider tag stored on bank_accounts rows
    """

    def __init__(self, db: AsyncSession, provider_name: str, settings=None):
        self.db = db
        self.provider_name = provider_name
        self.settings = settings or get_settings()

    async def _retry(self, fn, label: str):
        return await with_retry(
            fn,
            retries=self.settings.db_retry_count,
            delay=self.settings.db_retry_delay_seconds,
            label=label,
            on_retry=self.db.rollback
        )

    async def upsert_account(
        self,
        user_id: str,
        account: Dict[str, Any],
        balance: Optional[Dict[str, Any]]
    ) -> None:
        """Insert or update a bank_accounts row. Balance columns are left alone when balance is None."""
        values = {
            'user_id': user_id,
            'provider': self.provider_name,
            'provider_account_id': account['account_id'],
            'account_name': account_display_name(account),
            'currency': account.get('currency') or (balance or {}).get('currency'),
            'balance': balance['current'] if balance else None,
            'available_balance': balance['available'] if balance else None,
        }

        stmt = insert_for(self.db, BankAccount).values(**values)
        update_values = {
            'account_name': stmt.excluded.account_name,
            'currency': stmt.excluded.currency,
            'updated_at': func.now(),
        }
        if balance:
            update_values['balance'] = stmt.excluded.balance
            update_values['available_balance'] = stmt.excluded.available_balance

        await self.db.execute(
            stmt.on_conflict_do_update(
                index_elements=['user_id', 'provider', 'provider_account_id'],
                set_=update_values
            )
        )

    async def insert_transaction_if_absent(self, row: Dict[str, Any]) -> bool:
        """Returns True if the row was inserted, False if it already existed."""
        stmt = (
            insert_for(self.db, Transaction)
            .values(**row)
            .on_conflict_do_nothing(index_elements=['user_id', 'provider_transaction_id'])
            .returning(Transaction.id)
        )
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def _store_account(self, user_id: str, fetch: AccountFetch) -> IngestionResult:
        counts = IngestionResult(accounts_processed=1)

        await self.upsert_account(user_id, fetch.account, fetch.balance)

        for tx in fetch.transactions or []:
            if not tx.get('transaction_id'):
                logger.warning(f"Skipping transaction without id on account {fetch.account_id}")
                continue
            row = normalize_transaction(tx, user_id, fetch.account_id)
            if await self.insert_transaction_if_absent(row):
                counts.inserted += 1
            else:
                counts.skipped += 1

        await self.db.commit()
        return counts

    async def ingest_accounts_and_transactions(
        self,
        user_id: str,
        fetched: List[AccountFetch]
    ) -> IngestionResult:
        """
        Store every fetched account and its transactions.

        Accounts whose transaction fetch failed still get their account row
        and balance updated. A storage failure on one account is rolled back
        and logged; the remaining accounts are still processed.
        """
        result = IngestionResult()

        for fetch in fetched:
            name = account_display_name(fetch.account)

            if isinstance(fetch.error, ProviderAccessDenied):
                logger.info(f"Skipping transactions for {name}: bank may not support transaction access")
            elif fetch.error is not None:
                logger.error(f"Failed to fetch transactions for account {fetch.account_id}: {fetch.error}")

            try:
                counts = await self._retry(
                    lambda f=fetch: self._store_account(user_id, f),
                    f"ingest:{fetch.account_id}"
                )
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to store account {fetch.account_id}: {e}")
                result.failed_accounts.append(fetch.account_id)
                continue

            result.accounts_processed += counts.accounts_processed
            result.inserted += counts.inserted
            result.skipped += counts.skipped
            if fetch.error is not None:
                result.failed_accounts.append(fetch.account_id)

            logger.info(
                f"Account {name}: {counts.inserted} new, {counts.skipped} existing transactions"
            )

        return result
