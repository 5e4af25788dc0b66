"""
Main Account Selection

Picks the "main" balance among several linked sub-accounts (a current
account next to savings pots, vaults or jars). Used by both the live and the
cached balance responses so the two always agree.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

SAVINGS_PATTERN = re.compile(r"\b(pot|savings|saving|vault|jar)\b", re.IGNORECASE)
MAIN_PATTERN = re.compile(r"\b(current|personal|main)\b", re.IGNORECASE)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class AccountBalance:
    name: Optional[str]
    balance: Optional[Decimal]
    available: Optional[Decimal]
    currency: Optional[str]
    provider_account_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _created_key(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def order_accounts(accounts: Iterable[AccountBalance]) -> List[AccountBalance]:
    """Deterministic order: oldest first, then by provider account id."""
    return sorted(accounts, key=lambda a: (_created_key(a.created_at), a.provider_account_id))


def select_main_account(accounts: Iterable[AccountBalance]) -> Optional[AccountBalance]:
    """
    Select the main account.

    1. first account whose name is not a pot/savings/vault/jar
    2. else first account whose name says current/personal/main
    3. else the first account

    "First" is taken after order_accounts(), so the input order never
    changes the result.

    Example:
        >>> pot = AccountBalance("Holiday Pot", Decimal("500"), None, "GBP", "a")
        >>> current = AccountBalance("Current Account", Decimal("1200"), None, "GBP", "b")
        >>> select_main_account([pot, current]).name
        'Current Account'
    """
    ordered = order_accounts(accounts)
    if not ordered:
        return None

    for account in ordered:
        if not SAVINGS_PATTERN.search(account.name or ""):
            return account

    for account in ordered:
        if MAIN_PATTERN.search(account.name or ""):
            return account

    return ordered[0]
