"""Tests for main account selection."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from backend.app.bank_integration.balance import AccountBalance, select_main_account


def account(name, account_id, created_at=None, balance="0"):
    return AccountBalance(
        name=name,
        balance=Decimal(balance),
        available=Decimal(balance),
        currency="GBP",
        provider_account_id=account_id,
        created_at=created_at,
    )


class TestSelectMainAccount:

    def test_current_account_wins_over_pot_in_any_order(self):
        pot = account("Holiday Pot", "acc-a", balance="500")
        current = account("Current Account", "acc-b", balance="1200")

        assert select_main_account([pot, current]) == current
        assert select_main_account([current, pot]) == current

    def test_savings_names_are_skipped(self):
        accounts = [
            account("Rainy Day Savings", "acc-1"),
            account("Cash Vault", "acc-2"),
            account("Joint", "acc-3"),
        ]

        assert select_main_account(accounts).name == "Joint"

    def test_word_boundaries_are_respected(self):
        # "Potter" does not contain the word "pot"
        accounts = [account("Potter Family", "acc-1"), account("Savings Pot", "acc-0")]

        assert select_main_account(accounts).name == "Potter Family"

    def test_main_hint_used_when_every_account_looks_like_savings(self):
        accounts = [
            account("Savings Jar", "acc-1"),
            account("Main Savings Pot", "acc-2"),
        ]

        assert select_main_account(accounts).name == "Main Savings Pot"

    def test_falls_back_to_oldest_account(self):
        now = datetime.now(timezone.utc)
        newer = account("Holiday Pot", "acc-1", created_at=now)
        older = account("Savings Jar", "acc-2", created_at=now - timedelta(days=1))

        assert select_main_account([newer, older]) == older

    def test_ties_broken_by_provider_account_id(self):
        first = account("Personal", "acc-1")
        second = account("Everyday", "acc-2")

        assert select_main_account([second, first]) == first

    def test_no_accounts(self):
        assert select_main_account([]) is None
