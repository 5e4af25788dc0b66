"""
Abstract base class for Open Banking providers

Defines the stateless interface the token store and sync service use to talk
to an OAuth/Data API.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import date


class BaseBankProvider(ABC):
    """
    Abstract base class for bank data providers.

    Implementations hold configuration only; every call takes the tokens it
    needs as arguments so a single instance can serve all users.
    """

    name: str = ""

    def __init__(self, settings):
        """
        Args:
            settings: Application Settings with provider credentials and URLs
        """
        self.settings = settings

    @abstractmethod
    def build_auth_url(self, state: str) -> str:
        """
        Build the hosted authorization URL.

        Args:
            state: CSRF protection token

        Returns:
            Full URL to redirect the user to
        """
        pass

    @abstractmethod
    async def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        """
        Exchange authorization code for tokens.

        Returns:
            Dictionary with keys:
            - access_token: str
            - refresh_token: str (optional)
            - expires_in: int (seconds until expiry)

        Raises:
            TokenExchangeFailed: On any non-2xx response
        """
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Mint a new access token.

        Providers may rotate the refresh token; callers must persist the
        returned refresh_token instead of reusing the old one.

        Raises:
            TokenRefreshFailed: On any non-2xx response
        """
        pass

    @abstractmethod
    async def get_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        """
        List the linked accounts.

        Raises:
            ProviderUnauthorized: On 401
        """
        pass

    @abstractmethod
    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of transactions for one account.

        Raises:
            ProviderUnauthorized: On 401
            ProviderAccessDenied: On 403 (skip this account only)
        """
        pass

    @abstractmethod
    async def get_balance(self, access_token: str, account_id: str) -> Dict[str, Any]:
        """
        Fetch the balance of one account.

        Returns:
            {'current': Decimal, 'available': Decimal, 'currency': str}
        """
        pass
