"""
TrueLayer Provider Implementation

TrueLayer exposes UK Open Banking accounts through a standard OAuth2
authorization-code flow (auth host) and a Data API (api host). Sandbox and
production use different hosts, selected by TRUELAYER_ENV.

Documentation: https://docs.truelayer.com/docs/data-api-basics
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional
from urllib.parse import urlencode

import httpx

from backend.config import get_settings
from .base import BaseBankProvider
from ..errors import (
    ProviderAccessDenied,
    ProviderUnauthorized,
    TokenExchangeFailed,
    TokenRefreshFailed,
    UpstreamHttpError,
)

logger = logging.getLogger(__name__)

SANDBOX_PROVIDERS = "uk-ob-all uk-oauth-all uk-cs-mock"


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class TrueLayerProvider(BaseBankProvider):
    """
    TrueLayer OAuth + Data API client.

    Stateless: configuration only, tokens are passed per call.
    """

    name = "truelayer"

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            settings: Settings instance (defaults to get_settings())
            transport: Optional httpx transport, used by tests to stub the API
        """
        super().__init__(settings or get_settings())
        self.transport = transport
        self.timeout = self.settings.provider_timeout_seconds
        self.max_pages = self.settings.max_transaction_pages

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"TrueLayer request timed out: {method} {url}")
            raise UpstreamHttpError(f"TrueLayer request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.error(f"TrueLayer transport error: {method} {url}: {e}")
            raise UpstreamHttpError(f"TrueLayer request failed: {e}") from e

    def build_auth_url(self, state: str) -> str:
        """
        Assemble the hosted auth flow URL.

        In sandbox mode mock providers are enabled so the flow can be tested
        without a real bank.
        """
        params = {
            'response_type': 'code',
            'client_id': self.settings.truelayer_client_id,
            'redirect_uri': self.settings.truelayer_redirect_uri,
            'scope': self.settings.truelayer_scopes,
            'state': state,
        }
        if self.settings.is_sandbox:
            params['providers'] = SANDBOX_PROVIDERS

        return f"{self.settings.auth_base_url}/?{urlencode(params)}"

    async def _post_token(self, form: Dict[str, str]) -> httpx.Response:
        return await self._send(
            "POST",
            self.settings.token_url,
            data={
                'client_id': self.settings.truelayer_client_id,
                'client_secret': self.settings.truelayer_client_secret,
                **form,
            },
            headers={'Content-Type': 'application/x-www-form-urlencoded'}
        )

    async def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        response = await self._post_token({
            'grant_type': 'authorization_code',
            'redirect_uri': self.settings.truelayer_redirect_uri,
            'code': code,
        })

        if not response.is_success:
            logger.error(f"TrueLayer token exchange failed: {response.status_code}")
            raise TokenExchangeFailed(
                f"Token exchange failed: {response.status_code}",
                status_code=response.status_code
            )

        return response.json()

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        try:
            response = await self._post_token({
                'grant_type': 'refresh_token',
                'refresh_token': refresh_token,
            })
        except UpstreamHttpError as e:
            raise TokenRefreshFailed(str(e)) from e

        if not response.is_success:
            logger.error(f"TrueLayer token refresh failed: {response.status_code}")
            raise TokenRefreshFailed(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code
            )

        return response.json()

    async def _get_data(self, url: str, access_token: str, what: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        response = await self._send(
            "GET",
            url,
            params=params,
            headers={'Authorization': f'Bearer {access_token}'}
        )

        if response.status_code == 401:
            raise ProviderUnauthorized()
        if response.status_code == 403:
            # Bank may not support this endpoint, or consent was not granted
            logger.info(f"TrueLayer 403 for {what}: {response.text}")
            raise ProviderAccessDenied(
                f"{what.capitalize()} access denied (403). This account may not support it."
            )
        if not response.is_success:
            logger.error(f"TrueLayer {what} request failed: {response.status_code}")
            raise UpstreamHttpError(
                f"Failed to fetch {what}: {response.status_code}",
                status_code=response.status_code
            )

        return response.json()

    async def get_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        data = await self._get_data(
            f"{self.settings.data_base_url}/data/v1/accounts",
            access_token,
            "accounts"
        )
        return data.get('results') or []

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        max_pages: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch all transactions for an account, following `next` links.

        Pagination stops after `max_pages` (default MAX_TRANSACTION_PAGES)
        even if the upstream keeps returning a `next` cursor.
        """
        max_pages = max_pages or self.max_pages

        params = {}
        if from_date:
            params['from'] = from_date.isoformat()
        if to_date:
            params['to'] = to_date.isoformat()

        url = f"{self.settings.data_base_url}/data/v1/accounts/{account_id}/transactions"
        page_params: Optional[Dict] = params or None
        all_transactions: List[Dict[str, Any]] = []
        page_num = 0

        while url:
            page_num += 1
            data = await self._get_data(url, access_token, "transactions", params=page_params)
            all_transactions.extend(data.get('results') or [])

            # next links already carry their query string
            url = data.get('next')
            page_params = None

            if url and page_num >= max_pages:
                logger.warning(f"Reached page limit of {max_pages} for account {account_id}, stopping pagination")
                break

        logger.info(f"Fetched {len(all_transactions)} transactions for account {account_id} ({page_num} pages)")
        return all_transactions

    async def get_balance(self, access_token: str, account_id: str) -> Dict[str, Any]:
        data = await self._get_data(
            f"{self.settings.data_base_url}/data/v1/accounts/{account_id}/balance",
            access_token,
            "balance"
        )
        results = data.get('results') or [{}]
        balance = results[0]

        current = _to_decimal(balance.get('current')) or Decimal("0")
        available = _to_decimal(balance.get('available'))
        return {
            'current': current,
            'available': available if available is not None else current,
            'currency': balance.get('currency') or 'GBP',
        }
