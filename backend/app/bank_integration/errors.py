"""
Bank Integration Errors

Error taxonomy shared by the provider client, token store and sync service.
Route handlers translate these into redirects or JSON error responses.
"""

from typing import Optional


class BankIntegrationError(Exception):
    """Base class for all bank integration failures."""
    pass


class InvalidStateError(BankIntegrationError):
    """
    OAuth CSRF state was missing, unknown, expired or already consumed.

    The OAuth flow must be aborted; the token exchange is never attempted.
    """

    def __init__(self, reason: str = "invalid_state"):
        super().__init__(f"OAuth state rejected: {reason}")
        self.reason = reason


class MissingAuthorizationCode(BankIntegrationError):
    """OAuth callback arrived with a valid state but no authorization code."""

    reason = "missing_code"

    def __init__(self):
        super().__init__("OAuth callback is missing the authorization code")


class ProviderError(BankIntegrationError):
    """Upstream provider call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenExchangeFailed(ProviderError):
    pass


class TokenRefreshFailed(ProviderError):
    pass


class ProviderUnauthorized(ProviderError):
    """Access token rejected (401)."""

    def __init__(self, message: str = "Access token expired or invalid"):
        super().__init__(message, status_code=401)


class ProviderAccessDenied(ProviderError):
    """
    Per-account consent or capability gap (403).

    The account may not support transaction history. Callers skip the
    account instead of failing the whole sync.
    """

    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class UpstreamHttpError(ProviderError):
    """Any other non-2xx response, or a transport level failure (status_code is None)."""
    pass


class ReconnectRequiredError(BankIntegrationError):
    """
    The user's bank link can no longer be used and must be re-authorized.

    `code` is always "TOKEN_EXPIRED" so callers can map it to a reconnect prompt.
    """

    code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "No valid bank connection. Please reconnect your bank."):
        super().__init__(message)
        self.message = message
