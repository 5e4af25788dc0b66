"""
Bank Integration Module

Links a user's bank through an Open Banking OAuth provider (TrueLayer),
manages the token lifecycle and reconciles remote accounts, balances and
transactions into local storage.
"""

from .service import BankSyncService, SyncResult
from .tokens import BankTokenStore, TokenResolution, TokenStatus
from .encryption import TokenEncryption
from .errors import ReconnectRequiredError

__all__ = [
    'BankSyncService', 'SyncResult', 'BankTokenStore', 'TokenResolution',
    'TokenStatus', 'TokenEncryption', 'ReconnectRequiredError'
]
