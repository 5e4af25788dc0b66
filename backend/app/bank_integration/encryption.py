"""
Token Encryption Module

Encrypts OAuth tokens at rest using Fernet (AES-128-CBC + HMAC-SHA256).
Keys come from TOKEN_ENCRYPTION_KEYS; the first key encrypts and every key
can decrypt, so keys can be rotated without re-linking banks.
"""

import base64
import hashlib
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from backend.config import get_settings


class TokenDecryptionError(Exception):
    """Stored token could not be decrypted with any configured key."""
    pass


class TokenEncryption:
    """
    Encrypt and decrypt OAuth tokens for storage in bank_connections.

    If no Fernet keys are configured, a key is derived from SECRET_KEY with
    SHA-256 so development setups still never store plaintext tokens.
    """

    def __init__(self, keys: Optional[List[str]] = None):
        settings = get_settings()
        if keys is None:
            keys = settings.encryption_keys

        if keys:
            ciphers = [Fernet(k.encode() if isinstance(k, str) else k) for k in keys]
        else:
            digest = hashlib.sha256(settings.secret_key.encode()).digest()
            ciphers = [Fernet(base64.urlsafe_b64encode(digest))]

        self.cipher = MultiFernet(ciphers)

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for database storage.

        Returns None for empty input so optional tokens stay NULL.
        """
        if not token:
            return None

        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt a token from the database.

        Raises:
            TokenDecryptionError: If no configured key can decrypt the value
        """
        if not encrypted_token:
            return None

        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Stored bank token could not be decrypted") from e
