"""
Token Store & Resolver

Persists encrypted provider tokens per user and hands out a currently valid
access token, refreshing it transparently when it has expired.

Resolution is single-flighted per (provider, user): concurrent callers for
the same user share one database read and at most one network refresh. This
matters because providers rotate refresh tokens, so a second refresh with the
stale token would fail and lock the user out.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models import BankConnection
from backend.config import get_settings
from .concurrency import SingleFlight
from .encryption import TokenDecryptionError, TokenEncryption
from .errors import ProviderError
from .providers.base import BaseBankProvider
from .retry import with_retry
from .upsert import insert_for

logger = logging.getLogger(__name__)

# Shared by every store instance in the process
_resolve_flights = SingleFlight()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenStatus(str, enum.Enum):
    OK = "OK"
    NO_CONNECTION = "NO_CONNECTION"
    REFRESH_FAILED = "REFRESH_FAILED"


@dataclass(frozen=True)
class TokenResolution:
    status: TokenStatus
    access_token: Optional[str] = None
    refreshed: bool = False
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.OK


class BankTokenStore:
    """
    Stores one BankConnection per (user, provider).

    Args:
        db: Async database session
        provider: Provider client used for refresh calls
        encryption: Token cipher (defaults to TokenEncryption())
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: BaseBankProvider,
        encryption: Optional[TokenEncryption] = None,
        settings=None
    ):
        self.db = db
        self.provider = provider
        self.encryption = encryption or TokenEncryption()
        self.settings = settings or get_settings()
        self.refresh_buffer = timedelta(seconds=self.settings.token_refresh_buffer_seconds)

    async def _retry(self, fn, label: str):
        return await with_retry(
            fn,
            retries=self.settings.db_retry_count,
            delay=self.settings.db_retry_delay_seconds,
            label=label,
            on_retry=self.db.rollback
        )

    async def get_connection(self, user_id: str) -> Optional[BankConnection]:
        async def load():
            result = await self.db.execute(
                select(BankConnection).where(
                    BankConnection.user_id == user_id,
                    BankConnection.provider == self.provider.name
                ).execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

        return await self._retry(load, "bank_connections")

    async def store_connection(self, user_id: str, token_response: Dict[str, Any]) -> None:
        """
        Upsert the user's connection with a fresh token response.

        Expiry is computed as now + expires_in. A response without a
        refresh_token keeps the previously stored one.
        """
        expires_in = token_response.get('expires_in')
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in else None
        )
        values = {
            'user_id': user_id,
            'provider': self.provider.name,
            'encrypted_access_token': self.encryption.encrypt(token_response['access_token']),
            'encrypted_refresh_token': self.encryption.encrypt(token_response.get('refresh_token')),
            'token_expires_at': expires_at,
        }

        stmt = insert_for(self.db, BankConnection).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['user_id', 'provider'],
            set_={
                'encrypted_access_token': stmt.excluded.encrypted_access_token,
                'encrypted_refresh_token': func.coalesce(
                    stmt.excluded.encrypted_refresh_token,
                    BankConnection.encrypted_refresh_token
                ),
                'token_expires_at': stmt.excluded.token_expires_at,
                'updated_at': func.now(),
            }
        )

        async def write():
            await self.db.execute(stmt)
            await self.db.commit()

        await self._retry(write, "bank_connections")
        logger.info(f"Stored {self.provider.name} connection for user {user_id} (expires at {expires_at})")

    async def invalidate_access_token(self, user_id: str) -> None:
        """Mark the cached access token expired so the next resolution refreshes it."""
        async def write():
            await self.db.execute(
                update(BankConnection)
                .where(BankConnection.user_id == user_id, BankConnection.provider == self.provider.name)
                .values(token_expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
            )
            await self.db.commit()

        await self._retry(write, "bank_connections")

    async def delete_connection(self, user_id: str) -> None:
        async def write():
            await self.db.execute(
                delete(BankConnection).where(
                    BankConnection.user_id == user_id,
                    BankConnection.provider == self.provider.name
                )
            )

        await self._retry(write, "bank_connections")

    async def resolve_access_token(self, user_id: str) -> TokenResolution:
        """
        Resolve a valid access token for the user.

        Concurrent calls for the same user collapse into one resolution.
        """
        return await _resolve_flights.run(
            (self.provider.name, user_id),
            lambda: self._resolve(user_id)
        )

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """Access token, or None when the user has to reconnect."""
        resolution = await self.resolve_access_token(user_id)
        return resolution.access_token if resolution.ok else None

    async def _resolve(self, user_id: str) -> TokenResolution:
        connection = await self.get_connection(user_id)
        if connection is None:
            return TokenResolution(TokenStatus.NO_CONNECTION, reason="No bank connection")

        expires_at = as_utc(connection.token_expires_at)
        needs_refresh = (
            expires_at is not None
            and expires_at - datetime.now(timezone.utc) < self.refresh_buffer
        )

        try:
            if not needs_refresh:
                return TokenResolution(
                    TokenStatus.OK,
                    access_token=self.encryption.decrypt(connection.encrypted_access_token)
                )

            refresh_token = self.encryption.decrypt(connection.encrypted_refresh_token)
        except TokenDecryptionError as e:
            logger.error(f"Stored tokens for user {user_id} cannot be decrypted: {e}")
            return TokenResolution(TokenStatus.REFRESH_FAILED, reason=str(e))

        if not refresh_token:
            logger.warning(f"Access token for user {user_id} expired and no refresh token is stored")
            return TokenResolution(TokenStatus.REFRESH_FAILED, reason="No refresh token stored")

        try:
            token_response = await self.provider.refresh_token(refresh_token)
        except ProviderError as e:
            logger.error(f"Failed to refresh token for user {user_id}: {e}")
            return TokenResolution(TokenStatus.REFRESH_FAILED, reason=str(e))

        # Persist the rotated refresh token before handing out the access token
        await self.store_connection(user_id, token_response)
        logger.info(f"Refreshed access token for user {user_id}")

        return TokenResolution(
            TokenStatus.OK,
            access_token=token_response['access_token'],
            refreshed=True
        )
