"""
Post-link background sync

Runs after a successful OAuth callback, once the browser has been redirected:
quick sync first (balances + latest transactions), then the full history.
Each phase has its own error boundary; failures are logged and the next
explicit /sync call acts as the retry.
"""

import logging
from typing import Callable, Optional

from backend.database import AsyncSessionLocal
from .errors import ReconnectRequiredError
from .providers.base import BaseBankProvider
from .service import BankSyncService

logger = logging.getLogger(__name__)


async def run_post_link_sync(
    user_id: str,
    session_factory: Callable = AsyncSessionLocal,
    provider: Optional[BaseBankProvider] = None
) -> None:
    """
    Quick sync then full sync for a freshly linked user, on a fresh DB session.

    Never raises: this runs detached from the request that triggered it.
    """
    async with session_factory() as db:
        service = BankSyncService(db, provider=provider)

        try:
            logger.info(f"Background quick sync starting for user {user_id}")
            result = await service.quick_sync_latest(user_id)
            logger.info(f"Background quick sync complete for user {user_id}: {result.inserted} transactions")
        except ReconnectRequiredError as e:
            logger.warning(f"Background quick sync for user {user_id} needs reconnect: {e}")
            return
        except Exception:
            logger.exception(f"Background quick sync failed for user {user_id}")
            await db.rollback()

        try:
            logger.info(f"Background full sync starting for user {user_id}")
            result = await service.sync_accounts_and_transactions(user_id)
            logger.info(f"Background full sync complete for user {user_id}: {result.inserted} transactions")
        except Exception:
            logger.exception(f"Background full sync failed for user {user_id}")
