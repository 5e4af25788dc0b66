"""
OAuth State Store

Issues and single-use-validates CSRF state tokens that bind an authorization
request to the user who started it.

Two backends:
- InMemoryOAuthStateStore: process-local map with TTL sweep (single instance / dev)
- RedisOAuthStateStore: shared store using native key expiry and atomic GETDEL
"""

import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from backend.config import get_settings

logger = logging.getLogger(__name__)


def _short(token: Optional[str]) -> str:
    return f"{token[:8]}..." if token else "none"


@dataclass
class OAuthStateEntry:
    user_id: str
    issued_at: float


class OAuthStateStore(ABC):
    """
    Abstract state store.

    `validate_state` must be an atomic read-and-delete: the first call for a
    token returns its user id, every later call returns None.
    """

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(32)

    @abstractmethod
    async def create_state(self, user_id: str) -> str:
        pass

    @abstractmethod
    async def validate_state(self, token: Optional[str]) -> Optional[str]:
        pass


class InMemoryOAuthStateStore(OAuthStateStore):

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, OAuthStateEntry] = {}

    async def create_state(self, user_id: str) -> str:
        token = self.generate_token()
        self._entries[token] = OAuthStateEntry(user_id=user_id, issued_at=self._clock())
        self.sweep()

        logger.info(f"Created OAuth state {_short(token)} for user {user_id} (store size: {len(self._entries)})")
        return token

    async def validate_state(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None

        # pop() is the consume step; nothing awaits between lookup and removal
        entry = self._entries.pop(token, None)
        if entry is None:
            logger.warning(f"OAuth state {_short(token)} not found (unknown or already used)")
            return None

        age = self._clock() - entry.issued_at
        if age > self.ttl_seconds:
            logger.warning(f"OAuth state {_short(token)} expired: {age:.0f}s old (max {self.ttl_seconds}s)")
            return None

        return entry.user_id

    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [t for t, e in self._entries.items() if now - e.issued_at > self.ttl_seconds]
        for token in expired:
            del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisOAuthStateStore(OAuthStateStore):

    KEY_PREFIX = "bank_oauth_state:"

    def __init__(self, redis, ttl_seconds: int = 600):
        super().__init__(ttl_seconds)
        self.redis = redis

    async def create_state(self, user_id: str) -> str:
        token = self.generate_token()
        payload = json.dumps({"user_id": user_id, "issued_at": time.time()})
        await self.redis.set(f"{self.KEY_PREFIX}{token}", payload, ex=self.ttl_seconds, nx=True)

        logger.info(f"Created OAuth state {_short(token)} for user {user_id}")
        return token

    async def validate_state(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None

        raw = await self.redis.getdel(f"{self.KEY_PREFIX}{token}")
        if raw is None:
            logger.warning(f"OAuth state {_short(token)} not found, expired or already used")
            return None

        return json.loads(raw)["user_id"]


_default_store: Optional[OAuthStateStore] = None


def get_state_store() -> OAuthStateStore:
    """Process-wide state store selected by OAUTH_STATE_BACKEND."""
    global _default_store
    if _default_store is None:
        settings = get_settings()
        if settings.oauth_state_backend == "redis":
            import redis.asyncio as aioredis

            client = aioredis.from_url(settings.redis_url, decode_responses=True)
            _default_store = RedisOAuthStateStore(client, ttl_seconds=settings.oauth_state_ttl_seconds)
        else:
            _default_store = InMemoryOAuthStateStore(ttl_seconds=settings.oauth_state_ttl_seconds)
    return _default_store
