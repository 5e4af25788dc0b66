"""Tests for the encrypted token store and the single-flight access token resolver."""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from backend.app.models import BankConnection
from backend.app.bank_integration.errors import TokenRefreshFailed
from backend.app.bank_integration.tokens import TokenStatus, as_utc

from conftest import TEST_USER_ID, TEST_USER_ID_2


async def store(service, user_id=TEST_USER_ID, expires_in=3600, refresh_token="refresh-1"):
    response = {"access_token": "access-1", "expires_in": expires_in}
    if refresh_token:
        response["refresh_token"] = refresh_token
    await service.tokens.store_connection(user_id, response)


class TestStoreConnection:

    async def test_tokens_are_encrypted_at_rest(self, service, db_session):
        await store(service)

        row = (await db_session.execute(select(BankConnection))).scalar_one()
        assert row.encrypted_access_token != "access-1"
        assert row.encrypted_refresh_token != "refresh-1"
        assert service.tokens.encryption.decrypt(row.encrypted_refresh_token) == "refresh-1"

    async def test_expiry_is_now_plus_expires_in(self, service):
        before = datetime.now(timezone.utc)
        await store(service, expires_in=3600)

        connection = await service.tokens.get_connection(TEST_USER_ID)
        expires_at = as_utc(connection.token_expires_at)
        assert before + timedelta(seconds=3590) <= expires_at <= before + timedelta(seconds=3610)

    async def test_relinking_replaces_tokens_without_duplicating(self, service, db_session):
        await store(service)
        await service.tokens.store_connection(
            TEST_USER_ID, {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600}
        )

        rows = (await db_session.execute(select(BankConnection))).scalars().all()
        assert len(rows) == 1
        assert service.tokens.encryption.decrypt(rows[0].encrypted_refresh_token) == "refresh-2"

    async def test_missing_refresh_token_keeps_previous_one(self, service):
        await store(service)
        await service.tokens.store_connection(TEST_USER_ID, {"access_token": "access-2", "expires_in": 3600})

        connection = await service.tokens.get_connection(TEST_USER_ID)
        assert service.tokens.encryption.decrypt(connection.encrypted_refresh_token) == "refresh-1"
        assert service.tokens.encryption.decrypt(connection.encrypted_access_token) == "access-2"


class TestResolveAccessToken:

    async def test_valid_token_is_returned_without_refresh(self, service, provider):
        await store(service)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.ok
        assert resolution.access_token == "access-1"
        assert not resolution.refreshed
        assert provider.refresh_calls == 0

    async def test_no_connection(self, service):
        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.status is TokenStatus.NO_CONNECTION
        assert await service.tokens.get_valid_access_token(TEST_USER_ID) is None

    async def test_token_inside_refresh_buffer_is_refreshed_and_rotation_persisted(self, service, provider):
        await store(service, expires_in=30)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.refreshed
        assert resolution.access_token == "access-refreshed-1"
        assert provider.refresh_tokens_seen == ["refresh-1"]

        connection = await service.tokens.get_connection(TEST_USER_ID)
        assert service.tokens.encryption.decrypt(connection.encrypted_refresh_token) == "refresh-rotated-1"
        assert as_utc(connection.token_expires_at) > datetime.now(timezone.utc) + timedelta(minutes=30)

    async def test_second_resolution_uses_rotated_token(self, service, provider):
        await store(service, expires_in=30)
        await service.tokens.resolve_access_token(TEST_USER_ID)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.access_token == "access-refreshed-1"
        assert provider.refresh_calls == 1

    async def test_concurrent_resolutions_refresh_once(self, service, provider):
        await store(service, expires_in=30)
        provider.refresh_delay = 0.05

        resolutions = await asyncio.gather(
            *[service.tokens.resolve_access_token(TEST_USER_ID) for _ in range(10)]
        )

        assert provider.refresh_calls == 1
        assert {r.access_token for r in resolutions} == {"access-refreshed-1"}

    async def test_refresh_failure_returns_none(self, service, provider):
        await store(service, expires_in=30)
        provider.refresh_error = TokenRefreshFailed("Token refresh failed: 400", status_code=400)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.status is TokenStatus.REFRESH_FAILED
        assert await service.tokens.get_valid_access_token(TEST_USER_ID) is None

    async def test_expired_without_refresh_token(self, service, provider):
        await store(service, expires_in=30, refresh_token=None)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.status is TokenStatus.REFRESH_FAILED
        assert provider.refresh_calls == 0

    async def test_invalidate_forces_refresh(self, service, provider):
        await store(service)
        await service.tokens.invalidate_access_token(TEST_USER_ID)

        resolution = await service.tokens.resolve_access_token(TEST_USER_ID)

        assert resolution.refreshed
        assert provider.refresh_calls == 1

    async def test_users_are_isolated(self, service):
        await store(service, user_id=TEST_USER_ID)

        assert await service.tokens.get_valid_access_token(TEST_USER_ID) == "access-1"
        assert await service.tokens.get_valid_access_token(TEST_USER_ID_2) is None
