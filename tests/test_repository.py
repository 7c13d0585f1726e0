"""
Tests for the SQLAlchemy repositories (in-memory SQLite)
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base
from database.repository import (
    AdminSettingRepository,
    APIKeyRepository,
    PricingRepository,
    TelemetryRepository,
    UserRepository,
)
from services.auth import AuthService


@pytest.fixture
async def session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


class TestPricingRepository:

    async def test_upsert_inserts_then_updates(self, session):
        await PricingRepository.upsert(session, "gpt-4o", 2.5, 10.0, 1.25)
        await PricingRepository.upsert(session, "gpt-4o", 2.0, 8.0)

        records = await PricingRepository.list_active(session)
        assert len(records) == 1
        assert records[0].input_per_mtok == 2.0
        assert records[0].cached_input_per_mtok is None

    async def test_inactive_rows_hidden(self, session):
        record = await PricingRepository.upsert(session, "old-model", 1.0, 1.0)
        record.is_active = False
        await session.flush()

        assert await PricingRepository.list_active(session) == []


class TestTelemetryRepository:

    async def test_create_and_filter(self, session):
        await TelemetryRepository.create(session, "chat_completed", {"tokens_in": 10}, user_id="42")
        await TelemetryRepository.create(session, "memory_search_failed", {"fallback": "no_memory"}, user_id="42")

        recent = await TelemetryRepository.get_recent(session, event_type="memory_search_failed")
        assert len(recent) == 1
        assert recent[0].payload_json == {"fallback": "no_memory"}


class TestAdminSettingRepository:

    async def test_get_and_set(self, session):
        assert await AdminSettingRepository.get(session, "retrieval") is None

        await AdminSettingRepository.set(session, "retrieval", {"top_k": 5})
        await AdminSettingRepository.set(session, "retrieval", {"top_k": 6})

        assert await AdminSettingRepository.get(session, "retrieval") == {"top_k": 6}


class TestAuth:

    async def test_valid_key(self, session):
        user = await UserRepository.get_or_create(session, name="tester")
        api_key = await AuthService.create_api_key(session, user.id, "test", daily_limit=10)

        key, owner = await AuthService.validate_api_key(session, api_key.key)

        assert owner.id == user.id
        assert key.total_requests == 1

    async def test_missing_and_unknown_keys(self, session):
        with pytest.raises(HTTPException) as exc_info:
            await AuthService.validate_api_key(session, None)
        assert exc_info.value.status_code == 401

        with pytest.raises(HTTPException) as exc_info:
            await AuthService.validate_api_key(session, "sk-unknown")
        assert exc_info.value.status_code == 401

    async def test_expired_key(self, session):
        user = await UserRepository.get_or_create(session, name="tester")
        api_key = await APIKeyRepository.create(
            session, user.id, "old", AuthService.generate_api_key(),
            expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        )

        with pytest.raises(HTTPException) as exc_info:
            await AuthService.validate_api_key(session, api_key.key)
        assert exc_info.value.status_code == 403

    async def test_daily_limit(self, session):
        user = await UserRepository.get_or_create(session, name="tester")
        api_key = await AuthService.create_api_key(session, user.id, "limited", daily_limit=1)

        await AuthService.validate_api_key(session, api_key.key)
        with pytest.raises(HTTPException) as exc_info:
            await AuthService.validate_api_key(session, api_key.key)
        assert exc_info.value.status_code == 429

    async def test_daily_limit_resets_next_day(self, session):
        user = await UserRepository.get_or_create(session, name="tester")
        api_key = await AuthService.create_api_key(session, user.id, "limited", daily_limit=1)

        key, _ = await AuthService.validate_api_key(session, api_key.key)
        key.usage_date = key.usage_date - timedelta(days=1)
        await session.flush()

        key, _ = await AuthService.validate_api_key(session, api_key.key)
        assert key.requests_today == 1
        assert key.total_requests == 2

    async def test_check_rate_limit_counts_only_today(self, session):
        user = await UserRepository.get_or_create(session, name="tester")
        api_key = await AuthService.create_api_key(session, user.id, "limited", daily_limit=1)
        await APIKeyRepository.update_usage(session, api_key)

        today = api_key.usage_date
        assert APIKeyRepository.check_rate_limit(api_key, today)[0] is False
        assert APIKeyRepository.check_rate_limit(api_key, today + timedelta(days=1))[0] is True
