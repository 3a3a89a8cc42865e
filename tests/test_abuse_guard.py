"""Tests for the denylist and request window."""

from unittest.mock import AsyncMock, patch

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.services.abuse_guard import (
    NANOS_PER_SECOND,
    REASON_DENYLISTED,
    REASON_RATE_LIMITED,
    AbuseGuard,
)
from app.services.event_store import EventStoreError, now_ns

from conftest import add_event

WINDOW_NS = 300 * NANOS_PER_SECOND


class TestShouldBlock:
    async def test_denylisted(self, db: AsyncSession, settings: Settings):
        guard = AbuseGuard(settings)
        with patch("app.services.abuse_guard.event_store.count_by_address") as count:
            decision = await guard.should_block(db, "6.6.6.6")

        assert decision.blocked is True
        assert decision.reason == REASON_DENYLISTED
        count.assert_not_called()

    async def test_denylist_is_exact_match(self, db: AsyncSession):
        guard = AbuseGuard(Settings(BLOCKED_IPS="10.0.0.12, 10.0.0.13"))
        assert guard.is_denylisted("10.0.0.12") is True
        assert guard.is_denylisted("10.0.0.1") is False
        decision = await guard.should_block(db, "10.0.0.1")
        assert decision.blocked is False

    async def test_at_threshold_allowed(self, db: AsyncSession, settings: Settings):
        now = now_ns()
        for i in range(10):
            await add_event(db, request_address="5.5.5.5", created_at=now - (i + 1) * NANOS_PER_SECOND)

        decision = await AbuseGuard(settings).should_block(db, "5.5.5.5", now=now)

        assert decision.blocked is False
        assert decision.count == 10

    async def test_over_threshold_blocked(self, db: AsyncSession, settings: Settings):
        now = now_ns()
        for i in range(11):
            await add_event(db, request_address="5.5.5.5", created_at=now - (i + 1) * NANOS_PER_SECOND)

        decision = await AbuseGuard(settings).should_block(db, "5.5.5.5", now=now)

        assert decision.blocked is True
        assert decision.reason == REASON_RATE_LIMITED
        assert decision.count == 11

    async def test_old_events_outside_window(self, db: AsyncSession, settings: Settings):
        now = now_ns()
        for i in range(11):
            await add_event(db, request_address="5.5.5.5", created_at=now - WINDOW_NS - i)

        decision = await AbuseGuard(settings).should_block(db, "5.5.5.5", now=now)

        assert decision.blocked is False
        assert decision.count == 0

    async def test_other_addresses_not_counted(self, db: AsyncSession, settings: Settings):
        now = now_ns()
        for i in range(11):
            await add_event(db, request_address="7.7.7.7", created_at=now - (i + 1))

        decision = await AbuseGuard(settings).should_block(db, "5.5.5.5", now=now)

        assert decision.blocked is False

    async def test_fails_open(self, db: AsyncSession, settings: Settings):
        with patch(
            "app.services.abuse_guard.event_store.count_by_address",
            AsyncMock(side_effect=EventStoreError("db down")),
        ):
            decision = await AbuseGuard(settings).should_block(db, "5.5.5.5")

        assert decision.blocked is False
        assert decision.count is None
