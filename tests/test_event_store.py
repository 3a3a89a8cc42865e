"""Tests for event persistence and scoped queries."""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ref_event import RefEvent
from app.services.event_store import (
    DuplicateEventError,
    EventStoreError,
    count_by_address,
    find_cached_location,
    insert_event,
    now_ns,
    query_by_scope,
    repair,
)
from app.utils.access_scope import derive_scope

from conftest import LOCATED, add_event

SCOPE = derive_scope("1234", "s")
OTHER_SCOPE = derive_scope("9999", "s")
MAX_NS = 2**63 - 1


def _new_event(**kwargs) -> RefEvent:
    defaults = {
        "id": str(uuid4()),
        "name": "promo",
        "destination": "https://example.com",
        "request_address": "9.9.9.9",
        "user_agent": "Mozilla/5.0",
        "access_scope_hash": SCOPE,
    }
    defaults.update(kwargs)
    return RefEvent(**defaults)


class TestInsertEvent:
    async def test_insert_assigns_created_at(self, db: AsyncSession):
        before = now_ns()
        event = await insert_event(db, _new_event(created_at=1))
        assert event.created_at >= before

        stored = (await db.execute(select(RefEvent).where(RefEvent.id == event.id))).scalar_one()
        assert stored.created_at == event.created_at

    async def test_duplicate_id(self, db: AsyncSession):
        await insert_event(db, _new_event(id="req-1"))
        with pytest.raises(DuplicateEventError):
            await insert_event(db, _new_event(id="req-1"))

        rows = (await db.execute(select(RefEvent).where(RefEvent.id == "req-1"))).scalars().all()
        assert len(rows) == 1

    async def test_storage_failure(self, db: AsyncSession):
        failure = OperationalError("INSERT", {}, Exception("disk full"))
        with patch.object(db, "flush", AsyncMock(side_effect=failure)):
            with pytest.raises(EventStoreError) as exc_info:
                await insert_event(db, _new_event())
        assert not isinstance(exc_info.value, DuplicateEventError)


class TestQueryByScope:
    async def test_only_own_scope(self, db: AsyncSession):
        mine = await add_event(db, **LOCATED)
        await add_event(db, access_scope_hash=OTHER_SCOPE, **LOCATED)

        events = await query_by_scope(db, SCOPE, 0, MAX_NS)
        assert [e.id for e in events] == [mine.id]

    async def test_excludes_unlocated(self, db: AsyncSession):
        await add_event(db)
        located = await add_event(db, **LOCATED)

        events = await query_by_scope(db, SCOPE, 0, MAX_NS)
        assert [e.id for e in events] == [located.id]

    async def test_insertion_order(self, db: AsyncSession):
        base = now_ns()
        third = await add_event(db, created_at=base + 3, **LOCATED)
        first = await add_event(db, created_at=base + 1, **LOCATED)
        second = await add_event(db, created_at=base + 2, **LOCATED)

        events = await query_by_scope(db, SCOPE, 0, MAX_NS)
        assert [e.id for e in events] == [first.id, second.id, third.id]

    async def test_time_range_exclusive(self, db: AsyncSession):
        inside = await add_event(db, created_at=150, **LOCATED)
        await add_event(db, created_at=100, **LOCATED)
        await add_event(db, created_at=200, **LOCATED)

        events = await query_by_scope(db, SCOPE, 100, 200)
        assert [e.id for e in events] == [inside.id]

    async def test_name_and_address_filters(self, db: AsyncSession):
        match = await add_event(db, name="promo", request_address="1.1.1.1", **LOCATED)
        await add_event(db, name="promo", request_address="2.2.2.2", **LOCATED)
        await add_event(db, name="other", request_address="1.1.1.1", **LOCATED)

        events = await query_by_scope(db, SCOPE, 0, MAX_NS, name="promo", address="1.1.1.1")
        assert [e.id for e in events] == [match.id]

    async def test_empty_scope(self, db: AsyncSession):
        await add_event(db, access_scope_hash="", **LOCATED)
        assert await query_by_scope(db, "", 0, MAX_NS) == []


class TestCountByAddress:
    async def test_counts_window(self, db: AsyncSession):
        for created_at in (110, 120, 130):
            await add_event(db, created_at=created_at, request_address="5.5.5.5")
        await add_event(db, created_at=90, request_address="5.5.5.5")
        await add_event(db, created_at=120, request_address="7.7.7.7")

        assert await count_by_address(db, "5.5.5.5", 100, 200) == 3

    async def test_zero(self, db: AsyncSession):
        assert await count_by_address(db, "5.5.5.5", 0, MAX_NS) == 0


class TestFindCachedLocation:
    async def test_hit_returns_most_recent(self, db: AsyncSession):
        await add_event(db, created_at=100, **LOCATED)
        await add_event(db, created_at=200, **{**LOCATED, "city": "Potsdam"})
        await add_event(db, created_at=300)  # unresolved, ignored

        location = await find_cached_location(db, "9.9.9.9")
        assert location is not None
        assert location.city == "Potsdam"

    async def test_miss(self, db: AsyncSession):
        await add_event(db)
        assert await find_cached_location(db, "9.9.9.9") is None

    async def test_horizon(self, db: AsyncSession):
        await add_event(db, created_at=100, **LOCATED)
        assert await find_cached_location(db, "9.9.9.9", since_ns=500) is None

    async def test_empty_address(self, db: AsyncSession):
        assert await find_cached_location(db, "") is None


class TestRepair:
    async def test_deletes_unscoped(self, db: AsyncSession):
        await add_event(db, access_scope_hash="")
        await add_event(db, access_scope_hash=None)
        kept = await add_event(db, **LOCATED)

        report = await repair(db)

        assert report.deleted_unscoped == 2
        rows = (await db.execute(select(RefEvent))).scalars().all()
        assert [r.id for r in rows] == [kept.id]

    async def test_backfills_from_same_address(self, db: AsyncSession):
        await add_event(db, request_address="4.4.4.4", **LOCATED)
        missing = await add_event(db, request_address="4.4.4.4")

        report = await repair(db)

        assert report.backfilled == 1
        assert report.unresolved == 0
        await db.refresh(missing)
        assert missing.postal_code == LOCATED["postal_code"]
        assert missing.latitude == LOCATED["latitude"]
        assert missing.city == LOCATED["city"]

    async def test_leaves_unresolvable(self, db: AsyncSession):
        lonely = await add_event(db, request_address="3.3.3.3")

        report = await repair(db)

        assert report.backfilled == 0
        assert report.unresolved == 1
        await db.refresh(lonely)
        assert lonely.latitude is None
