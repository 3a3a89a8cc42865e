"""Persistence and scoped queries for click events."""

import logging
import time

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ref_event import RefEvent
from app.schemas.event import RepairReport
from app.schemas.geo import GeoLocation

logger = logging.getLogger(__name__)


class EventStoreError(Exception):
    """Storage failure while reading or writing events."""

    pass


class DuplicateEventError(EventStoreError):
    """An event with the same id was already recorded."""

    pass


def now_ns() -> int:
    """Current time in nanoseconds since epoch (the created_at unit)."""
    return time.time_ns()


def _has_location():
    return (RefEvent.latitude.is_not(None)) & (RefEvent.longitude.is_not(None))


async def insert_event(db: AsyncSession, event: RefEvent) -> RefEvent:
    """
    Persist a new click event and commit it.

    `created_at` is always assigned here, at insert time.

    Args:
        db: Database session
        event: Event to insert (id must be set)

    Returns:
        The stored event

    Raises:
        DuplicateEventError: If an event with this id already exists
        EventStoreError: If the write fails for any other reason
    """
    event.created_at = now_ns()

    try:
        existing = await db.get(RefEvent, event.id)
        if existing is None:
            db.add(event)
            await db.flush()
            await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.info(f"Event {event.id} already recorded ({event.request_address})")
        raise DuplicateEventError(f"Event {event.id} already exists") from e
    except (SQLAlchemyError, OSError) as e:
        await db.rollback()
        logger.error(f"Failed to insert event {event.id} from {event.request_address}: {e}")
        raise EventStoreError(f"Failed to insert event {event.id}") from e

    if existing is not None:
        logger.info(f"Event {event.id} already recorded ({event.request_address})")
        raise DuplicateEventError(f"Event {event.id} already exists")

    logger.debug(f"Stored event {event.id} ({event.name} -> {event.destination[:100]})")
    return event


async def query_by_scope(
    db: AsyncSession,
    scope: str,
    from_ns: int,
    to_ns: int,
    name: str | None = None,
    address: str | None = None,
) -> list[RefEvent]:
    """
    Get events visible to one access scope.

    Only events with a resolved location are returned, in insertion order.

    Args:
        db: Database session
        scope: Access scope hash
        from_ns: Exclusive lower bound on created_at
        to_ns: Exclusive upper bound on created_at
        name: Optional exact referral name filter
        address: Optional exact request address filter

    Returns:
        Matching events
    """
    if not scope:
        return []

    query = select(RefEvent).where(
        RefEvent.access_scope_hash == scope,
        RefEvent.created_at > from_ns,
        RefEvent.created_at < to_ns,
        _has_location(),
    )

    if name:
        query = query.where(RefEvent.name == name)
    if address:
        query = query.where(RefEvent.request_address == address)

    query = query.order_by(RefEvent.created_at.asc(), RefEvent.id.asc())

    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        raise EventStoreError(f"Failed to query events: {e}") from e
    return list(result.scalars().all())


async def count_by_address(db: AsyncSession, address: str, from_ns: int, to_ns: int) -> int:
    """
    Count distinct events from an address within (from_ns, to_ns).

    Raises:
        EventStoreError: If the count query fails
    """
    query = select(func.count(func.distinct(RefEvent.id))).where(
        RefEvent.request_address == address,
        RefEvent.created_at > from_ns,
        RefEvent.created_at < to_ns,
    )
    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        await db.rollback()
        raise EventStoreError(f"Failed to count events for {address}: {e}") from e
    return result.scalar() or 0


async def find_cached_location(
    db: AsyncSession,
    address: str,
    since_ns: int | None = None,
) -> GeoLocation | None:
    """
    Get the most recent resolved location recorded for an address.

    Args:
        db: Database session
        address: Request address
        since_ns: Ignore events created before this time

    Returns:
        Cached location, or None on a cache miss
    """
    if not address:
        return None

    query = select(RefEvent).where(RefEvent.request_address == address, _has_location())
    if since_ns is not None:
        query = query.where(RefEvent.created_at > since_ns)
    query = query.order_by(RefEvent.created_at.desc()).limit(1)

    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        await db.rollback()
        raise EventStoreError(f"Failed to read location cache for {address}: {e}") from e

    event = result.scalar_one_or_none()
    return event.geolocation if event else None


async def repair(db: AsyncSession) -> RepairReport:
    """
    Offline maintenance pass over the events table.

    1. Deletes events without an access scope (legacy rows).
    2. Backfills the location of events missing a postal code from another
       event with the same address that has a resolved location.

    Events that cannot be backfilled are left unchanged and logged.

    Args:
        db: Database session

    Returns:
        Counts of deleted, backfilled and unresolved events
    """
    report = RepairReport()

    deleted = await db.execute(
        delete(RefEvent).where(
            or_(RefEvent.access_scope_hash.is_(None), RefEvent.access_scope_hash == "")
        )
    )
    report.deleted_unscoped = deleted.rowcount or 0
    if report.deleted_unscoped:
        logger.info(f"Deleted {report.deleted_unscoped} events without an access scope")

    missing = await db.execute(
        select(RefEvent)
        .where(or_(RefEvent.postal_code.is_(None), RefEvent.postal_code == ""))
        .order_by(RefEvent.created_at.asc())
    )

    # One cache lookup per address
    resolved: dict[str, GeoLocation | None] = {}
    for event in missing.scalars().all():
        address = event.request_address
        if address not in resolved:
            donor = await db.execute(
                select(RefEvent)
                .where(
                    RefEvent.request_address == address,
                    RefEvent.id != event.id,
                    RefEvent.postal_code.is_not(None),
                    RefEvent.postal_code != "",
                    _has_location(),
                )
                .order_by(RefEvent.created_at.desc())
                .limit(1)
            )
            donor_event = donor.scalar_one_or_none()
            resolved[address] = donor_event.geolocation if donor_event else None

        location = resolved[address]
        if location is None:
            report.unresolved += 1
            logger.warning(f"Could not backfill location for event {event.id} ({address})")
            continue

        event.apply_geolocation(location)
        report.backfilled += 1

    await db.flush()
    await db.commit()

    logger.info(
        f"Repair finished: deleted={report.deleted_unscoped} "
        f"backfilled={report.backfilled} unresolved={report.unresolved}"
    )
    return report
