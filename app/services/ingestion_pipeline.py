"""Ingestion pipeline for referral clicks.

Every redirect request runs the same sequence of stages:

    ValidateInput → CheckAbuse → ResolveGeo → Persist → Redirect

Validation and abuse checks can reject the request. Geolocation failures
are absorbed and the event is stored without a location. Storage failures
are fatal: the click is not recorded and the browser is not redirected.
"""

import logging
from uuid import uuid4

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.models.ref_event import RefEvent
from app.schemas.event import ClickRequest, IngestionOutcome, IngestionResult
from app.schemas.geo import GeoResult, GeoStatus
from app.services import event_store
from app.services.abuse_guard import REASON_DENYLISTED, AbuseGuard
from app.services.geo_resolver import GeoResolver
from app.utils.access_scope import derive_scope, is_scope_hash
from app.utils.url_validator import (
    first_forwarded_address,
    parse_address,
    validate_destination,
    validate_ref_name,
)

logger = logging.getLogger(__name__)

# Blocked attempts are kept out of the events table
audit_logger = logging.getLogger("app.audit.blocked")

UNKNOWN_REF = "unknown"
MAX_REQUEST_ID_LENGTH = 255


class IngestionPipeline:
    """Runs the guard, geolocation and persistence stages for one click."""

    def __init__(
        self,
        settings: Settings,
        abuse_guard: AbuseGuard,
        geo_resolver: GeoResolver,
    ):
        self.settings = settings
        self.abuse_guard = abuse_guard
        self.geo_resolver = geo_resolver
        self.default_scope = derive_scope(settings.PIN, settings.SALT)

    def _reject(
        self,
        outcome: IngestionOutcome,
        status_code: int,
        location: str,
        detail: str,
    ) -> IngestionResult:
        return IngestionResult(
            outcome=outcome,
            status_code=status_code,
            location=location,
            detail=detail,
        )

    def event_id_for(self, request_id: str | None) -> str:
        """Use the caller's request id as the event id, else a new UUID."""
        if request_id:
            request_id = request_id.strip()
            if request_id and len(request_id) <= MAX_REQUEST_ID_LENGTH:
                return request_id
            logger.warning("Ignoring unusable X-Request-Id header")
        return str(uuid4())

    async def resolve_geo(self, db: AsyncSession, address: str, user_agent: str) -> GeoResult:
        """Resolve the click location, skipping crawlers."""
        if self.geo_resolver.is_bot(user_agent):
            logger.debug(f"Skipping geolocation for crawler {user_agent[:80]!r}")
            return GeoResult(status=GeoStatus.SKIPPED)
        return await self.geo_resolver.resolve(db, address)

    async def ingest(self, db: AsyncSession, click: ClickRequest) -> IngestionResult:
        """
        Process one redirect request.

        Args:
            db: Database session
            click: Raw request inputs

        Returns:
            IngestionResult describing the response to send
        """
        settings = self.settings

        # ValidateInput
        name = click.ref or UNKNOWN_REF
        is_valid, error = validate_ref_name(name, settings.MAX_REF_LENGTH)
        if not is_valid:
            logger.info(f"Rejected oversize ref name from {click.forwarded_for or click.peer_address}")
            return self._reject(
                IngestionOutcome.REJECTED_INVALID_INPUT,
                status.HTTP_400_BAD_REQUEST,
                settings.DETERRENT_OVERSIZE_URL,
                error,
            )

        destination = click.dst or settings.DEFAULT_DESTINATION
        is_valid, error = validate_destination(destination)
        if not is_valid:
            logger.info(f"Rejected invalid destination {destination[:100]!r}: {error}")
            return self._reject(
                IngestionOutcome.REJECTED_INVALID_INPUT,
                status.HTTP_400_BAD_REQUEST,
                settings.DETERRENT_INVALID_URL,
                error,
            )

        scope = self.default_scope
        if click.pin_hash:
            if not is_scope_hash(click.pin_hash):
                logger.info(f"Rejected malformed pin_hash {click.pin_hash[:80]!r}")
                return self._reject(
                    IngestionOutcome.REJECTED_INVALID_INPUT,
                    status.HTTP_400_BAD_REQUEST,
                    settings.DETERRENT_INVALID_URL,
                    "pin_hash must be a 64-character lowercase hex digest",
                )
            scope = click.pin_hash

        event_id = self.event_id_for(click.request_id)
        forwarded = first_forwarded_address(click.forwarded_for)
        if click.forwarded_for and forwarded is None:
            logger.debug(f"Ignoring unparseable X-Forwarded-For {click.forwarded_for[:80]!r}")
        address = forwarded or parse_address(click.peer_address) or ""

        # CheckAbuse
        decision = await self.abuse_guard.should_block(db, address)
        if decision.blocked:
            audit_logger.warning(
                f"Blocked {address} ({decision.reason}, count={decision.count}) "
                f"request {event_id} ref={name!r} dst={destination[:100]!r}"
            )
            if decision.reason == REASON_DENYLISTED:
                return self._reject(
                    IngestionOutcome.REJECTED_ABUSE,
                    status.HTTP_403_FORBIDDEN,
                    settings.DETERRENT_BLOCKED_URL,
                    "Address is blocked",
                )
            return self._reject(
                IngestionOutcome.REJECTED_ABUSE,
                status.HTTP_429_TOO_MANY_REQUESTS,
                settings.DETERRENT_RATE_LIMIT_URL,
                "Too many requests",
            )

        # ResolveGeo
        geo = await self.resolve_geo(db, address, click.user_agent)

        # Persist
        event = RefEvent(
            id=event_id,
            name=name,
            destination=destination,
            request_address=address,
            user_agent=click.user_agent,
            access_scope_hash=scope,
        )
        event.apply_geolocation(geo.location)

        try:
            await event_store.insert_event(db, event)
        except event_store.DuplicateEventError:
            logger.info(f"Request {event_id} from {address} was already recorded")
            return IngestionResult(
                outcome=IngestionOutcome.ALREADY_RECORDED,
                status_code=status.HTTP_307_TEMPORARY_REDIRECT,
                location=destination,
                event_id=event_id,
            )
        except event_store.EventStoreError as e:
            logger.error(f"Failed to record click {event_id} from {address}: {e}")
            return IngestionResult(
                outcome=IngestionOutcome.FAILED_PERSIST,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                event_id=event_id,
                detail="Failed to record click",
            )

        if not geo.resolved:
            logger.debug(f"Storing click {event_id} without a location ({geo.status.value})")
        logger.info(
            f"Recorded click {event_id} ref={name!r} from {address} "
            f"(geo={geo.status.value}) -> {destination[:100]}"
        )

        # Redirected
        return IngestionResult(
            outcome=IngestionOutcome.REDIRECTED,
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
            location=destination,
            event_id=event_id,
        )
