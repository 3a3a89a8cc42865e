"""IP geolocation with an event-backed cache and a bounded provider call."""

import asyncio
import logging
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.schemas.geo import GeoLocation, GeoResult, GeoStatus
from app.services import event_store
from app.utils.url_validator import is_public_address

logger = logging.getLogger(__name__)


class GeoLookupError(Exception):
    """Base exception for provider lookups."""

    pass


class GeoTimeoutError(GeoLookupError):
    """The provider did not answer before the deadline."""

    pass


class GeoUpstreamError(GeoLookupError):
    """The provider could not be reached or reported an error."""

    pass


class GeoParseError(GeoLookupError):
    """The provider answered with a payload we cannot use."""

    pass


def parse_provider_payload(data: Any) -> GeoLocation:
    """
    Convert an ipstack-style JSON payload into a GeoLocation.

    Args:
        data: Decoded JSON body

    Returns:
        Parsed location

    Raises:
        GeoUpstreamError: If the payload is a provider error report
        GeoParseError: If the payload is malformed or has no coordinates
    """
    if not isinstance(data, dict):
        raise GeoParseError(f"Expected a JSON object, got {type(data).__name__}")

    if data.get("success") is False:
        error = data.get("error") or {}
        info = error.get("info") if isinstance(error, dict) else error
        raise GeoUpstreamError(f"Provider error: {info or 'unknown'}")

    try:
        latitude = float(data["latitude"])
        longitude = float(data["longitude"])
    except (KeyError, TypeError, ValueError) as e:
        raise GeoParseError(f"Missing or invalid coordinates: {e}") from e

    def text(key: str) -> str | None:
        value = data.get(key)
        return str(value) if value not in (None, "") else None

    return GeoLocation(
        continent=text("continent_name"),
        country=text("country_name"),
        region=text("region_name"),
        city=text("city"),
        postal_code=text("zip"),
        latitude=latitude,
        longitude=longitude,
    )


class GeoResolver:
    """Resolves client addresses to approximate locations.

    A previous event from the same address is reused before spending a
    provider lookup. The provider call is bounded by a deadline and is
    abandoned when the deadline elapses or the caller is cancelled.

    Usage:
        resolver = GeoResolver(settings)
        result = await resolver.resolve(db, "9.9.9.9")
        print(result.status, result.location.city)
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        """
        Initialize the resolver.

        Args:
            settings: Application settings
            client: HTTP client for provider calls (created if not given)
        """
        self.settings = settings
        self.base_url = settings.GEO_PROVIDER_URL.rstrip("/")
        self.default_deadline = settings.geo_timeout_seconds
        self.bot_markers = settings.bot_markers_list
        self.case_sensitive = settings.BOT_MATCH_CASE_SENSITIVE
        self._client = client or httpx.AsyncClient()

    def is_bot(self, user_agent: str | None) -> bool:
        """Check whether a user agent belongs to a known crawler."""
        if not user_agent:
            return False
        if self.case_sensitive:
            return any(marker in user_agent for marker in self.bot_markers)
        lowered = user_agent.lower()
        return any(marker.lower() in lowered for marker in self.bot_markers)

    async def cached(self, db: AsyncSession, address: str) -> GeoLocation | None:
        """Look up a previously resolved location for an address."""
        since_ns = None
        if self.settings.GEO_CACHE_HORIZON_HOURS is not None:
            horizon = timedelta(hours=self.settings.GEO_CACHE_HORIZON_HOURS)
            since_ns = event_store.now_ns() - int(horizon.total_seconds() * 1_000_000_000)
        return await event_store.find_cached_location(db, address, since_ns=since_ns)

    async def lookup(self, address: str, deadline: float | None = None) -> GeoLocation:
        """
        Query the provider for an address, bounded by a deadline.

        Args:
            address: Client network address
            deadline: Seconds to wait (defaults to GEO_TIMEOUT_MS)

        Returns:
            Resolved location

        Raises:
            GeoTimeoutError: If the deadline elapses
            GeoUpstreamError: If the request fails or the provider reports an error
            GeoParseError: If the response body is malformed
        """
        timeout = deadline if deadline is not None else self.default_deadline
        try:
            return await asyncio.wait_for(self._fetch(address), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise GeoTimeoutError(f"No provider answer within {timeout:.3f}s") from e

    async def _fetch(self, address: str) -> GeoLocation:
        try:
            response = await self._client.get(
                f"{self.base_url}/{address}",
                params={"access_key": self.settings.GEO_API_KEY},
            )
        except httpx.TimeoutException as e:
            raise GeoTimeoutError(f"Provider request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GeoUpstreamError(f"Provider request failed: {e}") from e

        if response.status_code != 200:
            raise GeoUpstreamError(f"Provider returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise GeoParseError(f"Provider returned invalid JSON: {e}") from e

        return parse_provider_payload(data)

    async def resolve(
        self,
        db: AsyncSession,
        address: str,
        deadline: float | None = None,
    ) -> GeoResult:
        """
        Resolve an address: cache first, provider on a miss.

        Never raises for lookup failures; the failure is reported in the
        result status and the location is empty. Addresses that are not
        public IPs are skipped without touching the cache or the provider.
        """
        if not is_public_address(address):
            logger.debug(f"Skipping geolocation for non-public address {address[:80]!r}")
            return GeoResult(
                status=GeoStatus.SKIPPED,
                location=GeoLocation.empty(),
                error="Not a public IP address",
            )

        try:
            location = await self.cached(db, address)
        except event_store.EventStoreError as e:
            logger.warning(f"Location cache unavailable for {address}: {e}")
            location = None

        if location is not None:
            logger.debug(f"Location cache hit for {address}")
            return GeoResult(status=GeoStatus.CACHED, location=location)

        try:
            location = await self.lookup(address, deadline)
        except GeoTimeoutError as e:
            logger.warning(f"Geolocation timed out for {address}: {e}")
            return GeoResult(status=GeoStatus.TIMEOUT, error=str(e))
        except GeoParseError as e:
            logger.warning(f"Geolocation payload unusable for {address}: {e}")
            return GeoResult(status=GeoStatus.PARSE_ERROR, error=str(e))
        except GeoUpstreamError as e:
            logger.warning(f"Geolocation failed for {address}: {e}")
            return GeoResult(status=GeoStatus.UPSTREAM_ERROR, error=str(e))

        logger.info(f"Resolved {address} to {location.city}, {location.country}")
        return GeoResult(status=GeoStatus.OK, location=location)

    async def aclose(self) -> None:
        """Close the provider HTTP client."""
        await self._client.aclose()
