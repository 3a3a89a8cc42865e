"""Geolocation value objects."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GeoLocation(BaseModel):
    """Approximate location for a network address.

    Immutable once obtained. Either every field is None (no lookup) or the
    fields come from one resolved lookup.
    """

    model_config = ConfigDict(frozen=True)

    continent: str | None = None
    country: str | None = None
    region: str | None = None
    city: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def empty(cls) -> "GeoLocation":
        """Location for an address that was not, or could not be, resolved."""
        return cls()

    @property
    def is_empty(self) -> bool:
        """True when there are no coordinates to map."""
        return self.latitude is None or self.longitude is None


class GeoStatus(str, Enum):
    """Outcome tag for a geolocation stage."""

    OK = "ok"
    CACHED = "cached"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    UPSTREAM_ERROR = "upstream_error"
    PARSE_ERROR = "parse_error"


class GeoResult(BaseModel):
    """Tagged result of resolving an address."""

    model_config = ConfigDict(frozen=True)

    status: GeoStatus
    location: GeoLocation = Field(default_factory=GeoLocation.empty)
    error: str | None = None

    @property
    def resolved(self) -> bool:
        """True when the location came from a lookup or the cache."""
        return self.status in (GeoStatus.OK, GeoStatus.CACHED)
