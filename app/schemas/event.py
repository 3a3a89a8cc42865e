"""Click event schemas for ingestion and viewing."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ClickRequest(BaseModel):
    """Raw inputs of one redirect request, before validation."""

    ref: str | None = None
    dst: str | None = None
    pin_hash: str | None = None
    request_id: str | None = None
    forwarded_for: str | None = None
    peer_address: str | None = None
    user_agent: str = ""


class IngestionOutcome(str, Enum):
    """Terminal state of the ingestion pipeline."""

    REDIRECTED = "redirected"
    ALREADY_RECORDED = "already_recorded"
    REJECTED_INVALID_INPUT = "rejected_invalid_input"
    REJECTED_ABUSE = "rejected_abuse"
    FAILED_PERSIST = "failed_persist"


class IngestionResult(BaseModel):
    """Response the redirect endpoint should produce."""

    outcome: IngestionOutcome
    status_code: int
    location: str | None = None
    event_id: str | None = None
    detail: str | None = None


class EventView(BaseModel):
    """Click event as returned by the view endpoints."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: int = Field(description="Nanoseconds since epoch")
    name: str
    destination: str
    request_address: str
    user_agent: str
    continent: str | None = None
    country: str | None = None
    region: str | None = None
    city: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    time_human: str | None = None


class RepairReport(BaseModel):
    """Summary of one repair pass."""

    deleted_unscoped: int = 0
    backfilled: int = 0
    unresolved: int = 0
