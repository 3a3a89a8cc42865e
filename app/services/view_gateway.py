"""Scoped viewing of recorded click events as JSON, CSV or a map."""

import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from zoneinfo import ZoneInfo

from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.models.ref_event import RefEvent
from app.schemas.event import EventView
from app.services import event_store
from app.utils.access_scope import derive_scope

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

NANOS_PER_SECOND = 1_000_000_000
MAX_TIMESTAMP_NS = 2**63 - 1

CSV_COLUMNS = [
    "id",
    "created_at",
    "name",
    "destination",
    "address",
    "continent",
    "country",
    "region",
    "city",
    "user_agent",
]


class UnauthorizedError(Exception):
    """The viewer did not supply a PIN."""

    pass


class InvalidViewRequest(Exception):
    """Unknown range or output format."""

    pass


class ViewRange(str, Enum):
    DAY = "day"
    ALL = "all"


class ViewFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    MAP = "map"


MEDIA_TYPES = {
    ViewFormat.JSON: "application/json",
    ViewFormat.CSV: "text/csv; charset=utf-8",
    ViewFormat.MAP: "text/html; charset=utf-8",
}


@dataclass(frozen=True)
class RenderedView:
    body: bytes
    media_type: str


def parse_range(value: str | None) -> ViewRange:
    if not value:
        return ViewRange.DAY
    try:
        return ViewRange(value.lower())
    except ValueError as e:
        raise InvalidViewRequest(f"Unknown range {value!r} (expected 'day' or 'all')") from e


def parse_format(value: str | None) -> ViewFormat:
    if not value:
        return ViewFormat.JSON
    try:
        return ViewFormat(value.lower())
    except ValueError as e:
        raise InvalidViewRequest(f"Unknown format {value!r} (expected 'json', 'csv' or 'map')") from e


class ViewGateway:
    """Authenticates viewers by PIN and renders their scope's events."""

    def __init__(self, settings: Settings):
        self.salt = settings.SALT
        self.tz = ZoneInfo(settings.DISPLAY_TIMEZONE)

    def scope_for(self, pin: str | None) -> str:
        """Derive the access scope for a PIN, rejecting a missing one."""
        if not pin:
            raise UnauthorizedError('add "pin" query param')
        return derive_scope(pin, self.salt)

    def time_bounds(self, view_range: ViewRange, now_ns: int | None = None) -> tuple[int, int]:
        """Exclusive created_at bounds for a view range."""
        if view_range is ViewRange.ALL:
            return 0, MAX_TIMESTAMP_NS
        now_ns = now_ns if now_ns is not None else event_store.now_ns()
        day_ns = int(timedelta(hours=24).total_seconds()) * NANOS_PER_SECOND
        return now_ns - day_ns, now_ns

    def format_time(self, created_at: int) -> str:
        """RFC3339 timestamp in the display timezone."""
        moment = datetime.fromtimestamp(created_at // NANOS_PER_SECOND, tz=self.tz)
        return moment.isoformat(timespec="seconds")

    def to_view(self, event: RefEvent) -> EventView:
        view = EventView.model_validate(event)
        return view.model_copy(update={"time_human": self.format_time(event.created_at)})

    async def fetch_events(
        self,
        db: AsyncSession,
        pin: str | None,
        view_range: ViewRange = ViewRange.DAY,
        name: str | None = None,
        address: str | None = None,
    ) -> list[EventView]:
        """
        Get the events a PIN may see.

        Raises:
            UnauthorizedError: If no PIN was supplied
            EventStoreError: If the query fails
        """
        scope = self.scope_for(pin)
        from_ns, to_ns = self.time_bounds(view_range)
        events = await event_store.query_by_scope(
            db, scope, from_ns, to_ns, name=name, address=address
        )
        logger.debug(f"Viewer scope {scope[:8]} matched {len(events)} events")
        return [self.to_view(event) for event in events]

    def render_json(self, events: list[EventView]) -> bytes:
        return json.dumps([event.model_dump() for event in events], indent=1).encode("utf-8")

    def render_csv(self, events: list[EventView]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for event in events:
            writer.writerow(
                [
                    event.id,
                    event.time_human,
                    event.name,
                    event.destination,
                    event.request_address,
                    event.continent or "",
                    event.country or "",
                    event.region or "",
                    event.city or "",
                    event.user_agent.replace(",", ";"),
                ]
            )
        return buffer.getvalue().encode("utf-8")

    def render_map(self, events: list[EventView]) -> bytes:
        template = templates.get_template("view/map.html")
        return template.render(events=[event.model_dump() for event in events]).encode("utf-8")

    async def render(
        self,
        db: AsyncSession,
        pin: str | None,
        view_range: str | None = None,
        name: str | None = None,
        address: str | None = None,
        fmt: str | None = None,
    ) -> RenderedView:
        """
        Render a scope's events in the requested format.

        Args:
            db: Database session
            pin: Viewer PIN
            view_range: "day" (default) or "all"
            name: Optional exact referral name filter
            address: Optional exact request address filter
            fmt: "json" (default), "csv" or "map"

        Returns:
            Rendered body and its media type

        Raises:
            UnauthorizedError: If no PIN was supplied
            InvalidViewRequest: If the range or format is unknown
        """
        self.scope_for(pin)
        scope_range = parse_range(view_range)
        view_format = parse_format(fmt)
        events = await self.fetch_events(db, pin, scope_range, name=name, address=address)

        if view_format is ViewFormat.CSV:
            body = self.render_csv(events)
        elif view_format is ViewFormat.MAP:
            body = self.render_map(events)
        else:
            body = self.render_json(events)

        return RenderedView(body=body, media_type=MEDIA_TYPES[view_format])
