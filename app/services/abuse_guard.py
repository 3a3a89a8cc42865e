"""Denylist and sliding-window request limiting per client address."""

import logging

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.services import event_store

logger = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000

REASON_DENYLISTED = "denylisted"
REASON_RATE_LIMITED = "rate_limited"


class AbuseDecision(BaseModel):
    """Outcome of the abuse check for one request."""

    blocked: bool
    reason: str | None = None
    count: int | None = None


class AbuseGuard:
    """Decides whether a request from an address should be blocked.

    The window is recomputed from the events table on every request, so it
    uses the same clock and unit (nanoseconds) as event insertion.
    """

    def __init__(self, settings: Settings):
        self.denylist = settings.blocked_ips_set
        self.threshold = settings.ABUSE_THRESHOLD
        self.window_ns = settings.ABUSE_WINDOW_SECONDS * NANOS_PER_SECOND

    def is_denylisted(self, address: str) -> bool:
        return address in self.denylist

    async def should_block(
        self,
        db: AsyncSession,
        address: str,
        now: int | None = None,
    ) -> AbuseDecision:
        """
        Check an address against the denylist and the request window.

        Fails open: if the count query fails the request is allowed.

        Args:
            db: Database session
            address: Client network address
            now: Current time in nanoseconds (defaults to the wall clock)

        Returns:
            AbuseDecision with the block flag, reason and observed count
        """
        if self.is_denylisted(address):
            return AbuseDecision(blocked=True, reason=REASON_DENYLISTED)

        now = now if now is not None else event_store.now_ns()
        try:
            count = await event_store.count_by_address(db, address, now - self.window_ns, now)
        except event_store.EventStoreError as e:
            logger.error(f"Abuse check failed for {address}, allowing request: {e}")
            return AbuseDecision(blocked=False)

        logger.debug(f"{address} made {count} requests in the last {self.window_ns // NANOS_PER_SECOND}s")

        if count > self.threshold:
            return AbuseDecision(blocked=True, reason=REASON_RATE_LIMITED, count=count)
        return AbuseDecision(blocked=False, count=count)
