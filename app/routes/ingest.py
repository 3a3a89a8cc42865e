"""Referral click ingestion route."""

import logging

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.dependencies import get_client_host, get_pipeline
from app.schemas.common import ErrorResponse, raise_api_error
from app.schemas.event import ClickRequest, IngestionOutcome
from app.services.ingestion_pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/",
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    responses={500: {"model": ErrorResponse}},
)
async def track_ref(
    ref: str | None = Query(None, description="Referral tag"),
    dst: str | None = Query(None, description="Destination URL"),
    pin_hash: str | None = Query(None, description="Access scope to tag the click with"),
    x_request_id: str | None = Header(None),
    x_forwarded_for: str | None = Header(None),
    user_agent: str | None = Header(None),
    peer_address: str | None = Depends(get_client_host),
    pipeline: IngestionPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_session),
) -> RedirectResponse:
    """
    Record a referral click and redirect to its destination.

    This endpoint:
    1. Validates the referral tag and destination
    2. Rejects denylisted or over-active addresses
    3. Resolves the client location (cached, bounded by a timeout)
    4. Stores the click event
    5. Redirects to the destination (307 redirect)

    **Query Parameters:**
    - `ref`: Referral tag (max 40 characters, default "unknown")
    - `dst`: Destination URL (default: configured destination)
    - `pin_hash`: Optional access scope to tag the click with

    **Headers:**
    - `X-Request-Id`: Used as the event id so retries are recorded once
    - `X-Forwarded-For`: First entry is taken as the client address

    **Responses:**
    - 307: Click recorded (or already recorded), redirect to destination
    - 400: Invalid input, redirect to a deterrent page
    - 403 / 429: Blocked address, redirect to a deterrent page
    - 500: Click could not be recorded (no redirect)

    **Example:**
    ```
    GET /?ref=promo&dst=https%3A%2F%2Fexample.com
    → Records click and redirects to https://example.com
    ```
    """
    click = ClickRequest(
        ref=ref,
        dst=dst,
        pin_hash=pin_hash,
        request_id=x_request_id,
        forwarded_for=x_forwarded_for,
        peer_address=peer_address,
        user_agent=user_agent or "",
    )
    result = await pipeline.ingest(db, click)

    if result.outcome == IngestionOutcome.FAILED_PERSIST:
        raise_api_error(
            code="CLICK_NOT_RECORDED",
            message=result.detail or "Failed to record click",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"request_id": result.event_id},
        )

    return RedirectResponse(url=result.location, status_code=result.status_code)
