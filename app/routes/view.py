"""PIN-scoped event viewing routes."""

import logging

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.dependencies import get_view_gateway
from app.schemas.common import ErrorResponse, raise_api_error
from app.services.event_store import EventStoreError
from app.services.view_gateway import InvalidViewRequest, UnauthorizedError, ViewGateway

logger = logging.getLogger(__name__)

router = APIRouter()


async def _render(
    gateway: ViewGateway,
    db: AsyncSession,
    pin: str | None,
    view_range: str | None,
    fmt: str | None,
    name: str | None,
    ip: str | None,
) -> Response:
    try:
        view = await gateway.render(
            db,
            pin,
            view_range=view_range,
            name=name,
            address=ip,
            fmt=fmt,
        )
    except UnauthorizedError as e:
        raise_api_error(
            code="UNAUTHORIZED",
            message=str(e),
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    except InvalidViewRequest as e:
        raise_api_error(code="INVALID_VIEW_REQUEST", message=str(e))
    except EventStoreError as e:
        logger.error(f"Failed to load events for view: {e}")
        raise_api_error(
            code="STORAGE_ERROR",
            message="Failed to load events",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return Response(content=view.body, media_type=view.media_type)


@router.get("/view", responses={401: {"model": ErrorResponse}, 400: {"model": ErrorResponse}})
async def view_events(
    pin: str | None = Query(None, description="Viewer PIN"),
    range: str | None = Query(None, description="'day' (last 24 hours) or 'all'"),
    fmt: str | None = Query(None, description="'json', 'csv' or 'map'"),
    name: str | None = Query(None, description="Exact referral name filter"),
    ip: str | None = Query(None, description="Exact request address filter"),
    gateway: ViewGateway = Depends(get_view_gateway),
    db: AsyncSession = Depends(get_session),
) -> Response:
    """
    List recorded clicks visible to a PIN.

    Only clicks tagged with the scope derived from the PIN are returned, and
    only those with a resolved location.

    **Query Parameters:**
    - `pin`: Viewer PIN (required, 401 without it)
    - `range`: `day` (default) or `all`
    - `fmt`: `json` (default), `csv` or `map`
    - `name`, `ip`: Optional exact-match filters

    **Example:**
    ```
    GET /view?pin=1234&range=all&fmt=csv
    ```
    """
    return await _render(gateway, db, pin, range, fmt, name, ip)


@router.get("/view/map", responses={401: {"model": ErrorResponse}})
async def view_map(
    pin: str | None = Query(None, description="Viewer PIN"),
    range: str | None = Query(None, description="'day' (last 24 hours) or 'all'"),
    name: str | None = Query(None, description="Exact referral name filter"),
    ip: str | None = Query(None, description="Exact request address filter"),
    gateway: ViewGateway = Depends(get_view_gateway),
    db: AsyncSession = Depends(get_session),
) -> Response:
    """Render the clicks visible to a PIN as markers on a map."""
    return await _render(gateway, db, pin, range, "map", name, ip)
