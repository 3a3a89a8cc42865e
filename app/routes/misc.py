"""Health, favicon and robots routes."""

from typing import Any

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import PlainTextResponse

from app.config import Settings
from app.dependencies import get_app_settings

router = APIRouter()

SERVICE_NAME = "reftracker"
SERVICE_VERSION = "0.1.0"


@router.get("/health", tags=["Health"])
async def health_check(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "OK",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@router.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/robots.txt", include_in_schema=False)
async def robots() -> PlainTextResponse:
    # Crawlers get at most one visit a day
    return PlainTextResponse("crawl-delay: 86400")
