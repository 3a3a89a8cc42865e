"""Shared FastAPI dependencies."""

from fastapi import Request

from app.config import Settings
from app.services.ingestion_pipeline import IngestionPipeline
from app.services.view_gateway import ViewGateway


def get_app_settings(request: Request) -> Settings:
    """Settings the running application was built with."""
    return request.app.state.settings


def get_pipeline(request: Request) -> IngestionPipeline:
    """Ingestion pipeline wired at application startup."""
    return request.app.state.pipeline


def get_view_gateway(request: Request) -> ViewGateway:
    """View gateway wired at application startup."""
    return request.app.state.view_gateway


def get_client_host(request: Request) -> str | None:
    """Direct peer address of the request, if known."""
    if request.client:
        return request.client.host
    return None
