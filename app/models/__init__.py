"""SQLAlchemy models."""

from app.models.ref_event import RefEvent

__all__ = [
    "RefEvent",
]
