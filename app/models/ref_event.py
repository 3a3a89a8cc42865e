"""Referral click event model."""

from sqlalchemy import BigInteger, Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.schemas.geo import GeoLocation

GEO_COLUMNS = ("continent", "country", "region", "city", "postal_code", "latitude", "longitude")


class RefEvent(Base):
    """Represents one followed referral link."""

    __tablename__ = "ref_events"

    # Primary key: X-Request-Id when supplied, otherwise a generated UUID
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Nanoseconds since epoch, assigned at insert
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Click details
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(Text, nullable=False)
    request_address: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_agent: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Geolocation (all null or one resolved lookup)
    continent: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Visibility partition
    access_scope_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Indexes
    __table_args__ = (
        Index("ix_ref_events_address_created", "request_address", "created_at"),
        Index("ix_ref_events_scope_created", "access_scope_hash", "created_at"),
    )

    @property
    def geolocation(self) -> GeoLocation:
        """Location attached to this event (empty if never resolved)."""
        return GeoLocation(**{column: getattr(self, column) for column in GEO_COLUMNS})

    def apply_geolocation(self, location: GeoLocation) -> None:
        """Copy every location field from one lookup onto this row."""
        for column in GEO_COLUMNS:
            setattr(self, column, getattr(location, column))

    def __repr__(self) -> str:
        return f"<RefEvent(id={self.id}, name={self.name}, address={self.request_address})>"
