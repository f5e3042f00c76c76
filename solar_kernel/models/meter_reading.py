"""
Module: solar_kernel.models.meter_reading
Responsibility: ORM persistence for periodic energy telemetry.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - kWh figures are non-negative.
    - A billing month is the UTC calendar month of reading_date; several
      readings per month are expected and summed by the billing engine.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from solar_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class MeterReading(TrackedBase):
    """One telemetry sample (or manual reading) for an application's meter."""

    __tablename__ = "meter_readings"

    __table_args__ = (
        CheckConstraint(
            "kwh_generated >= 0 AND kwh_exported >= 0 AND kwh_imported >= 0",
            name="ck_meter_reading_non_negative",
        ),
        Index("idx_meter_reading_app_date", "application_id", "reading_date"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )

    reading_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    kwh_generated: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False)

    kwh_exported: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False)

    kwh_imported: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False)

    # Device id for telemetry, free text for manual readings
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<MeterReading {self.application_id} @ {self.reading_date.isoformat()}>"
