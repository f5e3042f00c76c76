"""
MeterReadingService -- recording energy telemetry.

Responsibility:
    Stores meter readings entered by officers and readings pushed by
    registered meter devices, and verifies the HMAC-SHA256 signature that
    devices attach to their payloads.

Architecture position:
    Kernel > Services -- imperative shell.  The device registry is
    configuration; the HTTP layer looks the device up and passes its
    secret to verify_device_signature().

Invariants enforced:
    - kWh figures are non-negative (also a table check constraint).
    - Officer-entered readings require an officer principal.
    - Signatures are compared in constant time.
"""

import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from solar_kernel.db.types import ENERGY_DECIMAL_PLACES, round_money, to_decimal
from solar_kernel.domain.dtos import MeterReadingInfo, Principal
from solar_kernel.domain.policy import Action, require
from solar_kernel.exceptions import ValidationError
from solar_kernel.logging_config import get_logger
from solar_kernel.models.meter_reading import MeterReading
from solar_kernel.services.base import BaseService

logger = get_logger("services.meter_reading")


def verify_device_signature(secret: str, payload: bytes, signature: str) -> bool:
    """True iff ``signature`` is the hex HMAC-SHA256 of ``payload`` under ``secret``."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _energy(value, field: str) -> Decimal:
    try:
        amount = round_money(to_decimal(value), ENERGY_DECIMAL_PLACES)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(field, f"not a number: {value!r}") from None
    if amount < 0:
        raise ValidationError(field, "must not be negative")
    return amount


class MeterReadingService(BaseService):

    verify_device_signature = staticmethod(verify_device_signature)

    def record_reading(
        self,
        application_id: UUID,
        reading_date: datetime,
        kwh_generated,
        kwh_exported,
        kwh_imported,
        principal: Principal,
        notes: str | None = None,
    ) -> MeterReadingInfo:
        """Officer-entered reading."""
        require(principal, Action.RECORD_READING)
        return self._store(
            application_id,
            reading_date,
            kwh_generated,
            kwh_exported,
            kwh_imported,
            source=f"officer:{principal.id}",
            notes=notes,
        )

    def record_device_reading(
        self,
        device_id: str,
        application_id: UUID,
        reading_date: datetime,
        kwh_generated,
        kwh_exported,
        kwh_imported,
    ) -> MeterReadingInfo:
        """Reading pushed by a registered device whose signature was verified."""
        return self._store(
            application_id,
            reading_date,
            kwh_generated,
            kwh_exported,
            kwh_imported,
            source=device_id,
        )

    def _store(
        self,
        application_id: UUID,
        reading_date: datetime,
        kwh_generated,
        kwh_exported,
        kwh_imported,
        source: str,
        notes: str | None = None,
    ) -> MeterReadingInfo:
        generated = _energy(kwh_generated, "kwh_generated")
        exported = _energy(kwh_exported, "kwh_exported")
        imported = _energy(kwh_imported, "kwh_imported")
        if reading_date is None:
            raise ValidationError("reading_date", "required")
        self.gateway.require_application(application_id)

        now = self.clock.now()
        reading = self.gateway.add(
            MeterReading(
                application_id=application_id,
                reading_date=reading_date,
                kwh_generated=generated,
                kwh_exported=exported,
                kwh_imported=imported,
                source=source,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "meter_reading_recorded",
            extra={
                "application_id": str(application_id),
                "reading_id": str(reading.id),
                "source": source,
                "reading_date": reading_date.isoformat(),
            },
        )
        return MeterReadingInfo.from_model(reading)
