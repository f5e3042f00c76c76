"""
Module: solar_kernel.models.application
Responsibility: ORM persistence for customer installation applications.
Architecture position: Kernel > Models.  May import from db/ and exceptions.

Invariants enforced:
    - Status moves forward along APPLICATION_WORKFLOW only; ``rejected`` is
      reachable from any non-terminal status.
    - rejection_reason is set iff status = rejected.

Failure modes:
    - InvalidStatusTransitionError from advance_status().
    - ValidationError when rejecting without a reason.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from solar_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from solar_kernel.db.types import status_column_type
from solar_kernel.exceptions import InvalidStatusTransitionError, ValidationError


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    SITE_VISIT_SCHEDULED = "site_visit_scheduled"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    FINDING_INSTALLER = "finding_installer"
    INSTALLATION_IN_PROGRESS = "installation_in_progress"
    INSTALLATION_COMPLETE = "installation_complete"
    FINAL_INSPECTION = "final_inspection"
    AGREEMENT_PENDING = "agreement_pending"
    COMPLETED = "completed"


# Forward order of the application workflow.  REJECTED sits outside it.
APPLICATION_WORKFLOW: tuple[ApplicationStatus, ...] = (
    ApplicationStatus.PENDING,
    ApplicationStatus.UNDER_REVIEW,
    ApplicationStatus.SITE_VISIT_SCHEDULED,
    ApplicationStatus.APPROVED,
    ApplicationStatus.PAYMENT_PENDING,
    ApplicationStatus.PAYMENT_CONFIRMED,
    ApplicationStatus.FINDING_INSTALLER,
    ApplicationStatus.INSTALLATION_IN_PROGRESS,
    ApplicationStatus.INSTALLATION_COMPLETE,
    ApplicationStatus.FINAL_INSPECTION,
    ApplicationStatus.AGREEMENT_PENDING,
    ApplicationStatus.COMPLETED,
)

TERMINAL_APPLICATION_STATUSES = frozenset(
    {ApplicationStatus.REJECTED, ApplicationStatus.COMPLETED}
)


class Application(TrackedBase):
    """
    A customer's solar installation request.

    Contract:
        Status changes go through ``advance_status()``; assigning ``status``
        directly bypasses the workflow check and is reserved for fixtures.
    """

    __tablename__ = "applications"

    __table_args__ = (
        UniqueConstraint("reference", name="uq_application_reference"),
        Index("idx_application_customer", "customer_id"),
        CheckConstraint(
            "(status = 'rejected') = (rejection_reason IS NOT NULL)",
            name="ck_application_rejection_reason",
        ),
    )

    # Human-readable reference (e.g. "APP-2024-0001")
    reference: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[ApplicationStatus] = mapped_column(
        status_column_type(ApplicationStatus),
        default=ApplicationStatus.PENDING,
        nullable=False,
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    installer_organization_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    selected_package_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    documents: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    technical_details: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False
    )

    site_visit_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<Application {self.reference}: {self.status.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPLICATION_STATUSES

    def advance_status(
        self,
        new_status: ApplicationStatus,
        rejection_reason: str | None = None,
    ) -> None:
        """Move the application forward in its workflow.

        Preconditions: the application is not terminal; ``new_status`` is
            REJECTED or strictly later in APPLICATION_WORKFLOW.
        Postconditions: status is ``new_status``; rejection_reason is set
            only for REJECTED.
        """
        if self.is_terminal:
            raise InvalidStatusTransitionError(
                "Application", self.status.value, new_status.value
            )

        if new_status == ApplicationStatus.REJECTED:
            if not rejection_reason or not rejection_reason.strip():
                raise ValidationError("rejection_reason", "required when rejecting")
            self.status = new_status
            self.rejection_reason = rejection_reason.strip()
            return

        current = APPLICATION_WORKFLOW.index(self.status)
        target = APPLICATION_WORKFLOW.index(new_status)
        if target <= current:
            raise InvalidStatusTransitionError(
                "Application", self.status.value, new_status.value
            )
        self.status = new_status
