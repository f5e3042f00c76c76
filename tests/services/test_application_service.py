"""
ApplicationService: officer-driven workflow moves.
"""

from uuid import uuid4

import pytest

from solar_kernel.exceptions import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStatusTransitionError,
    ValidationError,
)
from solar_kernel.models.application import Application, ApplicationStatus
from solar_kernel.services.application_service import ApplicationService


@pytest.fixture
def applications(session, deterministic_clock):
    return ApplicationService(session, deterministic_clock)


@pytest.fixture
def pending_application(make_application, customer):
    return make_application(customer.id, ApplicationStatus.PENDING)


class TestAdvanceStatus:

    def test_moves_forward(self, applications, pending_application, officer):
        info = applications.advance_status(
            pending_application.id, "under_review", officer
        )
        assert info.status == "under_review"

    def test_may_skip_ahead(self, applications, pending_application, officer):
        info = applications.advance_status(
            pending_application.id, ApplicationStatus.APPROVED, officer
        )
        assert info.status == "approved"

    def test_backwards_rejected(self, applications, application, officer):
        with pytest.raises(InvalidStatusTransitionError):
            applications.advance_status(application.id, "under_review", officer)

    def test_same_status_rejected(self, applications, application, officer):
        with pytest.raises(InvalidStatusTransitionError):
            applications.advance_status(application.id, "finding_installer", officer)

    def test_reject_requires_reason(self, applications, pending_application, officer):
        with pytest.raises(ValidationError):
            applications.advance_status(pending_application.id, "rejected", officer, "  ")

    def test_reject_with_reason(self, session, applications, pending_application, officer):
        info = applications.advance_status(
            pending_application.id, "rejected", officer, " roof too small "
        )

        assert info.status == "rejected"
        assert info.rejection_reason == "roof too small"
        assert session.get(Application, pending_application.id).is_terminal

    def test_terminal_application_is_frozen(
        self, applications, pending_application, officer
    ):
        applications.advance_status(pending_application.id, "rejected", officer, "no")

        with pytest.raises(InvalidStatusTransitionError):
            applications.advance_status(pending_application.id, "approved", officer)

    def test_unknown_status(self, applications, application, officer):
        with pytest.raises(ValidationError):
            applications.advance_status(application.id, "teleported", officer)

    def test_customer_forbidden(self, applications, application, customer):
        with pytest.raises(ForbiddenError):
            applications.advance_status(application.id, "completed", customer)

    def test_unknown_application(self, applications, officer):
        with pytest.raises(ApplicationNotFoundError):
            applications.advance_status(uuid4(), "completed", officer)

    def test_logs_transition(self, applications, application, officer, captured_logs):
        applications.advance_status(application.id, "installation_in_progress", officer)

        (record,) = [
            r for r in captured_logs() if r["message"] == "application_status_changed"
        ]
        assert record["from_status"] == "finding_installer"
        assert record["to_status"] == "installation_in_progress"


class TestGetApplication:

    def test_returns_snapshot(self, applications, application):
        info = applications.get_application(application.id)
        assert info.reference == application.reference
        assert info.status == "finding_installer"

    def test_unknown(self, applications):
        with pytest.raises(ApplicationNotFoundError):
            applications.get_application(uuid4())
