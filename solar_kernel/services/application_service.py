"""
ApplicationService -- officer-driven application workflow moves.

Responsibility:
    Advances an application along its workflow (or rejects it) on behalf
    of an officer.  The transition rules themselves live on
    ``Application.advance_status()``.

Architecture position:
    Kernel > Services -- imperative shell.

Failure modes:
    - ApplicationNotFoundError.
    - ForbiddenError: non-officer principal.
    - InvalidStatusTransitionError / ValidationError from the model.
"""

from uuid import UUID

from solar_kernel.domain.dtos import ApplicationInfo, Principal
from solar_kernel.domain.policy import Action, require
from solar_kernel.exceptions import ValidationError
from solar_kernel.logging_config import get_logger
from solar_kernel.models.application import ApplicationStatus
from solar_kernel.services.base import BaseService

logger = get_logger("services.application")


class ApplicationService(BaseService):

    def get_application(self, application_id: UUID) -> ApplicationInfo:
        return ApplicationInfo.from_model(self.gateway.require_application(application_id))

    def advance_status(
        self,
        application_id: UUID,
        new_status: ApplicationStatus | str,
        principal: Principal,
        rejection_reason: str | None = None,
    ) -> ApplicationInfo:
        require(principal, Action.ADVANCE_APPLICATION)
        try:
            new_status = ApplicationStatus(new_status)
        except ValueError:
            raise ValidationError(
                "status", f"unknown application status {new_status!r}"
            ) from None

        application = self.gateway.require_application(application_id)
        from_status = application.status
        application.advance_status(new_status, rejection_reason)
        self.session.flush()

        logger.info(
            "application_status_changed",
            extra={
                "application_id": str(application_id),
                "from_status": from_status.value,
                "to_status": new_status.value,
                "actor_id": str(principal.id),
            },
        )
        return ApplicationInfo.from_model(application)
