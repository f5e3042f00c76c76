"""
solar_kernel.domain.policy -- Authorization decisions at the service boundary.

Responsibility:
    Decide whether a Principal may perform an Action on a target.  This is
    the one place role and ownership rules live; services call require()
    before any mutation and never inspect roles themselves.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The caller resolves
    the target's owner (customer_id) before asking.

Invariants:
    - Officers may perform every action.
    - Customers act only on targets they own (target.customer_id).
    - Installers submit bids only under their own organization and must
      carry one.
    - System actions (sweep, billing, meter readings, workflow moves) are
      officer-only whenever a principal is supplied.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from solar_kernel.domain.dtos import Principal, Role
from solar_kernel.exceptions import ForbiddenError


class Action(str, Enum):
    OPEN_SESSION = "open_session"
    SUBMIT_BID = "submit_bid"
    SELECT_BID = "select_bid"
    UPDATE_BID_STATUS = "update_bid_status"
    VIEW_BIDS = "view_bids"
    VIEW_ENERGY = "view_energy"
    SWEEP = "sweep"
    GENERATE_BILLS = "generate_bills"
    RECORD_READING = "record_reading"
    ADVANCE_APPLICATION = "advance_application"


# Actions reserved for officers (and for unattended system triggers)
OFFICER_ONLY_ACTIONS = frozenset(
    {
        Action.SWEEP,
        Action.GENERATE_BILLS,
        Action.RECORD_READING,
        Action.ADVANCE_APPLICATION,
    }
)

# Actions a customer may take on their own application
CUSTOMER_OWNED_ACTIONS = frozenset(
    {
        Action.OPEN_SESSION,
        Action.SELECT_BID,
        Action.UPDATE_BID_STATUS,
        Action.VIEW_BIDS,
        Action.VIEW_ENERGY,
    }
)


@dataclass(frozen=True)
class PolicyTarget:
    """What the action is aimed at, reduced to the facts the rules need."""

    customer_id: UUID | None = None
    organization_id: UUID | None = None


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


_ALLOW = PolicyDecision(True)


def evaluate(
    principal: Principal,
    action: Action,
    target: PolicyTarget | None = None,
) -> PolicyDecision:
    """Decide whether ``principal`` may perform ``action`` on ``target``.

    Returns:
        PolicyDecision.  ``reason`` is empty when allowed, or a short
        message naming the rule that denied.
    """
    target = target or PolicyTarget()

    if principal.role == Role.OFFICER:
        return _ALLOW

    if action in OFFICER_ONLY_ACTIONS:
        return PolicyDecision(False, f"{action.value} is restricted to officers")

    if principal.role == Role.CUSTOMER:
        if action not in CUSTOMER_OWNED_ACTIONS:
            return PolicyDecision(False, f"customers may not {action.value}")
        if target.customer_id is None or target.customer_id != principal.id:
            return PolicyDecision(False, "application belongs to another customer")
        return _ALLOW

    if principal.role == Role.INSTALLER:
        if action == Action.SUBMIT_BID:
            if principal.organization_id is None:
                return PolicyDecision(False, "installer has no organization")
            if (
                target.organization_id is not None
                and target.organization_id != principal.organization_id
            ):
                return PolicyDecision(False, "bid is reserved for another organization")
            return _ALLOW
        if action == Action.VIEW_BIDS:
            # Installers see bids; the caller filters to their organization
            if principal.organization_id is None:
                return PolicyDecision(False, "installer has no organization")
            return _ALLOW
        return PolicyDecision(False, f"installers may not {action.value}")

    return PolicyDecision(False, f"unknown role {principal.role!r}")


def require(
    principal: Principal,
    action: Action,
    target: PolicyTarget | None = None,
) -> None:
    """Raise ForbiddenError unless ``evaluate`` allows the action."""
    decision = evaluate(principal, action, target)
    if not decision.allowed:
        raise ForbiddenError(str(principal.id), action.value, decision.reason)
