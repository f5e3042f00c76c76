"""
Typed Exception Hierarchy for the Solar Kernel.

Every failure the kernel reports is catchable by type and carries a
machine-readable ``code`` and ``category``.  The HTTP layer maps
``category`` to a status code, the CLI prints ``code``, and the log
formatter copies the public attributes into ``exc_*`` fields:

    try:
        service.submit_bid(...)
    except SessionNotOpenError as e:
        log.warning("bid_rejected", extra={"code": e.code, "status": e.status})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from SolarKernelError:

    SolarKernelError (base)
    |
    +-- NotFoundError
    |   +-- ApplicationNotFoundError
    |   +-- BidSessionNotFoundError
    |   +-- BidNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- PaymentNotFoundError
    |
    +-- InvalidStateError
    |   +-- SessionNotOpenError
    |   +-- StaleStateError
    |   +-- InvalidStatusTransitionError
    |
    +-- ValidationError
    |
    +-- ForbiddenError
    |
    +-- ConflictError
    |   +-- DuplicateMonthlyBillError
    |   +-- DuplicatePaymentIntentError
    |
    +-- TransientFailureError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                        | When Raised
--------------|-----------------------------|--------------------------------------
NotFound      | APPLICATION_NOT_FOUND       | Application id/reference unknown
              | BID_SESSION_NOT_FOUND       | No session for id or application
              | BID_NOT_FOUND               | Bid id unknown
              | INVOICE_NOT_FOUND           | Invoice id unknown
              | PAYMENT_NOT_FOUND           | provider_intent_id unknown
--------------|-----------------------------|--------------------------------------
InvalidState  | SESSION_NOT_OPEN            | Bidding/selecting on closed/expired
              | STALE_STATE                 | Lost a compare-and-swap race
              | INVALID_STATUS_TRANSITION   | Transition not in the workflow
--------------|-----------------------------|--------------------------------------
Validation    | VALIDATION_ERROR            | Missing/malformed field (price <= 0)
--------------|-----------------------------|--------------------------------------
Forbidden     | FORBIDDEN                   | Principal may not act on the entity
--------------|-----------------------------|--------------------------------------
Conflict      | DUPLICATE_MONTHLY_BILL      | Bill exists for (application, month)
              | DUPLICATE_PAYMENT_INTENT    | provider_intent_id already registered
--------------|-----------------------------|--------------------------------------
Transient     | TRANSIENT_FAILURE           | Storage timeout / lost connection

===============================================================================
HANDLING PATTERNS
===============================================================================

1. IDEMPOTENT CONFLICTS ARE SUCCESS:

    try:
        invoice = gateway.add_monthly_bill(...)
    except DuplicateMonthlyBillError:
        pass  # already billed for this month

2. TRANSIENT FAILURES ARE RETRYABLE BY THE CALLER:

    except TransientFailureError:
        schedule_retry()

3. CATEGORY -> HTTP STATUS mapping lives in solar_services.http_api; the
   ``category`` class attribute is what the mapping keys on.
"""


class SolarKernelError(Exception):
    """
    Base exception for all solar kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification and a ``category`` naming the taxonomy bucket.
    """

    code: str = "SOLAR_KERNEL_ERROR"
    category: str = "internal"


# Not found


class NotFoundError(SolarKernelError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"
    category: str = "not_found"

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ApplicationNotFoundError(NotFoundError):
    code: str = "APPLICATION_NOT_FOUND"

    def __init__(self, application_id: str):
        self.application_id = application_id
        super().__init__("Application", application_id)


class BidSessionNotFoundError(NotFoundError):
    code: str = "BID_SESSION_NOT_FOUND"

    def __init__(self, key: str):
        super().__init__("BidSession", key)


class BidNotFoundError(NotFoundError):
    code: str = "BID_NOT_FOUND"

    def __init__(self, bid_id: str):
        self.bid_id = bid_id
        super().__init__("Bid", bid_id)


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__("Invoice", invoice_id)


class PaymentNotFoundError(NotFoundError):
    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, provider_intent_id: str):
        self.provider_intent_id = provider_intent_id
        super().__init__("PaymentTransaction", provider_intent_id)


# Invalid state


class InvalidStateError(SolarKernelError):
    """Operation attempted against an entity not in the required state."""

    code: str = "INVALID_STATE"
    category: str = "invalid_state"


class SessionNotOpenError(InvalidStateError):
    """Bid session is closed, expired, or past its deadline."""

    code: str = "SESSION_NOT_OPEN"

    def __init__(self, session_id: str, status: str, reason: str = ""):
        self.session_id = session_id
        self.status = status
        self.reason = reason
        message = f"Bid session {session_id} is not open (status: {status})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StaleStateError(InvalidStateError):
    """
    A conditional update matched no row.

    Raised by the loser of a compare-and-swap race (e.g. select_bid running
    after the sweeper already expired the session).
    """

    code: str = "STALE_STATE"

    def __init__(self, entity: str, entity_id: str, expected_status: str):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_status = expected_status
        super().__init__(
            f"{entity} {entity_id} is no longer {expected_status}"
        )


class InvalidStatusTransitionError(InvalidStateError):
    """Requested status change is not part of the entity workflow."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity} cannot transition from {from_status} to {to_status}"
        )


# Validation


class ValidationError(SolarKernelError):
    """Malformed or missing required field."""

    code: str = "VALIDATION_ERROR"
    category: str = "validation"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Authorization


class ForbiddenError(SolarKernelError):
    """Principal is not authorized for the target entity."""

    code: str = "FORBIDDEN"
    category: str = "forbidden"

    def __init__(self, principal_id: str, action: str, reason: str):
        self.principal_id = principal_id
        self.action = action
        self.reason = reason
        super().__init__(f"Principal {principal_id} may not {action}: {reason}")


# Conflict


class ConflictError(SolarKernelError):
    """Duplicate unique key."""

    code: str = "CONFLICT"
    category: str = "conflict"


class DuplicateMonthlyBillError(ConflictError):
    code: str = "DUPLICATE_MONTHLY_BILL"

    def __init__(self, application_id: str, year: int, month: int):
        self.application_id = application_id
        self.year = year
        self.month = month
        super().__init__(
            f"Monthly bill already exists for application {application_id} "
            f"({year}-{month:02d})"
        )


class DuplicatePaymentIntentError(ConflictError):
    code: str = "DUPLICATE_PAYMENT_INTENT"

    def __init__(self, provider_intent_id: str):
        self.provider_intent_id = provider_intent_id
        super().__init__(f"Payment intent already registered: {provider_intent_id}")


# Transient


class TransientFailureError(SolarKernelError):
    """Storage or network timeout. Safe to retry."""

    code: str = "TRANSIENT_FAILURE"
    category: str = "transient"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Transient failure during {operation}: {reason}")
