"""
solar_services.http_api -- FastAPI trigger and query surface.

Responsibility:
    Exposes the kernel operations over HTTP: bid sessions and bids, the
    expiry sweep trigger, monthly billing, payment registration and
    confirmation, meter readings (officer and device telemetry) and the
    application workflow.  Every request is one unit of work inside
    ``session_scope()``.

Architecture position:
    Services layer (outermost).  Reads configuration from solar_config and
    passes the values into kernel service constructors; the kernel never
    sees the config objects.

Invariants enforced:
    - Authentication is delegated: the caller's Principal arrives in the
      X-Principal-Id / X-Principal-Role / X-Principal-Organization headers.
      Missing or malformed headers are 401; authorization is the kernel's.
    - Kernel errors map to HTTP by ``category``; the body is always
      ``{"error": {"code", "category", "message"}}`` with no stack detail.
    - Device telemetry is accepted only with a registered token and a valid
      HMAC-SHA256 signature over the raw request body.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from solar_config import SolarConfig, get_active_config
from solar_kernel.db.engine import init_engine_from_config, session_scope
from solar_kernel.domain.clock import Clock, SystemClock
from solar_kernel.domain.dtos import BidProposal, Principal, Role
from solar_kernel.exceptions import SolarKernelError
from solar_kernel.logging_config import LogContext, get_logger
from solar_kernel.services.application_service import ApplicationService
from solar_kernel.services.bid_session_service import BidSessionService
from solar_kernel.services.billing_service import BillingService
from solar_kernel.services.expiry_sweeper import ExpirySweeper
from solar_kernel.services.meter_reading_service import (
    MeterReadingService,
    verify_device_signature,
)
from solar_kernel.services.payment_reconciliation import (
    PaymentNotifier,
    PaymentReconciliationService,
)
from solar_services.notifications import LoggingNotifier

logger = get_logger("services.http")

CATEGORY_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "validation": 422,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "conflict": status.HTTP_409_CONFLICT,
    "transient": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_body(code: str, category: str, message: str) -> dict:
    return {"error": {"code": code, "category": category, "message": message}}


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class BidSessionOut(_Out):
    id: UUID
    application_id: UUID
    customer_id: UUID
    status: str
    started_at: datetime
    expires_at: datetime
    closed_at: datetime | None = None
    selected_bid_id: UUID | None = None
    bid_count: int


class BidOut(_Out):
    id: UUID
    application_id: UUID
    bid_session_id: UUID
    installer_id: UUID
    organization_id: UUID
    package_id: UUID | None = None
    price: Decimal
    proposal: str
    warranty: str
    estimated_days: int
    status: str
    created_at: datetime


class BidSessionDetailOut(BaseModel):
    session: BidSessionOut
    bids: list[BidOut]


class SelectionOut(_Out):
    session: BidSessionOut
    accepted: BidOut
    rejected_bid_ids: list[UUID]


class SweepOut(_Out):
    swept_at: datetime
    sessions_expired: int
    bids_expired: int
    session_ids: list[UUID]


class InvoiceOut(_Out):
    id: UUID
    application_id: UUID | None = None
    customer_id: UUID
    type: str
    amount: Decimal
    status: str
    due_date: datetime
    paid_at: datetime | None = None
    description: str
    line_items: list[dict]
    billing_year: int | None = None
    billing_month: int | None = None


class MonthlyBillingRunOut(_Out):
    year: int
    month: int
    created: list[InvoiceOut]
    skipped_application_ids: list[UUID]


class PaymentOut(_Out):
    id: UUID
    provider_intent_id: str
    customer_id: UUID
    application_id: UUID | None = None
    invoice_id: UUID | None = None
    amount: Decimal
    currency: str
    type: str
    status: str


class ReconciliationOut(_Out):
    payment: PaymentOut
    invoice: InvoiceOut
    invoice_created: bool
    already_settled: bool


class MeterReadingOut(_Out):
    id: UUID
    application_id: UUID
    reading_date: datetime
    kwh_generated: Decimal
    kwh_exported: Decimal
    kwh_imported: Decimal


class MonthlySummaryOut(_Out):
    application_id: UUID
    year: int
    month: int
    reading_count: int
    kwh_generated: Decimal
    kwh_exported: Decimal
    kwh_imported: Decimal
    net_kwh: Decimal
    amount_due: Decimal
    credit: Decimal


class ApplicationOut(_Out):
    id: UUID
    reference: str
    customer_id: UUID
    status: str
    installer_organization_id: UUID | None = None
    selected_package_id: UUID | None = None
    rejection_reason: str | None = None


class OpenSessionRequest(BaseModel):
    application_id: UUID
    duration_hours: int | None = None


class SubmitBidRequest(BaseModel):
    # Either identifies the target; the session id wins when both are given
    bid_session_id: UUID | None = None
    application_id: UUID | None = None
    price: Decimal
    proposal: str
    warranty: str
    estimated_days: int
    package_id: UUID | None = None


class UpdateBidRequest(BaseModel):
    status: str


class GenerateMonthlyRequest(BaseModel):
    month: int
    year: int
    rate_per_kwh: Decimal | None = None
    credit_rate_per_kwh: Decimal | None = None


class RegisterPaymentRequest(BaseModel):
    provider_intent_id: str
    customer_id: UUID
    amount: Decimal
    type: str
    application_id: UUID | None = None
    currency: str = "lkr"
    reference: str | None = None


class ConfirmPaymentRequest(BaseModel):
    provider_intent_id: str
    status: str | None = None


class MeterReadingRequest(BaseModel):
    application_id: UUID
    reading_date: datetime
    kwh_generated: Decimal
    kwh_exported: Decimal
    kwh_imported: Decimal
    notes: str | None = None


class DeviceMeasurement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kwh_generated: Decimal = Field(alias="kWh_generated")
    kwh_exported: Decimal = Field(alias="kWh_exported")
    kwh_imported: Decimal = Field(alias="kWh_imported")
    timestamp: datetime


class ApplicationStatusRequest(BaseModel):
    status: str
    rejection_reason: str | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _unauthorized(message: str) -> StarletteHTTPException:
    return StarletteHTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


def optional_principal(
    x_principal_id: str | None = Header(default=None),
    x_principal_role: str | None = Header(default=None),
    x_principal_organization: str | None = Header(default=None),
) -> Principal | None:
    """Principal from the authentication headers, or None when absent."""
    if not x_principal_id:
        return None
    try:
        principal_id = UUID(x_principal_id)
        role = Role((x_principal_role or "").lower())
        organization_id = (
            UUID(x_principal_organization) if x_principal_organization else None
        )
    except ValueError:
        raise _unauthorized("Malformed principal headers") from None
    return Principal(id=principal_id, role=role, organization_id=organization_id)


def require_principal(
    principal: Principal | None = Depends(optional_principal),
) -> Principal:
    if principal is None:
        raise _unauthorized("Authentication required")
    return principal


def get_config(request: Request) -> SolarConfig:
    return request.app.state.config


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_notifier(request: Request) -> PaymentNotifier | None:
    return request.app.state.notifier


def _bid_service(session, config: SolarConfig, clock: Clock) -> BidSessionService:
    return BidSessionService(
        session, clock, default_window_hours=config.bidding.default_window_hours
    )


def _billing_service(session, config: SolarConfig, clock: Clock) -> BillingService:
    return BillingService(
        session,
        clock,
        rate_per_kwh=config.billing.rate_per_kwh,
        credit_rate_per_kwh=config.billing.credit_rate_per_kwh,
        due_days=config.billing.monthly_bill_due_days,
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

bids_router = APIRouter(tags=["bids"])


@bids_router.post(
    "/bid-sessions",
    response_model=BidSessionOut,
    status_code=status.HTTP_201_CREATED,
)
def open_bid_session(
    body: OpenSessionRequest,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    duration = (
        config.bidding.default_window_hours
        if body.duration_hours is None
        else body.duration_hours
    )
    with session_scope("open_or_extend_session") as session:
        info = _bid_service(session, config, clock).open_or_extend_session(
            body.application_id, duration, principal
        )
    return BidSessionOut.model_validate(info)


@bids_router.get("/bid-sessions/{session_id}", response_model=BidSessionDetailOut)
def get_bid_session(
    session_id: UUID,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    with session_scope("get_bid_session") as session:
        service = _bid_service(session, config, clock)
        bids = service.list_bids(session_id, principal)
        info = service.get_session(session_id)
    return BidSessionDetailOut(
        session=BidSessionOut.model_validate(info),
        bids=[BidOut.model_validate(b) for b in bids],
    )


@bids_router.post("/bids", response_model=BidOut, status_code=status.HTTP_201_CREATED)
def submit_bid(
    body: SubmitBidRequest,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    target_id = body.bid_session_id or body.application_id
    if target_id is None:
        raise RequestValidationError(
            [
                {
                    "type": "missing",
                    "loc": ("body", "bid_session_id"),
                    "msg": "bid_session_id or application_id is required",
                    "input": None,
                }
            ]
        )
    proposal = BidProposal(
        price=body.price,
        proposal=body.proposal,
        warranty=body.warranty,
        estimated_days=body.estimated_days,
        package_id=body.package_id,
    )
    with session_scope("submit_bid") as session:
        info = _bid_service(session, config, clock).submit_bid(
            target_id, principal, proposal
        )
    return BidOut.model_validate(info)


@bids_router.post("/bids/{bid_id}/select", response_model=SelectionOut)
def select_bid(
    bid_id: UUID,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    with session_scope("select_bid") as session:
        result = _bid_service(session, config, clock).select_bid(bid_id, principal)
    return SelectionOut.model_validate(result)


@bids_router.patch("/bids/{bid_id}", response_model=BidOut)
def update_bid(
    bid_id: UUID,
    body: UpdateBidRequest,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    with session_scope("update_bid_status") as session:
        info = _bid_service(session, config, clock).update_bid_status(
            bid_id, body.status, principal
        )
    return BidOut.model_validate(info)


cron_router = APIRouter(prefix="/cron", tags=["cron"])


def _expire_bids(principal: Principal | None, clock: Clock) -> SweepOut:
    with session_scope("sweep_expired_sessions") as session:
        report = ExpirySweeper(session, clock).sweep_expired_sessions(
            principal=principal
        )
    return SweepOut.model_validate(report)


@cron_router.post("/expire-bids", response_model=SweepOut)
def expire_bids(
    principal: Principal | None = Depends(optional_principal),
    clock: Clock = Depends(get_clock),
):
    return _expire_bids(principal, clock)


@cron_router.get("/expire-bids", response_model=SweepOut)
def expire_bids_get(
    principal: Principal | None = Depends(optional_principal),
    clock: Clock = Depends(get_clock),
):
    return _expire_bids(principal, clock)


billing_router = APIRouter(tags=["billing"])


@billing_router.post("/invoices/generate-monthly", response_model=MonthlyBillingRunOut)
def generate_monthly_bills(
    body: GenerateMonthlyRequest,
    principal: Principal | None = Depends(optional_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    with session_scope("generate_monthly_bills") as session:
        run = _billing_service(session, config, clock).generate_monthly_bills(
            body.month,
            body.year,
            rate_per_kwh=body.rate_per_kwh,
            credit_rate_per_kwh=body.credit_rate_per_kwh,
            principal=principal,
        )
    return MonthlyBillingRunOut.model_validate(run)


@billing_router.get(
    "/applications/{application_id}/energy",
    response_model=list[MonthlySummaryOut],
)
def energy_summaries(
    application_id: UUID,
    principal: Principal = Depends(require_principal),
    config: SolarConfig = Depends(get_config),
    clock: Clock = Depends(get_clock),
):
    with session_scope("monthly_summaries") as session:
        summaries = _billing_service(session, config, clock).monthly_summaries(
            application_id, principal=principal
        )
    return [MonthlySummaryOut.model_validate(s) for s in summaries]


payments_router = APIRouter(prefix="/payments", tags=["payments"])


@payments_router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def register_payment(
    body: RegisterPaymentRequest,
    clock: Clock = Depends(get_clock),
):
    with session_scope("register_payment") as session:
        info = PaymentReconciliationService(session, clock).register_payment(
            body.provider_intent_id,
            body.customer_id,
            body.amount,
            body.type,
            application_id=body.application_id,
            currency=body.currency,
            reference=body.reference,
        )
    return PaymentOut.model_validate(info)


@payments_router.post("/confirm", response_model=ReconciliationOut)
def confirm_payment(
    body: ConfirmPaymentRequest,
    clock: Clock = Depends(get_clock),
    notifier: PaymentNotifier | None = Depends(get_notifier),
):
    with session_scope("confirm_payment") as session:
        result = PaymentReconciliationService(
            session, clock, notifier=notifier
        ).confirm_payment(body.provider_intent_id, body.status)
    return ReconciliationOut.model_validate(result)


readings_router = APIRouter(tags=["meter-readings"])


@readings_router.post(
    "/meter-readings",
    response_model=MeterReadingOut,
    status_code=status.HTTP_201_CREATED,
)
def record_meter_reading(
    body: MeterReadingRequest,
    principal: Principal = Depends(require_principal),
    clock: Clock = Depends(get_clock),
):
    with session_scope("record_reading") as session:
        info = MeterReadingService(session, clock).record_reading(
            body.application_id,
            body.reading_date,
            body.kwh_generated,
            body.kwh_exported,
            body.kwh_imported,
            principal,
            notes=body.notes,
        )
    return MeterReadingOut.model_validate(info)


def _store_device_reading(device, measurement: DeviceMeasurement, clock: Clock):
    with session_scope("record_device_reading") as session:
        return MeterReadingService(session, clock).record_device_reading(
            device.device_id,
            device.application_id,
            measurement.timestamp,
            measurement.kwh_generated,
            measurement.kwh_exported,
            measurement.kwh_imported,
        )


@readings_router.post(
    "/iot/measurements",
    response_model=MeterReadingOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_measurement(
    request: Request,
    x_device_token: str | None = Header(default=None),
    x_device_signature: str | None = Header(default=None),
):
    if not x_device_token or not x_device_signature:
        raise _unauthorized("Missing device authentication headers")

    config: SolarConfig = request.app.state.config
    device = config.telemetry.device_for_token(x_device_token)
    if device is None:
        raise _unauthorized("Unknown device token")

    raw_body = await request.body()
    if not verify_device_signature(device.secret, raw_body, x_device_signature):
        logger.warning("device_signature_rejected", extra={"device_id": device.device_id})
        raise _unauthorized("Invalid signature")

    try:
        measurement = DeviceMeasurement.model_validate(json.loads(raw_body))
    except json.JSONDecodeError:
        raise StarletteHTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body"
        ) from None
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors()) from None

    info = await run_in_threadpool(
        _store_device_reading, device, measurement, request.app.state.clock
    )
    return MeterReadingOut.model_validate(info)


applications_router = APIRouter(prefix="/applications", tags=["applications"])


@applications_router.patch("/{application_id}/status", response_model=ApplicationOut)
def advance_application(
    application_id: UUID,
    body: ApplicationStatusRequest,
    principal: Principal = Depends(require_principal),
    clock: Clock = Depends(get_clock),
):
    with session_scope("advance_application") as session:
        info = ApplicationService(session, clock).advance_status(
            application_id, body.status, principal, body.rejection_reason
        )
    return ApplicationOut.model_validate(info)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


async def _kernel_error_handler(request: Request, exc: SolarKernelError) -> JSONResponse:
    status_code = CATEGORY_STATUS.get(exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(
            "request_failed",
            extra={"path": request.url.path, "code": exc.code},
            exc_info=exc,
        )
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.code, exc.category, str(exc)),
    )


async def _http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    category = "unauthorized" if exc.status_code == 401 else "http"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(f"HTTP_{exc.status_code}", category, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in errors
    )
    return JSONResponse(
        status_code=422,
        content=error_body("VALIDATION_ERROR", "validation", message),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    config: SolarConfig | None = None,
    clock: Clock | None = None,
    notifier: PaymentNotifier | None = None,
    init_database: bool = False,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Loaded SolarConfig; ``get_active_config()`` when omitted.
        clock: Clock shared by every request; SystemClock when omitted.
        notifier: Payment notifier; LoggingNotifier when omitted.
        init_database: Initialize the engine from ``config.database``.
            Tests initialize their own engine and leave this False.
    """
    config = config or get_active_config()
    if init_database:
        init_engine_from_config(config.database)

    app = FastAPI(title="Solar Portal API")
    app.state.config = config
    app.state.clock = clock or SystemClock()
    app.state.notifier = notifier if notifier is not None else LoggingNotifier()

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get("x-correlation-id") or str(uuid4())
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response

    app.add_exception_handler(SolarKernelError, _kernel_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(bids_router)
    app.include_router(cron_router)
    app.include_router(billing_router)
    app.include_router(payments_router)
    app.include_router(readings_router)
    app.include_router(applications_router)
    return app
