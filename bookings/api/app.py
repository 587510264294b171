"""FastAPI facade over the settlement core.

This layer only translates HTTP to service calls. Authentication happens
elsewhere: callers present a bearer JWT whose ``sub`` is the user id and
whose ``role`` is ``customer``, ``provider`` or ``admin``.

Policy rejections come back as ``200`` with ``ok=false`` and an error code;
exceptions map to status codes (404 not found, 409 conflict, 503 collaborator
unavailable, 422 invalid input).
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import date, time
from enum import Enum
from typing import Any, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError

from bookings.app.core.constants import API_JWT_ALGO, API_JWT_SECRET, WORKERS_ENABLED
from bookings.app.core.db import get_session_factory, ping
from bookings.app.core.errors import (
    CollaboratorError,
    ConflictError,
    NotFoundError,
    PolicyResult,
    StoreUnavailableError,
)
from bookings.app.domain.models import (
    AvailabilityRule,
    Booking,
    EscrowSettlement,
    RecurringOccurrence,
    RecurringSeries,
    RefundQueueItem,
    RefundRequest,
    SettlementState,
    TimelineEvent,
    UserRole,
)
from bookings.app.services import Services, build_services, default_notifier
from bookings.app.services.booking_services import BookingRequest as CoreBookingRequest, ReservationResult
from bookings.app.services.escrow_services import can_transition
from bookings.app.services.recurrence_services import RecurrencePattern, describe_pattern
from bookings.app.services.refund_services import refund_policy_summary
from bookings.app.services.trust_services import TrustContext
from bookings.app.workers.expiration import start_expiration_worker, start_recurring_worker, stop_worker

logger = logging.getLogger(__name__)

ALLOW_ALL_ORIGINS = os.getenv("API_ALLOW_ALL_ORIGINS", "false").lower() in {"1", "true", "yes"}
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("API_ALLOWED_ORIGINS", "").split(",") if o.strip()]


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class Principal(BaseModel):
    user_id: int
    role: UserRole


class ActionResponse(BaseModel):
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class SlotOut(BaseModel):
    start_time: str
    end_time: str
    available: bool


class SlotsResponse(BaseModel):
    provider_id: int
    service_date: date
    slots: list[SlotOut]


class RuleRequest(BaseModel):
    start_time: time
    end_time: time
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_recurring: bool = True
    rule_type: str = "Available"
    listing_id: Optional[int] = None
    reason: Optional[str] = None


class ExceptionRequest(BaseModel):
    exception_date: date
    reason: Optional[str] = None


class CreatedResponse(BaseModel):
    ok: bool = True
    id: int


class RuleOut(BaseModel):
    id: int
    listing_id: Optional[int] = None
    day_of_week: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_time: str
    end_time: str
    is_recurring: bool
    rule_type: str
    reason: Optional[str] = None


class BookingCreateRequest(BaseModel):
    provider_id: int
    service_date: date
    start_time: time
    duration_minutes: int = Field(..., gt=0)
    title: str = Field(..., min_length=1, max_length=200)
    price_cents: int = Field(..., ge=0)
    listing_id: Optional[int] = None
    customer_id: Optional[int] = None
    urgent: bool = False
    no_show_fee_cents: Optional[int] = Field(default=None, ge=0)
    consultation_scheduled: bool = False


class BookingResponse(BaseModel):
    ok: bool
    booking_id: Optional[int] = None
    error: Optional[str] = None
    retry: bool = False
    warnings: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class NoShowRequest(BaseModel):
    role_at_fault: UserRole = UserRole.CUSTOMER


class TimelineEventOut(BaseModel):
    id: int
    event_type: str
    actor_id: Optional[int] = None
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


class PatternIn(BaseModel):
    frequency: str
    interval: int = Field(default=1, ge=1)
    days_of_week: list[int] = Field(default_factory=list)
    day_of_month: Optional[int] = None
    end_date: Optional[date] = None
    occurrences: Optional[int] = Field(default=None, ge=1)

    def to_pattern(self) -> RecurrencePattern:
        return RecurrencePattern(
            frequency=self.frequency,
            interval=self.interval,
            days_of_week=tuple(self.days_of_week),
            day_of_month=self.day_of_month,
            end_date=self.end_date,
            occurrences=self.occurrences,
        )


class SeriesRequest(BaseModel):
    provider_id: int
    customer_id: Optional[int] = None
    title: str = Field(..., min_length=1, max_length=200)
    price_cents: int = Field(..., ge=0)
    start_date: date
    start_time: time
    duration_minutes: int = Field(..., gt=0)
    pattern: PatternIn
    listing_id: Optional[int] = None


class SeriesOut(BaseModel):
    id: int
    provider_id: int
    customer_id: int
    title: str
    description: str
    is_active: bool
    created_bookings: int
    next_occurrence_date: Optional[date] = None


class OccurrenceOut(BaseModel):
    occurrence_date: date
    status: str
    booking_id: Optional[int] = None
    conflict_reason: Optional[str] = None


class MaterializeRequest(BaseModel):
    count: int = Field(default=4, ge=1, le=52)
    until: Optional[date] = None


class TrustEvaluateRequest(BaseModel):
    role: UserRole
    user_id: Optional[int] = None
    action: str = "booking"
    urgent: bool = False


class CaptureRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1, max_length=128)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    consultation_required: bool = False


class ConsultationRequest(BaseModel):
    proposed_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class PriceAdjustmentRequest(BaseModel):
    proposed_cents: int = Field(..., gt=0)
    reason: Optional[str] = None


class PriceResponseRequest(BaseModel):
    approve: bool


class DisputeRequest(BaseModel):
    dispute_type: str = "Other"
    description: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution_type: str
    refund_amount_cents: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class SettlementOut(BaseModel):
    booking_id: int
    state: str
    amount_cents: int
    consultation_required: bool
    payment_reference: str
    expires_at: Optional[str] = None
    state_before_dispute: Optional[str] = None
    resolution_type: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    next_states: list[str] = Field(default_factory=list)


class RefundSubmitRequest(BaseModel):
    booking_id: int
    reason: str
    notes: Optional[str] = None


class RefundDecisionRequest(BaseModel):
    notes: Optional[str] = None


class RefundRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ManualRefundRequest(BaseModel):
    booking_id: int
    amount_cents: int = Field(..., gt=0)
    reason: str
    notes: Optional[str] = None


class ManualProcessRequest(BaseModel):
    external_reference: str = Field(..., min_length=1, max_length=128)


class RefundOut(BaseModel):
    id: int
    booking_id: int
    amount_cents: int
    reason: str
    status: str
    requested_by: int
    approved_by: Optional[int] = None
    external_reference: Optional[str] = None


class QueueItemOut(BaseModel):
    id: int
    refund_id: Optional[int] = None
    booking_id: int
    amount_cents: int
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalize_error_code(val: str | Exception | None, default: str) -> str:
    """Return a safe error code without leaking exception text."""
    if val is None:
        return default
    code = str(val).strip().lower()
    if not code:
        return default
    if not all(ch.isalnum() or ch in {"_", "-"} for ch in code):
        return default
    return code[:64]


def _value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


def _iso(v: Any) -> Optional[str]:
    return v.isoformat() if v is not None else None


def _policy_response(result: PolicyResult, default_error: str = "rejected") -> ActionResponse:
    if result.ok:
        return ActionResponse(ok=True, details=jsonable_encoder(result.details))
    return ActionResponse(
        ok=False,
        error=_normalize_error_code(result.reason, default_error),
        message=result.details.get("message") or result.reason,
        details=jsonable_encoder(result.details),
    )


def _booking_response(result: ReservationResult) -> BookingResponse:
    return BookingResponse(
        ok=result.ok,
        booking_id=result.booking_id,
        error=_normalize_error_code(result.reason, "booking_failed") if not result.ok else None,
        retry=result.retry,
        warnings=list(result.warnings),
        details=jsonable_encoder(result.details),
    )


def _rule_out(rule: AvailabilityRule) -> RuleOut:
    return RuleOut(
        id=rule.id,
        listing_id=rule.listing_id,
        day_of_week=rule.day_of_week,
        start_date=rule.start_date,
        end_date=rule.end_date,
        start_time=rule.start_time.strftime("%H:%M"),
        end_time=rule.end_time.strftime("%H:%M"),
        is_recurring=bool(rule.is_recurring),
        rule_type=str(_value(rule.rule_type)),
        reason=rule.reason,
    )


def _timeline_out(ev: TimelineEvent) -> TimelineEventOut:
    return TimelineEventOut(
        id=ev.id,
        event_type=ev.event_type,
        actor_id=ev.actor_id,
        description=ev.description,
        metadata=jsonable_encoder(ev.event_metadata or {}),
        created_at=_iso(ev.created_at),
    )


def _series_out(series: RecurringSeries) -> SeriesOut:
    return SeriesOut(
        id=series.id,
        provider_id=series.provider_id,
        customer_id=series.customer_id,
        title=series.title,
        description=describe_pattern(RecurrencePattern.from_series(series)),
        is_active=bool(series.is_active),
        created_bookings=int(series.created_bookings or 0),
        next_occurrence_date=series.next_occurrence_date,
    )


def _occurrence_out(occ: RecurringOccurrence | Any) -> OccurrenceOut:
    return OccurrenceOut(
        occurrence_date=occ.occurrence_date,
        status=_value(occ.status),
        booking_id=occ.booking_id,
        conflict_reason=occ.conflict_reason,
    )


def _settlement_out(s: EscrowSettlement) -> SettlementOut:
    return SettlementOut(
        booking_id=s.booking_id,
        state=_value(s.state),
        amount_cents=s.amount_cents,
        consultation_required=bool(s.consultation_required),
        payment_reference=s.payment_reference,
        expires_at=_iso(s.expires_at),
        state_before_dispute=_value(s.state_before_dispute),
        resolution_type=_value(s.resolution_type),
        refund_amount_cents=s.refund_amount_cents,
        next_states=[t.value for t in SettlementState if can_transition(s.state, t)],
    )


def _refund_out(r: RefundRequest) -> RefundOut:
    return RefundOut(
        id=r.id,
        booking_id=r.booking_id,
        amount_cents=r.amount_cents,
        reason=r.reason,
        status=_value(r.status),
        requested_by=r.requested_by,
        approved_by=r.approved_by,
        external_reference=r.external_reference,
    )


def _queue_out(q: RefundQueueItem) -> QueueItemOut:
    return QueueItemOut(
        id=q.id,
        refund_id=q.refund_id,
        booking_id=q.booking_id,
        amount_cents=q.amount_cents,
        status=_value(q.status),
        attempts=q.attempts,
        max_attempts=q.max_attempts,
        last_error=q.last_error,
    )


# ---------------------------------------------------------------------------
# Security / dependencies
# ---------------------------------------------------------------------------

def _decode_token(token: str, secret: str) -> Principal:
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="auth_not_configured")
    try:
        data = jwt.decode(token, secret, algorithms=[API_JWT_ALGO])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc

    try:
        return Principal(user_id=int(data.get("sub")), role=UserRole(data.get("role")))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token_claims") from exc


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_principal(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Principal:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_authorization_header")
    return _decode_token(token, request.app.state.jwt_secret)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin_required")
    return principal


def _require_self_or_admin(principal: Principal, user_id: int) -> None:
    if principal.role != UserRole.ADMIN and principal.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


async def _party_booking(services: Services, booking_id: int, principal: Principal) -> Booking:
    booking = await services.bookings.get_booking(booking_id)
    if principal.role == UserRole.ADMIN:
        return booking
    if principal.user_id not in (booking.customer_id, booking.provider_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not_a_party")
    return booking


# ---------------------------------------------------------------------------
# Exception mapping
# ---------------------------------------------------------------------------

def _error_json(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": code, "message": message})


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_json(status.HTTP_404_NOT_FOUND, exc.code or "not_found", str(exc))

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return _error_json(status.HTTP_409_CONFLICT, exc.code or "conflict", str(exc))

    @app.exception_handler(CollaboratorError)
    async def _collaborator(request: Request, exc: CollaboratorError) -> JSONResponse:
        logger.warning("Collaborator failure on %s: %s", request.url.path, exc)
        return _error_json(status.HTTP_503_SERVICE_UNAVAILABLE, exc.code or "unavailable", str(exc))

    @app.exception_handler(OperationalError)
    async def _store_down(request: Request, exc: OperationalError) -> JSONResponse:
        return await _collaborator(request, StoreUnavailableError(str(exc.orig or exc)))

    @app.exception_handler(ValueError)
    async def _invalid(request: Request, exc: ValueError) -> JSONResponse:
        return _error_json(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", str(exc))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _install_routes(app: FastAPI) -> None:
    # ---- availability ----

    @app.get("/api/providers/{provider_id}/slots", response_model=SlotsResponse)
    async def get_slots(
        provider_id: int,
        day: date = Query(..., alias="date"),
        listing_id: Optional[int] = None,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> SlotsResponse:
        slots = await services.availability.resolve_slots(provider_id, day, listing_id)
        return SlotsResponse(provider_id=provider_id, service_date=day, slots=[SlotOut(**s.as_dict()) for s in slots])

    @app.get("/api/providers/{provider_id}/rules", response_model=list[RuleOut])
    async def list_rules(
        provider_id: int,
        listing_id: Optional[int] = None,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> list[RuleOut]:
        _require_self_or_admin(principal, provider_id)
        return [_rule_out(r) for r in await services.availability.list_rules(provider_id, listing_id)]

    @app.post("/api/providers/{provider_id}/rules", response_model=CreatedResponse)
    async def add_rule(
        provider_id: int,
        payload: RuleRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> CreatedResponse:
        _require_self_or_admin(principal, provider_id)
        rule = await services.availability.add_rule(provider_id, **payload.model_dump())
        return CreatedResponse(id=rule.id)

    @app.delete("/api/providers/{provider_id}/rules/{rule_id}", response_model=ActionResponse)
    async def delete_rule(
        provider_id: int,
        rule_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        _require_self_or_admin(principal, provider_id)
        await services.availability.delete_rule(provider_id, rule_id)
        return ActionResponse(ok=True)

    @app.post("/api/providers/{provider_id}/exceptions", response_model=CreatedResponse)
    async def add_exception(
        provider_id: int,
        payload: ExceptionRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> CreatedResponse:
        _require_self_or_admin(principal, provider_id)
        exc = await services.availability.add_exception(provider_id, payload.exception_date, payload.reason)
        return CreatedResponse(id=exc.id)

    @app.delete("/api/providers/{provider_id}/exceptions/{exception_id}", response_model=ActionResponse)
    async def delete_exception(
        provider_id: int,
        exception_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        _require_self_or_admin(principal, provider_id)
        await services.availability.delete_exception(provider_id, exception_id)
        return ActionResponse(ok=True)

    # ---- bookings ----

    @app.post("/api/bookings", response_model=BookingResponse)
    async def create_booking(
        payload: BookingCreateRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> BookingResponse:
        customer_id = payload.customer_id if payload.customer_id is not None else principal.user_id
        _require_self_or_admin(principal, customer_id)
        request = CoreBookingRequest(
            customer_id=customer_id,
            provider_id=payload.provider_id,
            service_date=payload.service_date,
            start_time=payload.start_time,
            duration_minutes=payload.duration_minutes,
            title=payload.title,
            price_cents=payload.price_cents,
            listing_id=payload.listing_id,
        )
        context = TrustContext(
            action="booking",
            urgent=payload.urgent,
            no_show_fee_cents=payload.no_show_fee_cents,
            consultation_scheduled=payload.consultation_scheduled,
        )
        result = await services.bookings.create_booking(request, context)
        return _booking_response(result)

    @app.post("/api/bookings/{booking_id}/cancel", response_model=ActionResponse)
    async def cancel_booking(
        booking_id: int,
        payload: CancelRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.bookings.cancel_booking(booking_id, principal.user_id, payload.reason)
        return _policy_response(result, "cancel_failed")

    @app.post("/api/bookings/{booking_id}/no_show", response_model=ActionResponse)
    async def mark_no_show(
        booking_id: int,
        payload: NoShowRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.bookings.mark_no_show(booking_id, principal.user_id, payload.role_at_fault)
        return _policy_response(result, "no_show_failed")

    @app.get("/api/bookings/{booking_id}/timeline", response_model=list[TimelineEventOut])
    async def booking_timeline(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> list[TimelineEventOut]:
        await _party_booking(services, booking_id, principal)
        events = await services.bookings.list_timeline(booking_id)
        return [_timeline_out(ev) for ev in events]

    # ---- recurring series ----

    @app.post("/api/recurring/preview")
    async def preview_series(
        payload: SeriesRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        preview = await services.recurrence.preview(
            payload.provider_id,
            payload.start_date,
            payload.start_time,
            payload.duration_minutes,
            payload.pattern.to_pattern(),
            payload.price_cents,
            listing_id=payload.listing_id,
        )
        return preview.as_dict()

    @app.post("/api/recurring", response_model=SeriesOut)
    async def create_series(
        payload: SeriesRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> SeriesOut:
        customer_id = payload.customer_id if payload.customer_id is not None else principal.user_id
        _require_self_or_admin(principal, customer_id)
        series = await services.recurrence.create_series(
            customer_id=customer_id,
            provider_id=payload.provider_id,
            title=payload.title,
            price_cents=payload.price_cents,
            start_date=payload.start_date,
            start_time=payload.start_time,
            duration_minutes=payload.duration_minutes,
            pattern=payload.pattern.to_pattern(),
            listing_id=payload.listing_id,
        )
        return _series_out(series)

    async def _owned_series(services: Services, series_id: int, principal: Principal) -> RecurringSeries:
        series = await services.recurrence.get_series(series_id)
        if principal.role != UserRole.ADMIN and principal.user_id not in (series.customer_id, series.provider_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not_a_party")
        return series

    @app.post("/api/recurring/{series_id}/materialize", response_model=list[OccurrenceOut])
    async def materialize_series(
        series_id: int,
        payload: MaterializeRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> list[OccurrenceOut]:
        await _owned_series(services, series_id, principal)
        drafts = await services.recurrence.materialize(series_id, payload.count, payload.until)
        return [_occurrence_out(d) for d in drafts]

    @app.get("/api/recurring/{series_id}/occurrences", response_model=list[OccurrenceOut])
    async def list_occurrences(
        series_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> list[OccurrenceOut]:
        await _owned_series(services, series_id, principal)
        return [_occurrence_out(o) for o in await services.recurrence.list_occurrences(series_id)]

    @app.post("/api/recurring/{series_id}/pause", response_model=SeriesOut)
    async def pause_series(
        series_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> SeriesOut:
        await _owned_series(services, series_id, principal)
        return _series_out(await services.recurrence.pause_series(series_id))

    @app.post("/api/recurring/{series_id}/resume", response_model=SeriesOut)
    async def resume_series(
        series_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> SeriesOut:
        await _owned_series(services, series_id, principal)
        return _series_out(await services.recurrence.resume_series(series_id))

    # ---- trust ----

    @app.post("/api/trust/evaluate")
    async def evaluate_trust(
        payload: TrustEvaluateRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        user_id = payload.user_id if payload.user_id is not None else principal.user_id
        _require_self_or_admin(principal, user_id)
        decision = await services.trust.evaluate_user(
            user_id, payload.role, TrustContext(action=payload.action, urgent=payload.urgent)
        )
        return decision.as_dict()

    @app.get("/api/trust/{user_id}/guidance")
    async def trust_guidance(
        user_id: int,
        role: UserRole,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        _require_self_or_admin(principal, user_id)
        return jsonable_encoder(await services.trust.guidance(user_id, role))

    # ---- escrow ----

    @app.get("/api/escrow/{booking_id}", response_model=SettlementOut)
    async def get_settlement(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> SettlementOut:
        await _party_booking(services, booking_id, principal)
        return _settlement_out(await services.escrow.get_settlement(booking_id))

    @app.post("/api/escrow/{booking_id}/capture", response_model=ActionResponse)
    async def capture(
        booking_id: int,
        payload: CaptureRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        booking = await _party_booking(services, booking_id, principal)
        amount = payload.amount_cents if payload.amount_cents is not None else booking.price_cents
        result = await services.escrow.capture(
            booking_id,
            amount,
            payload.payment_reference,
            consultation_required=payload.consultation_required,
            actor_id=principal.user_id,
        )
        return _policy_response(result, "capture_failed")

    @app.post("/api/escrow/{booking_id}/consultation", response_model=ActionResponse)
    async def complete_consultation(
        booking_id: int,
        payload: ConsultationRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.escrow.complete_consultation(
            booking_id, principal.user_id, payload.proposed_cents, payload.reason
        )
        return _policy_response(result, "consultation_failed")

    @app.post("/api/escrow/{booking_id}/price_adjustment", response_model=ActionResponse)
    async def propose_price_adjustment(
        booking_id: int,
        payload: PriceAdjustmentRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.escrow.propose_price_adjustment(
            booking_id, principal.user_id, payload.proposed_cents, payload.reason
        )
        return _policy_response(result, "adjustment_failed")

    @app.post("/api/escrow/{booking_id}/price_adjustment/respond", response_model=ActionResponse)
    async def respond_price_adjustment(
        booking_id: int,
        payload: PriceResponseRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.escrow.respond_price_adjustment(booking_id, principal.user_id, payload.approve)
        return _policy_response(result, "adjustment_failed")

    @app.get("/api/escrow/{booking_id}/can_start")
    async def can_start_work(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, bool]:
        await _party_booking(services, booking_id, principal)
        return {"allowed": await services.escrow.start_work_allowed(booking_id)}

    @app.post("/api/escrow/{booking_id}/start", response_model=ActionResponse)
    async def start_work(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        return _policy_response(await services.escrow.start_work(booking_id, principal.user_id), "start_failed")

    @app.post("/api/escrow/{booking_id}/received", response_model=ActionResponse)
    async def mark_received(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        return _policy_response(await services.escrow.mark_received(booking_id, principal.user_id), "received_failed")

    @app.post("/api/escrow/{booking_id}/complete", response_model=ActionResponse)
    async def release(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        return _policy_response(await services.escrow.release(booking_id, principal.user_id), "release_failed")

    @app.post("/api/escrow/{booking_id}/dispute", response_model=ActionResponse)
    async def open_dispute(
        booking_id: int,
        payload: DisputeRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        await _party_booking(services, booking_id, principal)
        result = await services.escrow.open_dispute(
            booking_id, principal.user_id, payload.dispute_type, payload.description
        )
        return _policy_response(result, "dispute_failed")

    @app.post("/api/admin/escrow/{booking_id}/resolve", response_model=ActionResponse)
    async def resolve_dispute(
        booking_id: int,
        payload: ResolveRequest,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        result = await services.escrow.resolve_dispute(
            booking_id, admin.user_id, payload.resolution_type, payload.refund_amount_cents, payload.notes
        )
        return _policy_response(result, "resolve_failed")

    # ---- refunds ----

    @app.get("/api/refunds/policy")
    async def refund_policy() -> list[dict[str, Any]]:
        return refund_policy_summary()

    @app.get("/api/bookings/{booking_id}/refund_eligibility")
    async def refund_eligibility(
        booking_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        await _party_booking(services, booking_id, principal)
        return (await services.refunds.check_eligibility(booking_id)).as_dict()

    @app.post("/api/refunds", response_model=ActionResponse)
    async def submit_refund(
        payload: RefundSubmitRequest,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        booking = await _party_booking(services, payload.booking_id, principal)
        _require_self_or_admin(principal, booking.customer_id)
        result = await services.refunds.submit_refund_request(
            payload.booking_id, principal.user_id, payload.reason, payload.notes
        )
        return _policy_response(result, "refund_failed")

    @app.post("/api/refunds/{refund_id}/cancel", response_model=ActionResponse)
    async def cancel_refund(
        refund_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        result = await services.refunds.cancel_refund_request(refund_id, principal.user_id)
        return _policy_response(result, "cancel_failed")

    @app.get("/api/users/{user_id}/refund_stats")
    async def refund_stats(
        user_id: int,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> dict[str, int]:
        _require_self_or_admin(principal, user_id)
        return await services.refunds.customer_refund_stats(user_id)

    @app.get("/api/admin/refunds/overdue", response_model=list[RefundOut])
    async def overdue_refunds(
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> list[RefundOut]:
        return [_refund_out(r) for r in await services.refunds.overdue_refunds()]

    @app.get("/api/admin/refunds", response_model=list[RefundOut])
    async def list_refunds(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> list[RefundOut]:
        return [_refund_out(r) for r in await services.refunds.list_refunds(status_filter)]

    @app.post("/api/admin/refunds/{refund_id}/approve", response_model=ActionResponse)
    async def approve_refund(
        refund_id: int,
        payload: RefundDecisionRequest,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        return _policy_response(await services.refunds.approve_refund(refund_id, admin.user_id, payload.notes), "approve_failed")

    @app.post("/api/admin/refunds/{refund_id}/reject", response_model=ActionResponse)
    async def reject_refund(
        refund_id: int,
        payload: RefundRejectRequest,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        return _policy_response(await services.refunds.reject_refund(refund_id, admin.user_id, payload.reason), "reject_failed")

    @app.post("/api/admin/refunds/manual", response_model=ActionResponse)
    async def manual_refund(
        payload: ManualRefundRequest,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        result = await services.refunds.create_manual_refund(
            payload.booking_id, admin.user_id, payload.amount_cents, payload.reason, payload.notes
        )
        return _policy_response(result, "manual_refund_failed")

    @app.post("/api/admin/refunds/{refund_id}/process", response_model=ActionResponse)
    async def process_manually(
        refund_id: int,
        payload: ManualProcessRequest,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        result = await services.refunds.process_refund_manually(refund_id, payload.external_reference, admin.user_id)
        return _policy_response(result, "process_failed")

    @app.get("/api/admin/refund_queue", response_model=list[QueueItemOut])
    async def list_queue(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> list[QueueItemOut]:
        return [_queue_out(q) for q in await services.refunds.list_queue(status_filter)]

    @app.post("/api/admin/refund_queue/{queue_id}/retry", response_model=ActionResponse)
    async def retry_queue_item(
        queue_id: int,
        admin: Principal = Depends(require_admin),
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        return _policy_response(await services.refunds.retry_queued_refund(queue_id), "retry_failed")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/db")
    async def health_db(request: Request) -> dict[str, str]:
        await ping(request.app.state.services.availability.session_factory)
        return {"status": "ok"}


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    services: Services | None = None,
    *,
    jwt_secret: str | None = None,
    run_workers: bool | None = None,
) -> FastAPI:
    """Build the API around ``services`` (defaults to the configured database)."""
    run_workers = WORKERS_ENABLED if run_workers is None else run_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stops = []
        if run_workers:
            stops.append(await start_expiration_worker(app.state.services.escrow))
            stops.append(await start_recurring_worker(app.state.services.recurrence))
        try:
            yield
        finally:
            for stop in stops:
                await stop_worker(stop)

    app = FastAPI(title="Bookings Settlement API", version="0.1.0", lifespan=lifespan)
    if services is None:
        factory = get_session_factory()
        services = build_services(factory, notifier=default_notifier(factory))
    app.state.services = services
    app.state.jwt_secret = jwt_secret if jwt_secret is not None else API_JWT_SECRET
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if ALLOW_ALL_ORIGINS else ALLOWED_ORIGINS,
        allow_credentials=not ALLOW_ALL_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_exception_handlers(app)
    _install_routes(app)
    return app


app = create_app()


def get_app() -> FastAPI:
    """Exported factory for uvicorn or tests."""
    return app
