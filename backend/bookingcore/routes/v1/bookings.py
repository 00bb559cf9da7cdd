# backend/bookingcore/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    GET / - List the caller's bookings (from their mirrors)
    POST / - Request a booking (clients)
    GET /{booking_id} - Booking details
    GET /{booking_id}/cost - Duration and cost estimate
    POST /{booking_id}/accept - Coach accepts, optionally with rate and note
    POST /{booking_id}/reject - Coach turns the request down
    POST /{booking_id}/confirm - Client confirms
    POST /{booking_id}/decline - Client declines with a reason
    POST /{booking_id}/withdraw - Client withdraws an unanswered request
    POST /{booking_id}/reschedule - Client moves an unpaid booking
    POST /{booking_id}/cancel - Either side cancels a confirmed, unpaid booking
    POST /{booking_id}/payment - Acknowledge payment
"""

import asyncio
import logging
from typing import Any, Callable, NoReturn, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, status
from fastapi.params import Path
from sqlalchemy.orm import Session

from ...api.dependencies import get_auth_context, get_booking_service, get_clock, get_session_factory
from ...core.clock import Clock
from ...core.enums import ParticipantRole
from ...core.exceptions import DomainException
from ...principal import AuthContext
from ...schemas.booking import (
    BookingAccept,
    BookingCancel,
    BookingCreate,
    BookingDecline,
    BookingListResponse,
    BookingRecord,
    BookingReject,
    BookingReschedule,
    CostEstimateResponse,
)
from ...services.booking_service import BookingRecordType, BookingService
from ...services.notification_dispatcher import dispatch_pending_notifications

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"

_ERROR_RESPONSES = {
    400: {"description": "Invalid input or operation not allowed in the current status"},
    401: {"description": "Missing caller identity"},
    403: {"description": "Caller is not a participant or has the wrong role"},
    404: {"description": "Booking not found"},
}


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _booking_id_path() -> Any:
    return Path(
        ...,
        description="Booking ULID",
        pattern=ULID_PATH_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    )


def _schedule_dispatch(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session],
    clock: Clock,
) -> None:
    """Deliver the notifications a committed operation queued, after the response."""
    background_tasks.add_task(dispatch_pending_notifications, session_factory, clock)


# ============================================================================
# SECTION 1: Collection routes
# ============================================================================


@router.get("/", response_model=BookingListResponse, responses=_ERROR_RESPONSES)
async def list_bookings(
    role: Optional[ParticipantRole] = Query(None, description="Defaults to the caller's role"),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    """List the caller's bookings ordered by start time."""
    try:
        records = await asyncio.to_thread(
            booking_service.query_by_participant, auth, None, role
        )
        return BookingListResponse(items=records, total=len(records))
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/",
    response_model=BookingRecord,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERROR_RESPONSES, 409: {"description": "Coach already booked for that time"}},
)
async def create_booking(
    background_tasks: BackgroundTasks,
    booking_data: BookingCreate = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    """Request a booking with one or more coaches for one or more clients."""
    try:
        record = await asyncio.to_thread(
            booking_service.create_booking,
            auth,
            booking_data.client_ids,
            booking_data.coach_ids,
            booking_data.start_at,
            booking_data.end_at,
            booking_data.location,
            booking_data.notes,
        )
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


# ============================================================================
# SECTION 2: Dynamic routes (with path parameters)
# ============================================================================


@router.get("/{booking_id}", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def get_booking(
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingRecordType:
    try:
        return await asyncio.to_thread(booking_service.get, auth, booking_id)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/cost", response_model=CostEstimateResponse, responses=_ERROR_RESPONSES)
async def get_booking_cost(
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
) -> CostEstimateResponse:
    """Duration in half hours and total cost; ``total`` is null while unknown."""
    try:
        estimate = await asyncio.to_thread(booking_service.estimate_cost, auth, booking_id)
        return CostEstimateResponse(
            booking_id=booking_id,
            is_group=estimate.is_group,
            duration_hours=estimate.duration_hours,
            total=estimate.total,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/accept", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def accept_booking(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    payload: Optional[BookingAccept] = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    """Accept a booking request as one of its coaches."""
    payload = payload or BookingAccept()
    try:
        record = await asyncio.to_thread(
            booking_service.accept_as_coach,
            auth,
            booking_id,
            payload.rate_usd,
            payload.note,
        )
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/reject", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def reject_booking(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    payload: Optional[BookingReject] = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    reason = payload.reason if payload else None
    try:
        record = await asyncio.to_thread(booking_service.reject_as_coach, auth, booking_id, reason)
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/confirm", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def confirm_booking(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    try:
        record = await asyncio.to_thread(booking_service.confirm_as_client, auth, booking_id)
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/decline", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def decline_booking(
    background_tasks: BackgroundTasks,
    payload: BookingDecline,
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    try:
        record = await asyncio.to_thread(
            booking_service.decline_as_client, auth, booking_id, payload.reason
        )
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/withdraw", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def withdraw_booking(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    try:
        record = await asyncio.to_thread(booking_service.withdraw, auth, booking_id)
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post(
    "/{booking_id}/reschedule",
    response_model=BookingRecord,
    responses={**_ERROR_RESPONSES, 409: {"description": "Coach already booked for that time"}},
)
async def reschedule_booking(
    background_tasks: BackgroundTasks,
    payload: BookingReschedule,
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    try:
        record = await asyncio.to_thread(
            booking_service.reschedule, auth, booking_id, payload.start_at, payload.end_at
        )
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/cancel", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def cancel_booking(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    payload: Optional[BookingCancel] = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    reason = payload.reason if payload else None
    try:
        record = await asyncio.to_thread(booking_service.cancel, auth, booking_id, reason)
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record


@router.post("/{booking_id}/payment", response_model=BookingRecord, responses=_ERROR_RESPONSES)
async def acknowledge_payment(
    background_tasks: BackgroundTasks,
    booking_id: str = _booking_id_path(),
    auth: AuthContext = Depends(get_auth_context),
    booking_service: BookingService = Depends(get_booking_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> BookingRecordType:
    try:
        record = await asyncio.to_thread(booking_service.acknowledge_payment, auth, booking_id)
    except DomainException as e:
        handle_domain_exception(e)
    _schedule_dispatch(background_tasks, session_factory, clock)
    return record
