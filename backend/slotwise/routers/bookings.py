import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Header, HTTPException, Query

from slotwise.auth import assert_actor_authorized
from slotwise.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SchedulingSystemError,
    SlotWiseError,
)
from slotwise.models import (
    Booking,
    BookingActionRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingPage,
    BookingRescheduleRequest,
    BookingStatusChange,
    Review,
    ReviewCreateRequest,
    SlotAvailability,
)
from slotwise.services.booking_engine import booking_engine
from slotwise.services.booking_store import BookingFilters

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


def raise_http_error(exc: Exception) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        raise HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, SlotWiseError):
        raise HTTPException(status_code=400, detail=str(exc))
    logger.exception("Request failed: %s", exc)
    raise HTTPException(status_code=500, detail="Scheduling system error")


@router.post("/bookings", response_model=Booking, status_code=201)
def create_booking(request: BookingCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return booking_engine.create_booking(request)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.get("/bookings", response_model=BookingPage)
def list_bookings(
    actor_user_id: str = Query(...),
    user_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    service_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None),
    date_from: Optional[str] = Query(default=None),
    date_to: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    filters = BookingFilters(
        user_id=user_id,
        provider_id=provider_id,
        service_id=service_id,
        status=status,
        payment_status=payment_status,
        date_from=date_from,
        date_to=date_to,
    )
    try:
        return booking_engine.search_bookings(filters, actor_user_id=actor_user_id, page=page, limit=limit)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return booking_engine.get_booking(booking_id, actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.get("/bookings/{booking_id}/history", response_model=list[BookingStatusChange])
def booking_history(
    booking_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return booking_engine.booking_history(booking_id, actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.post("/bookings/{booking_id}/confirm", response_model=Booking)
def confirm_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_engine.confirm_booking(booking_id, request.actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    request: BookingCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_engine.cancel_booking(booking_id, request.reason, request.actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_engine.complete_booking(booking_id, request.actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.post("/bookings/{booking_id}/reschedule", response_model=Booking)
def reschedule_booking(
    booking_id: str,
    request: BookingRescheduleRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_engine.reschedule_booking(booking_id, request)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.post("/bookings/{booking_id}/review", response_model=Review, status_code=201)
def add_review(
    booking_id: str,
    request: ReviewCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_engine.add_review(booking_id, request.rating, request.comment, request.actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.get("/providers/{provider_id}/availability", response_model=list[SlotAvailability])
def provider_availability(
    provider_id: str,
    date: str = Query(...),
    service_id: Optional[str] = Query(default=None),
):
    try:
        return booking_engine.available_slots(provider_id, date, service_id=service_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)


@router.get("/providers/{provider_id}/reviews", response_model=list[Review])
def provider_reviews(provider_id: str):
    try:
        return booking_engine.list_provider_reviews(provider_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)
