"""
Booking endpoints mounted under /v1/bookings: creation, reads through the
booking cache, status transitions, tracking updates, COD collection and
ratings.
"""
from fastapi import APIRouter, Depends, status

from servio.core.cache import BookingCache
from servio.deps import get_booking_cache, get_booking_machine, get_current_user
from servio.models import Booking, User
from servio.schemas_pkg import (
    BookingCreateRequest,
    BookingOut,
    BookingStatusUpdate,
    RatingRequest,
    TrackingUpdateRequest,
)
from servio.services.bookings import BookingStateMachine

router = APIRouter(tags=["Bookings"])


def _view(booking: Booking) -> dict:
    return BookingOut.model_validate(booking).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BookingOut)
async def create_booking(
    body: BookingCreateRequest,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
):
    booking = await machine.create(
        user,
        body.services,
        professional_id=body.professional_id,
        scheduled_date=body.scheduled_date,
        scheduled_time=body.scheduled_time,
        location=body.location.model_dump(exclude_none=True) if body.location else None,
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return _view(booking)


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
    cache: BookingCache = Depends(get_booking_cache),
):
    # Access and freshness are always checked against the database row
    booking = machine.get_for_actor(booking_id, user)
    cached = await cache.get(booking_id, version=booking.version)
    if cached is not None:
        return cached
    view = _view(booking)
    await cache.set(booking_id, view)
    return view


@router.patch("/{booking_id}/status", response_model=BookingOut)
async def update_booking_status(
    booking_id: int,
    body: BookingStatusUpdate,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
):
    booking = await machine.update_status(
        booking_id,
        user,
        body.status,
        message=body.message,
        reschedule=body.reschedule.model_dump() if body.reschedule else None,
        expected_version=body.expected_version,
        professional_id=body.professional_id,
        cancellation_reason=body.cancellation_reason,
    )
    return _view(booking)


@router.post("/{booking_id}/tracking", response_model=BookingOut)
async def add_tracking_update(
    booking_id: int,
    body: TrackingUpdateRequest,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
):
    booking = await machine.add_tracking_update(
        booking_id,
        user,
        body.status,
        message=body.message,
        location=body.location.model_dump(exclude_none=True) if body.location else None,
        expected_version=body.expected_version,
    )
    return _view(booking)


@router.post("/{booking_id}/cod-collected", response_model=BookingOut)
async def mark_cod_collected(
    booking_id: int,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
):
    booking = await machine.mark_cod_collected(booking_id, user)
    return _view(booking)


@router.post("/{booking_id}/rating", response_model=BookingOut)
async def rate_booking(
    booking_id: int,
    body: RatingRequest,
    user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_booking_machine),
):
    booking = await machine.rate(booking_id, user, body.score, body.review)
    return _view(booking)
