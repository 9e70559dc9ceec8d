"""
Booking lifecycle: creation, role-authorized status transitions, the
append-only tracking log, payment-status bookkeeping and ratings.

Every write goes through the booking's ``version`` column, so two requests
racing on the same booking resolve to one winner and one ``Conflict``.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from servio.core.cache import BookingCache
from servio.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from servio.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    BookingTrackingUpdate,
    PaymentMethod,
    Service,
    User,
    UserRole,
    utcnow,
)
from servio.services.notification_service import NotificationDispatcher
from servio.services.task_queue import enqueue_job

logger = structlog.get_logger(__name__)


TRANSITIONS: Dict[BookingStatus, frozenset] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.REJECTED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.ASSIGNED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

PROFESSIONAL_TARGETS = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.ASSIGNED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
})
CUSTOMER_TARGETS = frozenset({BookingStatus.CANCELLED})

STATUS_MESSAGES = {
    BookingStatus.PENDING: "Booking created and waiting for confirmation",
    BookingStatus.CONFIRMED: "Booking confirmed and professional assigned",
    BookingStatus.ASSIGNED: "Professional assigned to the booking",
    BookingStatus.IN_PROGRESS: "Service is in progress",
    BookingStatus.COMPLETED: "Service completed successfully",
    BookingStatus.CANCELLED: "Booking cancelled",
    BookingStatus.REJECTED: "Booking rejected",
}

# (title, message, type) sent to the other party after a transition
STATUS_NOTIFICATIONS = {
    BookingStatus.CONFIRMED: ("Booking Confirmed", "Your booking has been confirmed by the professional", "booking_confirmed"),
    BookingStatus.ASSIGNED: ("Professional Assigned", "A professional has been assigned to your booking", "professional_assigned"),
    BookingStatus.IN_PROGRESS: ("Service Started", "Your service has been started by the professional", "service_started"),
    BookingStatus.COMPLETED: ("Service Completed", "Your service has been marked as completed", "service_completed"),
    BookingStatus.CANCELLED: ("Booking Cancelled", None, "booking_cancelled"),
    BookingStatus.REJECTED: ("Booking Rejected", "Your booking request has been rejected", "booking_rejected"),
}


def parse_status(value: Any) -> BookingStatus:
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationError("Please provide a valid status")


def is_legal_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


class BookingStateMachine:
    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationDispatcher] = None,
        cache: Optional[BookingCache] = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)
        self.cache = cache or BookingCache()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, booking_id: int) -> Booking:
        booking = self.db.get(Booking, booking_id)
        if not booking:
            raise NotFound("No booking found with that ID")
        return booking

    def get_for_actor(self, booking_id: int, actor: User) -> Booking:
        booking = self.get(booking_id)
        if actor.role != UserRole.ADMIN.value and actor.id not in (booking.customer_id, booking.professional_id):
            raise Forbidden("You are not authorized to view this booking")
        return booking

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        customer: User,
        service_ids: Iterable[int],
        professional_id: Optional[int] = None,
        scheduled_date: Optional[datetime] = None,
        scheduled_time: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        payment_method: str = PaymentMethod.GATEWAY.value,
        notes: Optional[str] = None,
        price: Optional[Decimal] = None,
        total_amount: Optional[Decimal] = None,
    ) -> Booking:
        if customer.role != UserRole.CUSTOMER.value:
            raise Forbidden("Only customers can create bookings")

        service_ids = list(service_ids)
        if not service_ids:
            raise ValidationError("At least one service is required")
        services = self.db.query(Service).filter(Service.id.in_(service_ids)).all()
        by_id = {s.id: s for s in services}
        snapshot: List[Dict[str, Any]] = []
        for sid in service_ids:
            service = by_id.get(sid)
            if not service or not service.is_active:
                raise NotFound("No service found with that ID or service is inactive")
            snapshot.append({
                "serviceId": service.id,
                "title": service.title,
                "price": float(service.price),
                "duration": service.duration,
            })

        if professional_id is not None:
            self._get_professional(professional_id)

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError("Invalid payment method")

        subtotal = sum((Decimal(str(item["price"])) for item in snapshot), Decimal("0"))
        booking = Booking(
            customer_id=customer.id,
            professional_id=professional_id,
            services=snapshot,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            location=location,
            notes=notes,
            status=BookingStatus.PENDING.value,
            price=price if price is not None else subtotal,
            total_amount=total_amount if total_amount is not None else subtotal,
            payment_method=method.value,
            payment_status=(
                BookingPaymentStatus.PENDING_COD.value
                if method == PaymentMethod.COD
                else BookingPaymentStatus.UNPAID.value
            ),
        )
        self.db.add(booking)
        self.db.commit()
        self.db.refresh(booking)
        logger.info("booking_created", booking_id=booking.id, customer_id=customer.id, services=len(snapshot))

        if professional_id is not None:
            await self.notifier.notify(
                professional_id,
                "New Booking Request",
                f"You have a new booking request for {snapshot[0]['title']}",
                "booking_request",
                {"bookingId": booking.id},
            )
        return booking

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def update_status(
        self,
        booking_id: int,
        actor: User,
        target_status: Any,
        message: Optional[str] = None,
        reschedule: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        professional_id: Optional[int] = None,
        cancellation_reason: Optional[str] = None,
    ) -> Booking:
        target = parse_status(target_status)
        booking = self.get(booking_id)
        self._check_version(booking, expected_version)

        self._authorize(booking, actor, target)
        if professional_id is not None and actor.role != UserRole.ADMIN.value:
            raise Forbidden("Only admins can assign a professional")

        current = BookingStatus(booking.status)
        if not is_legal_transition(current, target):
            raise InvalidTransition(
                f"Cannot move booking from {current.value} to {target.value}",
                {"from": current.value, "to": target.value},
            )

        if professional_id is not None:
            booking.professional_id = self._get_professional(professional_id).id

        text = message
        if target == BookingStatus.CANCELLED and cancellation_reason:
            text = cancellation_reason
        if reschedule and reschedule.get("date"):
            booking.scheduled_date = reschedule["date"]
            if reschedule.get("time"):
                booking.scheduled_time = reschedule["time"]
            if not text:
                when = reschedule["date"]
                when = when.date().isoformat() if isinstance(when, datetime) else str(when)
                text = f"Booking rescheduled to {when} {reschedule.get('time') or booking.scheduled_time or ''}".rstrip()

        self._enter(booking, target)
        self._append_tracking(booking, target, text or STATUS_MESSAGES[target], actor)
        self._commit(booking, "booking_status_update")

        logger.info(
            "booking_status_updated",
            booking_id=booking.id,
            from_status=current.value,
            to_status=target.value,
            actor_id=actor.id,
            actor_role=actor.role,
        )
        await self.cache.invalidate(booking.id)
        await self._notify_transition(booking, actor, target, message)
        return booking

    async def add_tracking_update(
        self,
        booking_id: int,
        actor: User,
        status: Any,
        message: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Booking:
        target = parse_status(status)
        booking = self.get(booking_id)
        self._check_version(booking, expected_version)

        if actor.role not in (UserRole.PROFESSIONAL.value, UserRole.ADMIN.value):
            raise Forbidden("You are not authorized to update this booking")

        current = BookingStatus(booking.status)
        if target == current and current not in TERMINAL_STATUSES:
            # Progress note on the current stage
            self._authorize(booking, actor, None)
            booking.updated_at = utcnow()
        else:
            self._authorize(booking, actor, target)
            if not is_legal_transition(current, target):
                raise InvalidTransition(
                    f"Cannot move booking from {current.value} to {target.value}",
                    {"from": current.value, "to": target.value},
                )
            self._enter(booking, target)

        self._append_tracking(
            booking, target, message or f"Booking status updated to {target.value}", actor, location
        )
        self._commit(booking, "booking_tracking_update")

        logger.info(
            "booking_tracking_added",
            booking_id=booking.id,
            status=target.value,
            actor_id=actor.id,
            has_location=location is not None,
        )
        await self.cache.invalidate(booking.id)
        await self.notifier.notify(
            booking.customer_id,
            "Service Update",
            message or f"Your service status: {target.value}",
            "tracking_update",
            {"bookingId": booking.id},
        )
        return booking

    # ------------------------------------------------------------------
    # Payment status (orthogonal to the workflow status)
    # ------------------------------------------------------------------

    def apply_payment_status(self, booking: Booking, payment_status: Any, payment_id: Optional[int] = None) -> None:
        """Mutate ``booking.payment_status`` inside the caller's transaction."""
        try:
            new_status = BookingPaymentStatus(payment_status)
        except ValueError:
            raise ValidationError("Invalid payment status")
        if new_status == BookingPaymentStatus.REFUNDED and booking.payment_status != BookingPaymentStatus.PAID.value:
            raise ValidationError("Only a paid booking can be marked refunded")
        booking.payment_status = new_status.value
        if payment_id is not None:
            booking.payment_id = payment_id

    async def set_payment_status(self, booking_id: int, payment_status: Any, payment_id: Optional[int] = None) -> Booking:
        booking = self.get(booking_id)
        self.apply_payment_status(booking, payment_status, payment_id)
        self._commit(booking, "booking_payment_status")
        logger.info("booking_payment_status_set", booking_id=booking.id, payment_status=booking.payment_status)
        await self.cache.invalidate(booking.id)
        return booking

    async def mark_cod_collected(self, booking_id: int, actor: User) -> Booking:
        booking = self.get(booking_id)
        if actor.role != UserRole.ADMIN.value and not (
            actor.role == UserRole.PROFESSIONAL.value and booking.professional_id == actor.id
        ):
            raise Forbidden("You are not authorized to update this booking")
        if booking.payment_method != PaymentMethod.COD.value or booking.payment_status != BookingPaymentStatus.PENDING_COD.value:
            raise ValidationError("Booking has no pending cash-on-delivery amount")
        booking = await self.set_payment_status(booking.id, BookingPaymentStatus.PAID)
        await self.notifier.notify(
            booking.customer_id,
            "Payment Received",
            "Your cash payment has been recorded",
            "payment_received",
            {"bookingId": booking.id},
        )
        return booking

    # ------------------------------------------------------------------
    # Rating
    # ------------------------------------------------------------------

    async def rate(self, booking_id: int, customer: User, score: Any, review: Optional[str] = None) -> Booking:
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValidationError("Please provide a valid rating score between 1 and 5")

        booking = self.get(booking_id)
        if booking.customer_id != customer.id:
            raise Forbidden("You are not authorized to rate this booking")
        if booking.status != BookingStatus.COMPLETED.value:
            raise ValidationError("You can only rate completed bookings")
        if booking.rating_score is not None:
            raise ValidationError("You have already rated this booking")

        booking.rating_score = score
        booking.rating_review = review or ""
        booking.rated_at = utcnow()
        self._commit(booking, "booking_rating")
        logger.info("booking_rated", booking_id=booking.id, score=score, professional_id=booking.professional_id)
        await self.cache.invalidate(booking.id)

        if booking.professional_id:
            # Eventually consistent: the average is rebuilt by the worker
            job_id = enqueue_job(
                "recompute_professional_rating",
                {"professional_id": booking.professional_id},
                db=self.db,
            )
            if job_id is None:
                logger.warning("rating_recompute_not_enqueued", professional_id=booking.professional_id)
            await self.notifier.notify(
                booking.professional_id,
                "New Rating Received",
                f"You received a {score}-star rating for your service",
                "new_rating",
                {"bookingId": booking.id},
            )
        return booking

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_professional(self, professional_id: int) -> User:
        professional = self.db.get(User, professional_id)
        if not professional or professional.role != UserRole.PROFESSIONAL.value:
            raise NotFound("No professional found with that ID")
        return professional

    @staticmethod
    def _check_version(booking: Booking, expected_version: Optional[int]) -> None:
        if expected_version is not None and booking.version != expected_version:
            raise Conflict(
                "Booking was modified by another request, re-fetch and retry",
                {"expected_version": expected_version, "current_version": booking.version},
            )

    @staticmethod
    def _authorize(booking: Booking, actor: User, target: Optional[BookingStatus]) -> None:
        """``target=None`` checks only that the actor may post on the booking."""
        if actor.role == UserRole.ADMIN.value:
            return
        if actor.role == UserRole.PROFESSIONAL.value and booking.professional_id == actor.id:
            if target is None or target in PROFESSIONAL_TARGETS:
                return
        if actor.role == UserRole.CUSTOMER.value and booking.customer_id == actor.id:
            if target in CUSTOMER_TARGETS and booking.status != BookingStatus.COMPLETED.value:
                return
        raise Forbidden("You are not authorized to update this booking")

    @staticmethod
    def _enter(booking: Booking, target: BookingStatus) -> None:
        booking.status = target.value
        if target == BookingStatus.IN_PROGRESS and booking.service_started_at is None:
            booking.service_started_at = utcnow()
        elif target == BookingStatus.COMPLETED:
            booking.service_completed_at = utcnow()

    @staticmethod
    def _append_tracking(
        booking: Booking,
        status: BookingStatus,
        message: str,
        actor: User,
        location: Optional[Dict[str, Any]] = None,
    ) -> None:
        booking.tracking_updates.append(
            BookingTrackingUpdate(
                status=status.value,
                message=message,
                updated_by=actor.id,
                location=location,
                timestamp=utcnow(),
            )
        )

    def _commit(self, booking: Booking, operation: str) -> None:
        booking_id = booking.id
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.info("booking_write_conflict", booking_id=booking_id, operation=operation)
            raise Conflict("Booking was modified by another request, re-fetch and retry")
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)

    async def _notify_transition(
        self, booking: Booking, actor: User, target: BookingStatus, message: Optional[str]
    ) -> None:
        recipient = booking.professional_id if actor.id == booking.customer_id else booking.customer_id
        if not recipient:
            return
        title, default_message, notification_type = STATUS_NOTIFICATIONS.get(
            target, ("Booking Update", None, "booking_update")
        )
        if target == BookingStatus.CANCELLED:
            default_message = f"Booking has been cancelled by {actor.role}"
        await self.notifier.notify(
            recipient,
            title,
            message or default_message,
            notification_type,
            {"bookingId": booking.id},
        )
