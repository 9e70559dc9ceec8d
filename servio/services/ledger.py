"""
Payment ledger: the single writer of ``Payment`` rows.

Orders are minted at the gateway before anything is persisted, so a gateway
failure leaves no local record. Capture is a conditional update guarded by
the payment's ``version`` column: whichever of the checkout verification and
the ``payment.captured`` webhook commits first wins, and the other observes
the captured row and returns it unchanged.
"""
from __future__ import annotations

import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from servio.config import settings
from servio.core.cache import BookingCache
from servio.errors import Conflict, Forbidden, NotFound, SignatureInvalid, ValidationError
from servio.models import (
    Booking,
    BookingPaymentStatus,
    Payment,
    PaymentRefund,
    PaymentStatus,
    PaymentWebhookEvent,
    RefundStatus,
    User,
    UserRole,
    utcnow,
)
from servio.services.bookings import BookingStateMachine
from servio.services.notification_service import NotificationDispatcher
from servio.services.payments.base import PaymentGateway
from servio.services.payments.money import to_decimal, to_minor_units
from servio.services.payments.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3

# Provisional refund line id held while the gateway call is in flight
RESERVATION_PREFIX = "reserved_"

SETTLED_STATUSES = (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value)


class PaymentLedger:
    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway],
        verifier: SignatureVerifier,
        bookings: Optional[BookingStateMachine] = None,
        notifier: Optional[NotificationDispatcher] = None,
        cache: Optional[BookingCache] = None,
        currency: Optional[str] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.verifier = verifier
        self.notifier = notifier or NotificationDispatcher(db)
        self.cache = cache or BookingCache()
        self.bookings = bookings or BookingStateMachine(db, self.notifier, self.cache)
        self.currency = (currency or settings.DEFAULT_CURRENCY).upper()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: int, actor: Optional[User] = None) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise NotFound("Payment not found")
        self._check_owner(payment, actor)
        return payment

    def get_by_order_id(self, gateway_order_id: str, actor: Optional[User] = None) -> Payment:
        payment = self.load_by_order_id(gateway_order_id)
        self._check_owner(payment, actor)
        return payment

    def find_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.gateway_payment_id == gateway_payment_id).first()

    def list_for_user(self, user: User) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.user_id == user.id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Order creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        booking_id: int,
        payer: User,
        amount: Any,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payment, Dict[str, Any], str]:
        """Mint a gateway order and persist a ``created`` payment for it.

        Returns ``(payment, gateway_order, public_key_id)``.
        """
        booking = self.db.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        if payer.role != UserRole.ADMIN.value and booking.customer_id != payer.id:
            raise Forbidden("You can only pay for your own bookings")
        if booking.payment_status in (BookingPaymentStatus.PAID.value, BookingPaymentStatus.REFUNDED.value):
            raise ValidationError("Booking has already been paid")

        value = to_decimal(amount)
        minor = to_minor_units(value)
        receipt = f"receipt_{int(time.time() * 1000)}"
        order_notes = dict(notes or {})
        order_notes["bookingId"] = str(booking.id)
        order_notes["userId"] = str(payer.id)

        if self.gateway is None:
            raise ValidationError("Payment gateway is not configured")
        order = await self.gateway.create_order(minor, self.currency, receipt, order_notes)

        payment = Payment(
            booking_id=booking.id,
            user_id=payer.id,
            amount=value,
            currency=self.currency,
            gateway_order_id=order["id"],
            status=PaymentStatus.CREATED.value,
            notes=order_notes,
            receipt_id=receipt,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.error("payment_order_duplicate", gateway_order_id=order["id"], booking_id=booking.id)
            raise Conflict("A payment for this gateway order already exists")
        self.db.refresh(payment)

        logger.info(
            "payment_order_created",
            payment_id=payment.id,
            booking_id=booking.id,
            gateway_order_id=payment.gateway_order_id,
            amount=str(value),
            currency=self.currency,
        )
        return payment, order, self.gateway.key_id

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def verify_payment(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> Payment:
        payment = self.load_by_order_id(gateway_order_id)
        if not self.verifier.verify_payment(gateway_order_id, gateway_payment_id, signature):
            logger.warning(
                "payment_signature_mismatch",
                payment_id=payment.id,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
            )
            raise SignatureInvalid("Payment verification failed", {"verified": False})
        return await self.mark_captured(gateway_order_id, gateway_payment_id, signature)

    async def mark_captured(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: Optional[str] = None,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        payment, changed = self._write(
            lambda: self.load_by_order_id(gateway_order_id, fresh=True),
            lambda p: self.apply_capture(p, gateway_payment_id, signature, method, details),
            "capture",
        )
        if changed:
            await self.after_capture(payment)
        return payment

    async def mark_authorized(
        self, gateway_order_id: str, method: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ) -> Payment:
        payment, _ = self._write(
            lambda: self.load_by_order_id(gateway_order_id, fresh=True),
            lambda p: self.apply_authorization(p, method, details),
            "authorize",
        )
        return payment

    async def record_failure(
        self, gateway_order_id: str, error_code: Optional[str] = None, error_description: Optional[str] = None
    ) -> Payment:
        payment, _ = self._write(
            lambda: self.load_by_order_id(gateway_order_id, fresh=True),
            lambda p: self.apply_failure(p, error_code, error_description),
            "failure",
        )
        return payment

    async def apply_refund(
        self, payment_id: int, refund_id: str, amount: Any, refund_status: Any = RefundStatus.PENDING
    ) -> Payment:
        payment, changed = self._write(
            lambda: self._load(payment_id, fresh=True),
            lambda p: self.apply_refund_line(p, refund_id, amount, refund_status),
            "refund",
        )
        if changed:
            await self.cache.invalidate(payment.booking_id)
        return payment

    async def reserve_refund(self, payment_id: int, amount: Any) -> Tuple[Payment, str]:
        """Hold ``amount`` against the refundable balance before the gateway is called.

        The hold is a pending refund line under a provisional id; concurrent
        reservations serialize on the payment version, so together they can
        never exceed the captured amount.
        """
        reservation_id = f"{RESERVATION_PREFIX}{uuid.uuid4().hex}"
        payment, _ = self._write(
            lambda: self._load(payment_id, fresh=True),
            lambda p: self.apply_refund_line(p, reservation_id, amount, RefundStatus.PENDING),
            "refund_reserve",
        )
        await self.cache.invalidate(payment.booking_id)
        return payment, reservation_id

    async def confirm_refund(self, payment_id: int, reservation_id: str, refund_id: str, amount: Any) -> Payment:
        payment, _ = self._write(
            lambda: self._load(payment_id, fresh=True),
            lambda p: self.rekey_refund_line(p, reservation_id, refund_id, amount),
            "refund_confirm",
        )
        await self.cache.invalidate(payment.booking_id)
        return payment

    async def release_refund(self, payment_id: int, reservation_id: str) -> Payment:
        payment, changed = self._write(
            lambda: self._load(payment_id, fresh=True),
            lambda p: self.release_refund_line(p, reservation_id),
            "refund_release",
        )
        if changed:
            await self.cache.invalidate(payment.booking_id)
        return payment

    # ------------------------------------------------------------------
    # In-transaction mutations (no commit). Each returns whether it changed
    # anything so callers can skip the write entirely.
    # ------------------------------------------------------------------

    def apply_capture(
        self,
        payment: Payment,
        gateway_payment_id: str,
        signature: Optional[str] = None,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not gateway_payment_id:
            raise ValidationError("Gateway payment id is required")

        if payment.status in SETTLED_STATUSES:
            if payment.gateway_payment_id in (None, gateway_payment_id):
                logger.info(
                    "payment_capture_noop",
                    payment_id=payment.id,
                    gateway_payment_id=gateway_payment_id,
                    status=payment.status,
                )
                return False
            logger.error(
                "payment_capture_mismatch",
                payment_id=payment.id,
                captured_with=payment.gateway_payment_id,
                attempted=gateway_payment_id,
            )
            raise Conflict(
                "Payment already captured with a different gateway payment id",
                {"payment_id": payment.id},
            )

        payment.status = PaymentStatus.CAPTURED.value
        payment.gateway_payment_id = gateway_payment_id
        if signature:
            payment.gateway_signature = signature
        if method:
            payment.payment_method = method
        if details:
            payment.payment_details = details
        payment.error_code = None
        payment.error_description = None
        payment.captured_at = utcnow()

        booking = self.db.get(Booking, payment.booking_id)
        if booking is not None:
            self.bookings.apply_payment_status(booking, BookingPaymentStatus.PAID, payment.id)
        return True

    def apply_authorization(
        self, payment: Payment, method: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ) -> bool:
        # Authorization can arrive after capture; never move backwards
        if payment.status not in (
            PaymentStatus.CREATED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.AUTHORIZED.value,
        ):
            logger.info("payment_authorize_ignored", payment_id=payment.id, status=payment.status)
            return False
        payment.status = PaymentStatus.AUTHORIZED.value
        if method:
            payment.payment_method = method
        if details:
            payment.payment_details = details
        return True

    def apply_failure(
        self, payment: Payment, error_code: Optional[str] = None, error_description: Optional[str] = None
    ) -> bool:
        if payment.status in SETTLED_STATUSES:
            logger.info("payment_failure_ignored", payment_id=payment.id, status=payment.status)
            return False
        payment.status = PaymentStatus.FAILED.value
        payment.error_code = error_code
        payment.error_description = error_description
        logger.info("payment_failed", payment_id=payment.id, error_code=error_code)
        return True

    def apply_refund_line(
        self, payment: Payment, refund_id: str, amount: Any, refund_status: Any = RefundStatus.PENDING
    ) -> bool:
        if not refund_id:
            raise ValidationError("Refund id is required")
        try:
            status = RefundStatus(refund_status)
        except ValueError:
            raise ValidationError("Invalid refund status")
        if status == RefundStatus.NONE:
            raise ValidationError("Invalid refund status")

        line = next((r for r in payment.refunds if r.refund_id == refund_id), None)
        if line is not None:
            return self._update_refund_line(payment, line, status)

        value = to_decimal(amount)
        if status == RefundStatus.FAILED:
            # Failure reported for a refund we never counted
            payment.refunds.append(PaymentRefund(refund_id=refund_id, amount=value, status=status.value))
            payment.refund_id = refund_id
            payment.refund_status = status.value
            return True

        if payment.status != PaymentStatus.CAPTURED.value:
            raise ValidationError("Refunds are only allowed for captured payments")
        already = Decimal(payment.refund_amount or 0)
        remaining = Decimal(payment.amount) - already
        if value > remaining:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                {"requested": str(value), "remaining": str(remaining)},
            )

        payment.refunds.append(PaymentRefund(refund_id=refund_id, amount=value, status=status.value))
        payment.refund_amount = already + value
        payment.refund_id = refund_id
        payment.refund_status = status.value

        if payment.refund_amount >= Decimal(payment.amount):
            payment.status = PaymentStatus.REFUNDED.value
            booking = self.db.get(Booking, payment.booking_id)
            if booking is not None and booking.payment_status == BookingPaymentStatus.PAID.value:
                self.bookings.apply_payment_status(booking, BookingPaymentStatus.REFUNDED)

        logger.info(
            "payment_refund_applied",
            payment_id=payment.id,
            refund_id=refund_id,
            amount=str(value),
            refund_total=str(payment.refund_amount),
            status=payment.status,
        )
        return True

    def rekey_refund_line(self, payment: Payment, reservation_id: str, refund_id: str, amount: Any) -> bool:
        line = self._find_refund_line(payment, reservation_id)
        if line is None:
            raise Conflict("Refund reservation no longer exists", {"payment_id": payment.id})

        if self._find_refund_line(payment, refund_id) is not None:
            # The gateway's webhook recorded this refund first
            self.release_refund_line(payment, reservation_id)
            return True

        value = to_decimal(amount)
        if value != Decimal(line.amount):
            if value > Decimal(line.amount):
                raise ValidationError(
                    "Gateway refunded more than was reserved",
                    {"reserved": str(line.amount), "refunded": str(value)},
                )
            self._release_amount(payment, Decimal(line.amount) - value)
            line.amount = value

        line.refund_id = refund_id
        payment.refund_id = refund_id
        payment.refund_status = line.status
        payment.updated_at = utcnow()
        logger.info("payment_refund_confirmed", payment_id=payment.id, refund_id=refund_id, amount=str(value))
        return True

    def release_refund_line(self, payment: Payment, reservation_id: str) -> bool:
        line = self._find_refund_line(payment, reservation_id)
        if line is None:
            return False
        if line.status != RefundStatus.FAILED.value:
            self._release_amount(payment, Decimal(line.amount))
        payment.refunds.remove(line)
        self.db.delete(line)

        latest = payment.refunds[-1] if payment.refunds else None
        payment.refund_id = latest.refund_id if latest else None
        payment.refund_status = latest.status if latest else RefundStatus.NONE.value
        payment.updated_at = utcnow()
        logger.info("payment_refund_released", payment_id=payment.id, amount=str(line.amount))
        return True

    @staticmethod
    def _find_refund_line(payment: Payment, refund_id: str) -> Optional[PaymentRefund]:
        return next((r for r in payment.refunds if r.refund_id == refund_id), None)

    def _release_amount(self, payment: Payment, amount: Decimal) -> None:
        payment.refund_amount = Decimal(payment.refund_amount or 0) - amount
        if payment.status == PaymentStatus.REFUNDED.value and payment.refund_amount < Decimal(payment.amount):
            payment.status = PaymentStatus.CAPTURED.value
            booking = self.db.get(Booking, payment.booking_id)
            if booking is not None and booking.payment_status == BookingPaymentStatus.REFUNDED.value:
                self.bookings.apply_payment_status(booking, BookingPaymentStatus.PAID)

    def _update_refund_line(self, payment: Payment, line: PaymentRefund, status: RefundStatus) -> bool:
        if line.status == status.value or line.status == RefundStatus.FAILED.value:
            return False

        if status == RefundStatus.FAILED:
            self._release_amount(payment, Decimal(line.amount))
            logger.warning("payment_refund_failed", payment_id=payment.id, refund_id=line.refund_id)

        line.status = status.value
        payment.refund_id = line.refund_id
        payment.refund_status = status.value
        # Line-only changes do not dirty the payment row; touch it so the
        # version check still guards this write
        payment.updated_at = utcnow()
        return True

    def append_webhook_event(
        self, payment: Payment, event_id: str, event_type: str, raw_payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Append an event to the audit log; ``False`` if it is already there."""
        if payment.has_webhook_event(event_id):
            return False
        payment.webhook_events.append(
            PaymentWebhookEvent(
                event_id=event_id,
                event_type=event_type,
                raw_payload=raw_payload,
                timestamp=utcnow(),
            )
        )
        return True

    async def after_capture(self, payment: Payment) -> None:
        logger.info(
            "payment_captured",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            amount=str(payment.amount),
        )
        await self.cache.invalidate(payment.booking_id)
        await self.notifier.notify(
            payment.user_id,
            "Payment Successful",
            f"Your payment of {payment.currency} {payment.amount} has been received",
            "payment_captured",
            {"bookingId": payment.booking_id, "paymentId": payment.id},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, payment_id: int, fresh: bool = False) -> Payment:
        query = self.db.query(Payment).filter(Payment.id == payment_id)
        if fresh:
            query = query.populate_existing()
        payment = query.first()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def load_by_order_id(self, gateway_order_id: str, fresh: bool = False) -> Payment:
        if not gateway_order_id:
            raise ValidationError("Gateway order id is required")
        query = self.db.query(Payment).filter(Payment.gateway_order_id == gateway_order_id)
        if fresh:
            query = query.populate_existing()
        payment = query.first()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    @staticmethod
    def _check_owner(payment: Payment, actor: Optional[User]) -> None:
        if actor is None or actor.role == UserRole.ADMIN.value:
            return
        if payment.user_id != actor.id:
            raise Forbidden("Not authorized to view this payment")

    def _write(
        self,
        load: Callable[[], Payment],
        mutate: Callable[[Payment], bool],
        operation: str,
    ) -> Tuple[Payment, bool]:
        """Load, mutate and commit, reloading and retrying on a lost version race."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            payment = load()
            try:
                changed = mutate(payment)
            except Exception:
                self.db.rollback()
                raise
            if not changed:
                self.db.rollback()
                return payment, False
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.info("payment_write_retry", operation=operation, payment_id=payment.id, attempt=attempt)
                continue
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(payment)
            return payment, True

        logger.warning("payment_write_conflict", operation=operation)
        raise Conflict("Payment was modified concurrently, please retry")
