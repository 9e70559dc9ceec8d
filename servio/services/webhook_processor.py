"""
Inbound Razorpay webhook handling.

Delivery is at-least-once and may arrive out of order. Each event is applied
and appended to the payment's audit log in one commit, and an event id that
is already in the log is acknowledged without being applied again.
"""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from servio.errors import NotFound, ServiceError, SignatureInvalid, Unauthorized, ValidationError
from servio.models import Payment, PaymentStatus, RefundStatus
from servio.services.ledger import MAX_WRITE_ATTEMPTS, PaymentLedger
from servio.services.payments.money import from_minor_units

logger = structlog.get_logger(__name__)


class WebhookEventType(str, enum.Enum):
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    REFUND_CREATED = "refund.created"
    REFUND_PROCESSED = "refund.processed"
    REFUND_FAILED = "refund.failed"


@dataclass
class WebhookEvent:
    id: str
    type: str
    payload: Dict[str, Any]
    raw: Dict[str, Any]

    @property
    def payment_entity(self) -> Dict[str, Any]:
        return ((self.payload.get("payment") or {}).get("entity")) or {}

    @property
    def order_entity(self) -> Dict[str, Any]:
        return ((self.payload.get("order") or {}).get("entity")) or {}

    @property
    def refund_entity(self) -> Dict[str, Any]:
        return ((self.payload.get("refund") or {}).get("entity")) or {}

    @property
    def order_id(self) -> Optional[str]:
        return self.payment_entity.get("order_id") or self.order_entity.get("id")

    @property
    def known_type(self) -> Optional[WebhookEventType]:
        try:
            return WebhookEventType(self.type)
        except ValueError:
            return None


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    payment_id: Optional[int] = None
    duplicate: bool = False
    applied: bool = False


def parse_event(raw_body: bytes) -> WebhookEvent:
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(data, dict) or not data.get("event"):
        raise ValidationError("Webhook body has no event type")

    payload = data.get("payload") or {}
    event_id = data.get("id") or _fallback_event_id(data["event"], payload)
    if not event_id:
        raise ValidationError("Webhook body has no event id")
    return WebhookEvent(id=str(event_id), type=data["event"], payload=payload, raw=data)


def _fallback_event_id(event_type: str, payload: Dict[str, Any]) -> Optional[str]:
    # Razorpay sends the event id as a header too; bodies replayed without it
    # are keyed on the entity the event is about
    for entity in ("refund", "payment", "order"):
        entity_id = ((payload.get(entity) or {}).get("entity") or {}).get("id")
        if entity_id:
            return f"{event_type}:{entity_id}"
    return None


def _payment_details(entity: Dict[str, Any]) -> Dict[str, Any]:
    keys = ("bank", "wallet", "vpa", "card_id", "email", "contact")
    return {k: entity[k] for k in keys if entity.get(k) is not None}


class WebhookProcessor:
    def __init__(self, ledger: PaymentLedger):
        self.ledger = ledger
        self.db = ledger.db
        self._handlers: Dict[WebhookEventType, Callable[[Payment, WebhookEvent], bool]] = {
            WebhookEventType.PAYMENT_AUTHORIZED: self._on_authorized,
            WebhookEventType.PAYMENT_CAPTURED: self._on_captured,
            WebhookEventType.PAYMENT_FAILED: self._on_failed,
            WebhookEventType.REFUND_CREATED: self._on_refund(RefundStatus.PENDING),
            WebhookEventType.REFUND_PROCESSED: self._on_refund(RefundStatus.PROCESSED),
            WebhookEventType.REFUND_FAILED: self._on_refund(RefundStatus.FAILED),
        }

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise Unauthorized("Missing webhook signature")
        if not self.ledger.verifier.verify_webhook(raw_body, signature):
            logger.warning("webhook_signature_invalid", body_size=len(raw_body))
            raise SignatureInvalid("Invalid webhook signature")

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, deduplicate and apply one delivery.

        Raises ``Unauthorized``/``SignatureInvalid`` before anything is read
        from the body; every later error is the caller's to log.
        """
        self.verify(raw_body, signature)
        event = parse_event(raw_body)
        log = logger.bind(event_id=event.id, event_type=event.type)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            payment = self._find_payment(event)
            result = WebhookResult(event_id=event.id, event_type=event.type, payment_id=payment.id)

            if payment.has_webhook_event(event.id):
                log.info("webhook_duplicate", payment_id=payment.id)
                self.db.rollback()
                result.duplicate = True
                return result

            previous_status = payment.status
            try:
                result.applied = self._dispatch(payment, event)
            except ServiceError as e:
                # Permanent for this event: keep the audit entry, skip the change
                self.db.rollback()
                log.warning("webhook_event_rejected", payment_id=payment.id, error=e.kind, message=e.message)
                payment = self._find_payment(event)
                result.applied = False
            except Exception:
                self.db.rollback()
                raise

            self.ledger.append_webhook_event(payment, event.id, event.type, event.raw)
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                log.info("webhook_write_retry", payment_id=result.payment_id, attempt=attempt)
                continue
            except IntegrityError:
                # Concurrent delivery of the same event inserted it first
                self.db.rollback()
                log.info("webhook_duplicate_race", payment_id=result.payment_id)
                result.duplicate = True
                result.applied = False
                return result
            except Exception:
                self.db.rollback()
                raise

            self.db.refresh(payment)
            log.info(
                "webhook_processed",
                payment_id=payment.id,
                applied=result.applied,
                status=payment.status,
            )
            await self._after_commit(payment, event, previous_status, result.applied)
            return result

        log.warning("webhook_write_conflict")
        raise ServiceError("Could not apply webhook after concurrent modifications")

    # ------------------------------------------------------------------

    def _find_payment(self, event: WebhookEvent) -> Payment:
        order_id = event.order_id
        if order_id:
            return self.ledger.load_by_order_id(order_id, fresh=True)
        gateway_payment_id = event.refund_entity.get("payment_id")
        if gateway_payment_id:
            payment = (
                self.db.query(Payment)
                .filter(Payment.gateway_payment_id == gateway_payment_id)
                .populate_existing()
                .first()
            )
            if payment:
                return payment
        raise NotFound("No payment matches this webhook event")

    def _dispatch(self, payment: Payment, event: WebhookEvent) -> bool:
        event_type = event.known_type
        if event_type is None:
            logger.info("webhook_event_unhandled", event_id=event.id, event_type=event.type)
            return False
        return self._handlers[event_type](payment, event)

    def _on_authorized(self, payment: Payment, event: WebhookEvent) -> bool:
        entity = event.payment_entity
        return self.ledger.apply_authorization(payment, entity.get("method"), _payment_details(entity))

    def _on_captured(self, payment: Payment, event: WebhookEvent) -> bool:
        entity = event.payment_entity
        return self.ledger.apply_capture(
            payment,
            entity.get("id"),
            method=entity.get("method"),
            details=_payment_details(entity),
        )

    def _on_failed(self, payment: Payment, event: WebhookEvent) -> bool:
        entity = event.payment_entity
        return self.ledger.apply_failure(payment, entity.get("error_code"), entity.get("error_description"))

    def _on_refund(self, status: RefundStatus) -> Callable[[Payment, WebhookEvent], bool]:
        def handler(payment: Payment, event: WebhookEvent) -> bool:
            entity = event.refund_entity
            amount = entity.get("amount")
            return self.ledger.apply_refund_line(
                payment,
                entity.get("id"),
                from_minor_units(amount) if amount is not None else None,
                status,
            )
        return handler

    async def _after_commit(self, payment: Payment, event: WebhookEvent, previous_status: str, applied: bool) -> None:
        if not applied:
            return
        if event.known_type == WebhookEventType.PAYMENT_CAPTURED and previous_status != PaymentStatus.CAPTURED.value:
            await self.ledger.after_capture(payment)
        else:
            await self.ledger.cache.invalidate(payment.booking_id)
