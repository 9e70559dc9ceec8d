from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from servio.errors import Forbidden, NothingToRefund, ValidationError
from servio.models import Payment, PaymentStatus, User, UserRole
from servio.services.ledger import PaymentLedger
from servio.services.payments.money import from_minor_units, to_decimal, to_minor_units

logger = structlog.get_logger(__name__)


class RefundCoordinator:
    """Admin-initiated refunds: reserve the amount in the ledger, call the
    gateway, then re-key the reservation to the gateway's refund id. The line
    stays ``pending`` until a webhook reports it processed or failed."""

    def __init__(self, ledger: PaymentLedger):
        self.ledger = ledger

    async def initiate(
        self,
        payment_id: int,
        actor: User,
        amount: Optional[Any] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payment, Dict[str, Any]]:
        if actor.role != UserRole.ADMIN.value:
            raise Forbidden("Only admins can initiate refunds")

        payment = self.ledger.get_payment(payment_id)
        remaining = Decimal(payment.amount) - Decimal(payment.refund_amount or 0)
        if remaining <= 0:
            raise NothingToRefund("Nothing left to refund on this payment")
        if payment.status != PaymentStatus.CAPTURED.value:
            raise ValidationError("Refund only allowed for captured payments")

        value = remaining if amount is None else to_decimal(amount)
        if value > remaining:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                {"requested": str(value), "remaining": str(remaining)},
            )
        if not payment.gateway_payment_id:
            raise ValidationError("Payment has no gateway payment id to refund")
        if self.ledger.gateway is None:
            raise ValidationError("Payment gateway is not configured")

        refund_notes = dict(notes or {})
        refund_notes["paymentId"] = str(payment.id)
        refund_notes["bookingId"] = str(payment.booking_id)
        refund_notes["userId"] = str(payment.user_id)

        # Held before the gateway call so concurrent refunds cannot overdraw
        payment, reservation_id = await self.ledger.reserve_refund(payment.id, value)
        try:
            refund = await self.ledger.gateway.refund(
                payment.gateway_payment_id, to_minor_units(value), refund_notes
            )
        except Exception:
            await self.ledger.release_refund(payment.id, reservation_id)
            raise
        refunded = from_minor_units(refund["amount"]) if refund.get("amount") is not None else value

        logger.info(
            "refund_initiated",
            payment_id=payment.id,
            refund_id=refund["id"],
            amount=str(refunded),
            actor_id=actor.id,
        )
        payment = await self.ledger.confirm_refund(payment.id, reservation_id, refund["id"], refunded)
        return payment, refund
