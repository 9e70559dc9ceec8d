"""
Payment endpoints: order creation, checkout verification, refunds and
payment lookups. Mounted under /v1/payments.
"""
from typing import List

from fastapi import APIRouter, Depends

from servio.deps import get_current_user, get_ledger, get_refund_coordinator, require_roles
from servio.models import User, UserRole
from servio.schemas_pkg import (
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentOut,
    RefundRequest,
    RefundResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from servio.services.ledger import PaymentLedger
from servio.services.refunds import RefundCoordinator

router = APIRouter(tags=["Payments"])


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    user: User = Depends(get_current_user),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment, order, key_id = await ledger.create_order(body.booking_id, user, body.amount, body.notes)
    return CreateOrderResponse(
        payment_id=payment.id,
        order=order,
        key_id=key_id,
        amount=payment.amount,
        currency=payment.currency,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    user: User = Depends(get_current_user),
    ledger: PaymentLedger = Depends(get_ledger),
):
    # Ownership is checked before the signature so payers cannot probe other orders
    ledger.get_by_order_id(body.gateway_order_id, user)
    payment = await ledger.verify_payment(
        body.gateway_order_id, body.gateway_payment_id, body.gateway_signature
    )
    return VerifyPaymentResponse(verified=True, payment=PaymentOut.model_validate(payment))


@router.get("/user", response_model=List[PaymentOut])
async def list_user_payments(
    user: User = Depends(get_current_user),
    ledger: PaymentLedger = Depends(get_ledger),
):
    return ledger.list_for_user(user)


@router.get("/order/{gateway_order_id}", response_model=PaymentOut)
async def get_payment_by_order(
    gateway_order_id: str,
    user: User = Depends(get_current_user),
    ledger: PaymentLedger = Depends(get_ledger),
):
    return ledger.get_by_order_id(gateway_order_id, user)


@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(
    payment_id: int,
    user: User = Depends(get_current_user),
    ledger: PaymentLedger = Depends(get_ledger),
):
    return ledger.get_payment(payment_id, user)


@router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    admin: User = Depends(require_roles([UserRole.ADMIN.value])),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    payment, refund = await coordinator.initiate(payment_id, admin, body.amount, body.notes)
    return RefundResponse(refund=refund, payment=PaymentOut.model_validate(payment))
