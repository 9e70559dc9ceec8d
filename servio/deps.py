from typing import List, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars

from servio.config import settings
from servio.core.cache import BookingCache, redis_manager
from servio.db import get_db
from servio.errors import Forbidden, Unauthorized
from servio.models import User
from servio.security import decode_jwt
from servio.services.bookings import BookingStateMachine
from servio.services.ledger import PaymentLedger
from servio.services.notification_service import NotificationDispatcher
from servio.services.payments import PaymentGateway, RazorpayGateway, SignatureVerifier
from servio.services.refunds import RefundCoordinator
from servio.services.webhook_processor import WebhookProcessor

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency to get the current authenticated user from the bearer JWT.
    """
    if credentials is None:
        raise Unauthorized("Not authenticated")

    payload = decode_jwt(credentials.credentials)
    if not payload:
        raise Unauthorized("Invalid authentication credentials")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token payload")

    user = db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()
    if not user:
        raise Unauthorized("User not found or inactive")

    bind_contextvars(user_id=user.id, user_role=user.role)
    return user


def require_roles(allowed_roles: List[str]):
    """
    Dependency factory to require specific roles.

    Usage:
        @router.post("/refund")
        async def refund(user: User = Depends(require_roles(["admin"]))):
            ...
    """
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            raise Forbidden(f"Insufficient permissions. Required roles: {allowed_roles}")
        return current_user
    return role_checker


# ---------------------------------------------------------------------
# Service wiring. Tests override get_gateway / get_booking_cache.
# ---------------------------------------------------------------------

def get_gateway() -> Optional[PaymentGateway]:
    if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
        return None
    return RazorpayGateway()


def get_verifier() -> SignatureVerifier:
    return SignatureVerifier(settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_WEBHOOK_SECRET)


def get_booking_cache() -> BookingCache:
    return redis_manager.booking_cache()


def get_booking_machine(
    db: Session = Depends(get_db),
    cache: BookingCache = Depends(get_booking_cache),
) -> BookingStateMachine:
    return BookingStateMachine(db, NotificationDispatcher(db), cache)


def get_ledger(
    db: Session = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
    verifier: SignatureVerifier = Depends(get_verifier),
    bookings: BookingStateMachine = Depends(get_booking_machine),
) -> PaymentLedger:
    return PaymentLedger(
        db,
        gateway,
        verifier,
        bookings=bookings,
        notifier=bookings.notifier,
        cache=bookings.cache,
    )


def get_webhook_processor(ledger: PaymentLedger = Depends(get_ledger)) -> WebhookProcessor:
    return WebhookProcessor(ledger)


def get_refund_coordinator(ledger: PaymentLedger = Depends(get_ledger)) -> RefundCoordinator:
    return RefundCoordinator(ledger)
