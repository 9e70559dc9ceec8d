# servio/schemas_pkg/__init__.py

# Payment schemas
from .payments import (
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentOut,
    RefundLineOut,
    RefundRequest,
    RefundResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

# Booking schemas
from .bookings import (
    BookingCreateRequest,
    BookingOut,
    BookingStatusUpdate,
    Location,
    RatingRequest,
    Reschedule,
    TrackingUpdateOut,
    TrackingUpdateRequest,
)

__all__ = [
    # Payments
    "CreateOrderRequest",
    "CreateOrderResponse",
    "PaymentOut",
    "RefundLineOut",
    "RefundRequest",
    "RefundResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",

    # Bookings
    "BookingCreateRequest",
    "BookingOut",
    "BookingStatusUpdate",
    "Location",
    "RatingRequest",
    "Reschedule",
    "TrackingUpdateOut",
    "TrackingUpdateRequest",
]
