from .base import PaymentGateway
from .razorpay_adapter import RazorpayGateway
from .signature import SignatureVerifier

__all__ = ["PaymentGateway", "RazorpayGateway", "SignatureVerifier"]
