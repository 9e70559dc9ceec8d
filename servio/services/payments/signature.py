from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Union


class SignatureVerifier:
    """HMAC-SHA256 signatures for checkout confirmation and webhook bodies.

    Checkout confirmation signs ``"{order_id}|{payment_id}"`` with the API key
    secret; webhooks sign the exact request bytes with the webhook secret.
    """

    def __init__(self, key_secret: Optional[str], webhook_secret: Optional[str]):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    @staticmethod
    def compute(secret: str, message: Union[bytes, str]) -> str:
        if isinstance(message, str):
            message = message.encode()
        return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()

    @staticmethod
    def matches(expected: str, provided: Optional[str]) -> bool:
        if not provided:
            return False
        return hmac.compare_digest(expected.encode(), str(provided).encode())

    def payment_signature(self, order_id: str, payment_id: str) -> str:
        if not self.key_secret:
            raise ValueError("Gateway key secret not configured")
        return self.compute(self.key_secret, f"{order_id}|{payment_id}")

    def verify_payment(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        if not self.key_secret:
            return False
        return self.matches(self.payment_signature(order_id, payment_id), signature)

    def webhook_signature(self, raw_body: bytes) -> str:
        if not self.webhook_secret:
            raise ValueError("Webhook secret not configured")
        return self.compute(self.webhook_secret, raw_body)

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret:
            return False
        return self.matches(self.webhook_signature(raw_body), signature)
