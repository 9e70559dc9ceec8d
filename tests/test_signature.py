import unittest

from tests import support  # noqa: F401
from servio.services.payments import SignatureVerifier


class TestSignatureVerifier(unittest.TestCase):
    def setUp(self):
        self.verifier = SignatureVerifier("key_secret", "webhook_secret")

    def test_payment_signature_round_trip(self):
        sig = SignatureVerifier.compute("key_secret", "order_1|pay_1")
        self.assertEqual(self.verifier.payment_signature("order_1", "pay_1"), sig)
        self.assertTrue(self.verifier.verify_payment("order_1", "pay_1", sig))

    def test_payment_signature_is_bound_to_both_ids(self):
        sig = self.verifier.payment_signature("order_1", "pay_1")
        self.assertFalse(self.verifier.verify_payment("order_1", "pay_2", sig))
        self.assertFalse(self.verifier.verify_payment("order_2", "pay_1", sig))

    def test_empty_signature_never_verifies(self):
        self.assertFalse(self.verifier.verify_payment("order_1", "pay_1", ""))
        self.assertFalse(self.verifier.verify_payment("order_1", "pay_1", None))

    def test_webhook_signature_round_trip(self):
        body = b'{"event":"payment.captured","payload":{}}'
        sig = SignatureVerifier.compute("webhook_secret", body)
        self.assertTrue(self.verifier.verify_webhook(body, sig))

    def test_webhook_signature_fails_on_flipped_byte(self):
        body = b'{"event":"payment.captured","payload":{}}'
        sig = self.verifier.webhook_signature(body)
        tampered = bytearray(body)
        tampered[10] ^= 0x01
        self.assertFalse(self.verifier.verify_webhook(bytes(tampered), sig))

    def test_webhook_signature_uses_raw_bytes(self):
        # Same JSON, different whitespace: signatures must differ
        a = b'{"event": "payment.captured"}'
        b = b'{"event":"payment.captured"}'
        self.assertNotEqual(self.verifier.webhook_signature(a), self.verifier.webhook_signature(b))

    def test_webhook_secret_is_not_the_key_secret(self):
        body = b"{}"
        wrong = SignatureVerifier.compute("key_secret", body)
        self.assertFalse(self.verifier.verify_webhook(body, wrong))

    def test_missing_secrets_raise(self):
        verifier = SignatureVerifier(None, None)
        with self.assertRaises(ValueError):
            verifier.payment_signature("order_1", "pay_1")
        with self.assertRaises(ValueError):
            verifier.webhook_signature(b"{}")

    def test_missing_secrets_never_verify(self):
        verifier = SignatureVerifier(None, "")
        self.assertFalse(verifier.verify_payment("order_1", "pay_1", "a" * 64))
        self.assertFalse(verifier.verify_webhook(b"{}", "a" * 64))


if __name__ == "__main__":
    unittest.main()
