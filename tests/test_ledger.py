import unittest
from decimal import Decimal

from tests import support
from tests.support import DatabaseMixin, FakeGateway
from servio.errors import Conflict, Forbidden, GatewayError, NotFound, SignatureInvalid, ValidationError
from servio.models import Booking, Notification, Payment
from servio.services.ledger import PaymentLedger


class LedgerTestCase(DatabaseMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.ledger = PaymentLedger(self.db, self.gateway, support.verifier())

    def ledger_for(self, db):
        return PaymentLedger(db, self.gateway, support.verifier())


class TestCreateOrder(LedgerTestCase):
    async def test_creates_gateway_order_then_payment(self):
        booking = self.make_booking()

        payment, order, key_id = await self.ledger.create_order(
            booking.id, self.customer, 500, {"purpose": "booking"}
        )

        self.assertEqual(key_id, "rzp_test_key")
        self.assertEqual(payment.status, "created")
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.currency, "INR")
        self.assertEqual(payment.gateway_order_id, order["id"])
        self.assertTrue(payment.receipt_id.startswith("receipt_"))

        sent = self.gateway.orders[0]
        self.assertEqual(sent["amount"], 50000)
        self.assertEqual(sent["notes"]["purpose"], "booking")
        self.assertEqual(sent["notes"]["bookingId"], str(booking.id))
        self.assertEqual(sent["notes"]["userId"], str(self.customer.id))

    async def test_caller_notes_cannot_override_ids(self):
        booking = self.make_booking()
        await self.ledger.create_order(booking.id, self.customer, 500, {"bookingId": "999"})
        self.assertEqual(self.gateway.orders[0]["notes"]["bookingId"], str(booking.id))

    async def test_gateway_failure_leaves_no_payment(self):
        booking = self.make_booking()
        self.gateway.fail_with = support.gateway_timeout()

        with self.assertRaises(GatewayError):
            await self.ledger.create_order(booking.id, self.customer, 500)

        self.assertEqual(self.db.query(Payment).count(), 0)

    async def test_missing_booking(self):
        with self.assertRaises(NotFound):
            await self.ledger.create_order(9999, self.customer, 500)
        self.assertEqual(self.gateway.orders, [])

    async def test_only_the_customer_can_pay(self):
        booking = self.make_booking()
        with self.assertRaises(Forbidden):
            await self.ledger.create_order(booking.id, self.other_customer, 500)

    async def test_invalid_amount(self):
        booking = self.make_booking()
        with self.assertRaises(ValidationError):
            await self.ledger.create_order(booking.id, self.customer, 0)
        self.assertEqual(self.gateway.orders, [])

    async def test_paid_booking_cannot_be_paid_again(self):
        booking = self.make_booking(payment_status="paid")
        with self.assertRaises(ValidationError):
            await self.ledger.create_order(booking.id, self.customer, 500)

    async def test_new_order_creates_a_new_payment(self):
        booking = self.make_booking()
        first, _, _ = await self.ledger.create_order(booking.id, self.customer, 500)
        await self.ledger.record_failure(first.gateway_order_id, "BAD_REQUEST_ERROR", "Card declined")
        second, _, _ = await self.ledger.create_order(booking.id, self.customer, 500)

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(self.db.get(Payment, first.id).status, "failed")
        self.assertEqual(self.db.query(Payment).count(), 2)


class TestSettlement(LedgerTestCase):
    async def test_verify_payment_captures_and_marks_booking_paid(self):
        booking = self.make_booking()
        payment, order, _ = await self.ledger.create_order(booking.id, self.customer, 500)
        signature = support.payment_signature(order["id"], "pay_1")

        payment = await self.ledger.verify_payment(order["id"], "pay_1", signature)

        self.assertEqual(payment.status, "captured")
        self.assertEqual(payment.gateway_payment_id, "pay_1")
        self.assertEqual(payment.gateway_signature, signature)
        self.assertIsNotNone(payment.captured_at)

        booking = self.db.get(Booking, booking.id)
        self.assertEqual(booking.payment_status, "paid")
        self.assertEqual(booking.payment_id, payment.id)
        # Payment does not advance the workflow
        self.assertEqual(booking.status, "pending")

        notes = self.db.query(Notification).filter_by(type="payment_captured").all()
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].recipient_id, self.customer.id)

    async def test_bad_signature_is_rejected(self):
        booking = self.make_booking()
        payment, order, _ = await self.ledger.create_order(booking.id, self.customer, 500)

        with self.assertRaises(SignatureInvalid) as ctx:
            await self.ledger.verify_payment(order["id"], "pay_1", "deadbeef")

        self.assertEqual(ctx.exception.details, {"verified": False})
        self.assertEqual(self.db.get(Payment, payment.id).status, "created")
        self.assertEqual(self.db.get(Booking, booking.id).payment_status, "unpaid")

    async def test_verify_unknown_order(self):
        with self.assertRaises(NotFound):
            await self.ledger.verify_payment("order_missing", "pay_1", "sig")

    async def test_capture_is_idempotent(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)

        first = await self.ledger.mark_captured(payment.gateway_order_id, "pay_1")
        version = first.version
        captured_at = first.captured_at

        second = await self.ledger.mark_captured(payment.gateway_order_id, "pay_1")

        self.assertEqual(second.id, first.id)
        self.assertEqual(second.status, "captured")
        self.assertEqual(second.version, version)
        self.assertEqual(second.captured_at, captured_at)
        self.assertEqual(self.db.query(Notification).filter_by(type="payment_captured").count(), 1)

    async def test_capture_with_a_different_payment_id_conflicts(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)
        await self.ledger.mark_captured(payment.gateway_order_id, "pay_1")

        with self.assertRaises(Conflict):
            await self.ledger.mark_captured(payment.gateway_order_id, "pay_2")

        self.assertEqual(self.db.get(Payment, payment.id).gateway_payment_id, "pay_1")

    async def test_concurrent_capture_from_two_sessions(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)

        other_db = self.Session()
        try:
            other = self.ledger_for(other_db)
            # Both paths have read the payment before either writes
            other_db.get(Payment, payment.id)

            await self.ledger.mark_captured(payment.gateway_order_id, "pay_1", "sig")
            result = await other.mark_captured(payment.gateway_order_id, "pay_1")

            self.assertEqual(result.status, "captured")
            self.assertEqual(result.gateway_signature, "sig")
        finally:
            other_db.close()

        self.db.expire_all()
        self.assertEqual(self.db.query(Notification).filter_by(type="payment_captured").count(), 1)

    async def test_failure_after_capture_is_ignored(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)
        await self.ledger.mark_captured(payment.gateway_order_id, "pay_1")

        result = await self.ledger.record_failure(payment.gateway_order_id, "BAD", "late failure")

        self.assertEqual(result.status, "captured")
        self.assertIsNone(result.error_code)

    async def test_record_failure(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)

        result = await self.ledger.record_failure(payment.gateway_order_id, "BAD_REQUEST_ERROR", "Card declined")

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error_code, "BAD_REQUEST_ERROR")
        self.assertEqual(result.error_description, "Card declined")

    async def test_authorization_never_moves_a_capture_backwards(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)
        await self.ledger.mark_captured(payment.gateway_order_id, "pay_1")

        result = await self.ledger.mark_authorized(payment.gateway_order_id, "card", {"card_id": "card_1"})

        self.assertEqual(result.status, "captured")


class TestRefundAccounting(LedgerTestCase):
    def captured(self, amount="1000.00"):
        booking = self.make_booking(total=amount, payment_status="paid")
        return self.make_payment(booking, amount=amount, status="captured", gateway_payment_id="pay_1")

    async def test_partial_then_full_refund(self):
        payment = self.captured()

        payment = await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("400"), "pending")
        self.assertEqual(payment.refund_amount, Decimal("400.00"))
        self.assertEqual(payment.refund_status, "pending")
        self.assertEqual(payment.status, "captured")

        payment = await self.ledger.apply_refund(payment.id, "rfnd_2", Decimal("600"), "pending")
        self.assertEqual(payment.refund_amount, Decimal("1000.00"))
        self.assertEqual(payment.status, "refunded")
        self.assertEqual(self.db.get(Booking, payment.booking_id).payment_status, "refunded")

    async def test_refund_cannot_exceed_remaining(self):
        payment = self.captured()
        await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("700"), "pending")

        with self.assertRaises(ValidationError):
            await self.ledger.apply_refund(payment.id, "rfnd_2", Decimal("300.01"), "pending")

        payment = self.db.get(Payment, payment.id)
        self.assertEqual(payment.refund_amount, Decimal("700.00"))
        self.assertEqual(payment.refund_id, "rfnd_1")
        self.assertEqual(len(payment.refunds), 1)

    async def test_refund_requires_capture(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)
        with self.assertRaises(ValidationError):
            await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("100"), "pending")

    async def test_same_refund_id_only_updates_status(self):
        payment = self.captured()
        await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("400"), "pending")

        payment = await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("400"), "processed")

        self.assertEqual(payment.refund_amount, Decimal("400.00"))
        self.assertEqual(payment.refund_status, "processed")
        self.assertEqual(len(payment.refunds), 1)
        self.assertEqual(payment.refunds[0].status, "processed")

    async def test_failed_refund_releases_its_amount(self):
        payment = self.captured()
        await self.ledger.apply_refund(payment.id, "rfnd_1", Decimal("1000"), "pending")

        payment = await self.ledger.apply_refund(payment.id, "rfnd_1", None, "failed")

        self.assertEqual(payment.refund_amount, Decimal("0.00"))
        self.assertEqual(payment.refund_status, "failed")
        self.assertEqual(payment.status, "captured")
        self.assertEqual(self.db.get(Booking, payment.booking_id).payment_status, "paid")

    async def test_unknown_payment(self):
        with self.assertRaises(NotFound):
            await self.ledger.apply_refund(9999, "rfnd_1", Decimal("1"), "pending")


class TestWebhookAuditLog(LedgerTestCase):
    def test_append_is_deduplicated_by_event_id(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)

        self.assertTrue(self.ledger.append_webhook_event(payment, "evt_1", "payment.captured", {"id": "evt_1"}))
        self.db.commit()
        self.assertFalse(self.ledger.append_webhook_event(payment, "evt_1", "payment.captured", {"id": "evt_1"}))
        self.assertTrue(self.ledger.append_webhook_event(payment, "evt_2", "payment.failed"))
        self.db.commit()

        events = self.db.get(Payment, payment.id).webhook_events
        self.assertEqual([e.event_id for e in events], ["evt_1", "evt_2"])


class TestPaymentQueries(LedgerTestCase):
    async def test_owner_and_admin_can_read(self):
        booking = self.make_booking()
        payment = self.make_payment(booking)

        self.assertEqual(self.ledger.get_payment(payment.id, self.customer).id, payment.id)
        self.assertEqual(self.ledger.get_by_order_id(payment.gateway_order_id, self.admin).id, payment.id)
        with self.assertRaises(Forbidden):
            self.ledger.get_payment(payment.id, self.other_customer)

    async def test_list_for_user_newest_first(self):
        booking = self.make_booking()
        first = self.make_payment(booking, order_id="order_a")
        second = self.make_payment(booking, order_id="order_b")

        payments = self.ledger.list_for_user(self.customer)

        self.assertEqual([p.id for p in payments], [second.id, first.id])
        self.assertEqual(self.ledger.list_for_user(self.other_customer), [])


if __name__ == "__main__":
    unittest.main()
