import asyncio
import unittest
from decimal import Decimal

from tests import support
from tests.support import DatabaseMixin, FakeGateway
from servio.errors import Forbidden, GatewayError, NothingToRefund, ValidationError
from servio.models import Booking, Payment
from servio.services.ledger import PaymentLedger
from servio.services.refunds import RefundCoordinator


class TestRefundCoordinator(DatabaseMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.ledger = PaymentLedger(self.db, self.gateway, support.verifier())
        self.coordinator = RefundCoordinator(self.ledger)
        booking = self.make_booking(total="1000.00", payment_status="paid")
        self.payment = self.make_payment(
            booking, amount="1000.00", status="captured", gateway_payment_id="pay_1"
        )

    async def test_admin_only(self):
        for user in (self.customer, self.professional):
            with self.subTest(role=user.role):
                with self.assertRaises(Forbidden):
                    await self.coordinator.initiate(self.payment.id, user)
        self.assertEqual(self.gateway.refunds, [])

    async def test_full_refund_by_default(self):
        payment, refund = await self.coordinator.initiate(self.payment.id, self.admin, notes={"reason": "no show"})

        sent = self.gateway.refunds[0]
        self.assertEqual(sent["payment_id"], "pay_1")
        self.assertEqual(sent["amount"], 100000)
        self.assertEqual(sent["notes"]["reason"], "no show")
        self.assertEqual(sent["notes"]["paymentId"], str(self.payment.id))
        self.assertEqual(sent["notes"]["bookingId"], str(payment.booking_id))
        self.assertEqual(sent["notes"]["userId"], str(self.customer.id))

        self.assertEqual(refund["id"], "rfnd_test_1")
        self.assertEqual(payment.refund_id, "rfnd_test_1")
        self.assertEqual(payment.refund_amount, Decimal("1000.00"))
        self.assertEqual(payment.refund_status, "pending")
        self.assertEqual(payment.status, "refunded")

    async def test_partial_then_remaining(self):
        payment, _ = await self.coordinator.initiate(self.payment.id, self.admin, amount=400)
        self.assertEqual(payment.refund_amount, Decimal("400.00"))
        self.assertEqual(payment.status, "captured")

        payment, _ = await self.coordinator.initiate(self.payment.id, self.admin)
        self.assertEqual(self.gateway.refunds[1]["amount"], 60000)
        self.assertEqual(payment.refund_amount, Decimal("1000.00"))
        self.assertEqual(payment.status, "refunded")

    async def test_nothing_left_to_refund(self):
        await self.coordinator.initiate(self.payment.id, self.admin)

        with self.assertRaises(NothingToRefund):
            await self.coordinator.initiate(self.payment.id, self.admin)
        self.assertEqual(len(self.gateway.refunds), 1)

    async def test_amount_above_remaining(self):
        await self.coordinator.initiate(self.payment.id, self.admin, amount=700)

        with self.assertRaises(ValidationError):
            await self.coordinator.initiate(self.payment.id, self.admin, amount=301)

        self.assertEqual(len(self.gateway.refunds), 1)
        self.assertEqual(self.db.get(Payment, self.payment.id).refund_amount, Decimal("700.00"))

    async def test_requires_captured_payment(self):
        booking = self.make_booking()
        pending = self.make_payment(booking, order_id="order_pending")

        with self.assertRaises(ValidationError):
            await self.coordinator.initiate(pending.id, self.admin)
        self.assertEqual(self.gateway.refunds, [])

    async def test_gateway_failure_records_nothing(self):
        self.gateway.fail_with = GatewayError("Payment gateway unavailable")

        with self.assertRaises(GatewayError):
            await self.coordinator.initiate(self.payment.id, self.admin, amount=100)

        payment = self.db.get(Payment, self.payment.id)
        self.assertEqual(payment.refund_amount, Decimal("0.00"))
        self.assertEqual(payment.refunds, [])

    async def test_webhook_recorded_before_confirmation(self):
        _, reservation = await self.ledger.reserve_refund(self.payment.id, Decimal("300"))
        await self.ledger.apply_refund(self.payment.id, "rfnd_early", Decimal("300"), "pending")

        payment = await self.ledger.confirm_refund(self.payment.id, reservation, "rfnd_early", Decimal("300"))

        self.assertEqual(payment.refund_amount, Decimal("300.00"))
        self.assertEqual([r.refund_id for r in payment.refunds], ["rfnd_early"])
        self.assertEqual(payment.refund_id, "rfnd_early")


class YieldingGateway(FakeGateway):
    """Suspends inside the refund call so a second request can run meanwhile."""

    async def refund(self, payment_id, amount=None, notes=None):
        await asyncio.sleep(0)
        return await super().refund(payment_id, amount, notes)


class TestConcurrentRefunds(DatabaseMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        super().setUp()
        self.gateway = YieldingGateway()
        booking = self.make_booking(total="1000.00", payment_status="paid")
        self.payment = self.make_payment(
            booking, amount="1000.00", status="captured", gateway_payment_id="pay_1"
        )
        self.other_db = self.Session()
        self.first = RefundCoordinator(PaymentLedger(self.db, self.gateway, support.verifier()))
        self.second = RefundCoordinator(PaymentLedger(self.other_db, self.gateway, support.verifier()))

    def tearDown(self):
        self.other_db.close()
        super().tearDown()

    async def test_overlapping_refunds_cannot_overdraw(self):
        # The second session already holds the untouched payment in memory
        self.second.ledger.get_payment(self.payment.id)

        results = await asyncio.gather(
            self.first.initiate(self.payment.id, self.admin, amount=600),
            self.second.initiate(self.payment.id, self.admin, amount=600),
            return_exceptions=True,
        )

        self.assertIsInstance(results[0], tuple)
        self.assertIsInstance(results[1], ValidationError)
        self.assertEqual([(r["id"], r["amount"]) for r in self.gateway.refunds], [("rfnd_test_1", 60000)])

        self.db.expire_all()
        payment = self.db.get(Payment, self.payment.id)
        self.assertEqual(payment.refund_amount, Decimal("600.00"))
        self.assertEqual([(r.refund_id, r.amount) for r in payment.refunds], [("rfnd_test_1", Decimal("600.00"))])

    async def test_reservation_is_held_during_the_gateway_call(self):
        seen = {}
        original = self.gateway.refund

        async def refund(payment_id, amount=None, notes=None):
            other = PaymentLedger(self.Session(), FakeGateway(), support.verifier())
            try:
                held = other.get_payment(self.payment.id)
                seen["refund_amount"] = held.refund_amount
                seen["lines"] = [r.refund_id for r in held.refunds]
            finally:
                other.db.close()
            return await original(payment_id, amount, notes)

        self.gateway.refund = refund
        await self.first.initiate(self.payment.id, self.admin, amount=250)

        self.assertEqual(seen["refund_amount"], Decimal("250.00"))
        self.assertEqual(len(seen["lines"]), 1)
        self.assertTrue(seen["lines"][0].startswith("reserved_"))
        self.db.expire_all()
        payment = self.db.get(Payment, self.payment.id)
        self.assertEqual([r.refund_id for r in payment.refunds], ["rfnd_test_1"])

    async def test_failed_full_refund_restores_the_payment(self):
        self.gateway.fail_with = support.gateway_timeout()

        with self.assertRaises(GatewayError):
            await self.first.initiate(self.payment.id, self.admin)

        self.db.expire_all()
        payment = self.db.get(Payment, self.payment.id)
        self.assertEqual(payment.status, "captured")
        self.assertEqual(payment.refund_amount, Decimal("0.00"))
        self.assertEqual(payment.refund_status, "none")
        self.assertEqual(payment.refunds, [])
        self.assertEqual(self.db.get(Booking, payment.booking_id).payment_status, "paid")


if __name__ == "__main__":
    unittest.main()
