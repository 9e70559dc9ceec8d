"""
Shared fixtures for the test suite. Import this module before anything from
``servio`` so the settings pick up the test environment.
"""
import os
import shutil
import tempfile
from decimal import Decimal

_TMP = tempfile.mkdtemp(prefix="servio-tests-")

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'default.db')}")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.pop("REDIS_URL", None)

from sqlalchemy.orm import sessionmaker  # noqa: E402

from servio import models  # noqa: E402
from servio.config import settings  # noqa: E402
from servio.db import Base, build_engine  # noqa: E402
from servio.errors import GatewayError  # noqa: E402
from servio.services.payments import SignatureVerifier  # noqa: E402

KEY_SECRET = settings.RAZORPAY_KEY_SECRET
WEBHOOK_SECRET = settings.RAZORPAY_WEBHOOK_SECRET


class FakeGateway:
    """In-memory stand-in for the Razorpay client."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_with = None

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.fail_with:
            raise self.fail_with
        order = {
            "id": f"order_test_{len(self.orders) + 1}",
            "entity": "order",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        self.orders.append(order)
        return order

    async def refund(self, payment_id, amount=None, notes=None):
        if self.fail_with:
            raise self.fail_with
        refund = {
            "id": f"rfnd_test_{len(self.refunds) + 1}",
            "entity": "refund",
            "payment_id": payment_id,
            "amount": amount,
            "notes": notes or {},
            "status": "pending",
        }
        self.refunds.append(refund)
        return refund


def gateway_timeout():
    return GatewayError("Payment gateway timed out")


def verifier():
    return SignatureVerifier(KEY_SECRET, WEBHOOK_SECRET)


def payment_signature(order_id, payment_id):
    return SignatureVerifier.compute(KEY_SECRET, f"{order_id}|{payment_id}")


def webhook_signature(body: bytes):
    return SignatureVerifier.compute(WEBHOOK_SECRET, body)


class DatabaseMixin:
    """A fresh file-backed SQLite database per test, seeded with one user of
    each role, a second customer and professional, and two 250.00 services."""

    def setUp(self):
        super().setUp()
        self._dir = tempfile.mkdtemp(dir=_TMP)
        self.engine = build_engine(f"sqlite:///{os.path.join(self._dir, 'test.db')}")
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False)
        self.db = self.Session()
        self._seed()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        shutil.rmtree(self._dir, ignore_errors=True)
        super().tearDown()

    def _seed(self):
        db = self.db
        self.customer = models.User(email="customer@servio.test", full_name="Asha", role="customer")
        self.other_customer = models.User(email="other@servio.test", full_name="Ravi", role="customer")
        self.professional = models.User(email="pro@servio.test", full_name="Meera", role="professional")
        self.other_professional = models.User(email="pro2@servio.test", full_name="Kiran", role="professional")
        self.admin = models.User(email="admin@servio.test", full_name="Ops", role="admin")
        db.add_all([self.customer, self.other_customer, self.professional, self.other_professional, self.admin])
        self.cleaning = models.Service(title="Deep Cleaning", price=Decimal("250.00"), duration=120)
        self.plumbing = models.Service(title="Plumbing", price=Decimal("250.00"), duration=60)
        db.add_all([self.cleaning, self.plumbing])
        db.commit()

    def make_booking(self, status="pending", professional=True, total="500.00",
                     payment_method="gateway", payment_status="unpaid", db=None):
        db = db or self.db
        booking = models.Booking(
            customer_id=self.customer.id,
            professional_id=self.professional.id if professional else None,
            services=[{"serviceId": self.cleaning.id, "title": "Deep Cleaning", "price": 250.0, "duration": 120}],
            status=status,
            price=Decimal(total),
            total_amount=Decimal(total),
            payment_method=payment_method,
            payment_status=payment_status,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    def make_payment(self, booking, amount="500.00", status="created", order_id="order_seed_1",
                     gateway_payment_id=None, db=None):
        db = db or self.db
        payment = models.Payment(
            booking_id=booking.id,
            user_id=booking.customer_id,
            amount=Decimal(amount),
            currency="INR",
            gateway_order_id=order_id,
            gateway_payment_id=gateway_payment_id,
            status=status,
            receipt_id="receipt_1",
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment
