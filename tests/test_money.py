import unittest
from decimal import Decimal

from tests import support  # noqa: F401
from servio.errors import ValidationError
from servio.services.payments.money import from_minor_units, to_decimal, to_minor_units


class TestMoney(unittest.TestCase):
    def test_to_minor_units(self):
        self.assertEqual(to_minor_units(500), 50000)
        self.assertEqual(to_minor_units("199.99"), 19999)
        self.assertEqual(to_minor_units(Decimal("0.1")), 10)

    def test_rounds_half_up_to_paise(self):
        self.assertEqual(to_decimal("10.005"), Decimal("10.01"))
        self.assertEqual(to_minor_units("10.005"), 1001)

    def test_from_minor_units(self):
        self.assertEqual(from_minor_units(40000), Decimal("400.00"))
        self.assertEqual(from_minor_units(1), Decimal("0.01"))

    def test_rejects_invalid_amounts(self):
        for bad in (0, -5, "abc", None, True, float("inf"), float("nan")):
            with self.subTest(amount=bad):
                with self.assertRaises(ValidationError):
                    to_decimal(bad)


if __name__ == "__main__":
    unittest.main()
