from __future__ import annotations

from typing import Optional, Protocol, Dict, Any


class PaymentGateway(Protocol):
    key_id: Optional[str]

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create a gateway order for ``amount`` minor units.
        Returns the gateway order entity; at least ``{id, amount, currency, receipt}``.
        """
        ...

    async def refund(
        self, payment_id: str, amount: Optional[int] = None, notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Refund a captured gateway payment, fully when ``amount`` is None.
        Returns the refund entity; at least ``{id, amount}`` with amount in minor units.
        """
        ...
