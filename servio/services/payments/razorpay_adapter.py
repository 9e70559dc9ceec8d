from __future__ import annotations

import base64
from typing import Dict, Any, Optional

import httpx
import structlog

from servio.config import settings
from servio.errors import GatewayError

logger = structlog.get_logger(__name__)


class RazorpayGateway:
    """Thin async client for the Razorpay orders and refunds APIs.

    Every call carries an explicit timeout; transport failures, timeouts and
    non-2xx responses all surface as ``GatewayError``.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        if not self.key_id or not self.key_secret:
            raise ValueError("Razorpay not configured")
        token = base64.b64encode(f"{self.key_id}:{self.key_secret}".encode()).decode()
        self._auth_header = {"Authorization": f"Basic {token}"}
        self._base = base_url or settings.RAZORPAY_API_BASE
        self._timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(self, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.post(f"{self._base}{path}", json=json, headers=self._auth_header)
                r.raise_for_status()
                return r.json()
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", path=path, error=str(e))
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "gateway_rejected",
                path=path,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise GatewayError(
                "Payment gateway rejected the request",
                {"gateway_status": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("gateway_unavailable", path=path, error=str(e))
            raise GatewayError("Payment gateway unavailable") from e

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        payload = {
            "amount": int(amount),
            "currency": currency.upper(),
            "receipt": receipt,
            "notes": notes or {},
            "payment_capture": 1,
        }
        order = await self._post("/v1/orders", payload)
        if not order.get("id"):
            raise GatewayError("Invalid order response")
        logger.info("gateway_order_created", order_id=order["id"], amount=amount, currency=currency)
        return order

    async def refund(
        self, payment_id: str, amount: Optional[int] = None, notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            payload["amount"] = int(amount)
        refund = await self._post(f"/v1/payments/{payment_id}/refund", payload)
        if not refund.get("id"):
            raise GatewayError("Invalid refund response")
        logger.info("gateway_refund_created", refund_id=refund["id"], payment_id=payment_id, amount=refund.get("amount"))
        return refund
