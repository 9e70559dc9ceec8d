"""
Razorpay webhooks: POST /v1/webhooks/razorpay
- Validates the HMAC signature over the raw body with RAZORPAY_WEBHOOK_SECRET
- Idempotent per payment via the webhook event audit log
- Answers 200 for every authenticated delivery; processing errors are logged
  and picked up again on the gateway's next redelivery
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from servio.deps import get_webhook_processor
from servio.errors import ServiceError, SignatureInvalid, Unauthorized
from servio.logging_config import get_logger
from servio.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

router = APIRouter(tags=["Razorpay Webhooks"])


@router.post("")
async def webhook_razorpay(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")

    try:
        processor.verify(body, signature)
    except (Unauthorized, SignatureInvalid) as e:
        logger.warning("webhook_rejected", reason=e.message)
        return JSONResponse(status_code=400, content={"status": "error"})

    try:
        result = await processor.handle(body, signature)
    except ServiceError as e:
        logger.warning("webhook_not_applied", error=e.kind, message=e.message)
        return {"status": "ok"}
    except Exception:
        logger.error("webhook_processing_failed", exc_info=True)
        return {"status": "ok"}

    if result.duplicate:
        return {"status": "ok", "idempotent": True}
    return {"status": "ok"}
