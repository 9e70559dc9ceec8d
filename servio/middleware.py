"""
Request tracking middleware.

Every request gets a request id (taken from ``X-Request-ID`` when the caller
sends one) bound into the structlog context, so ledger, booking and webhook
log lines can be correlated with the HTTP call that caused them.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from structlog.contextvars import bind_contextvars, clear_contextvars

from servio.logging_config import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/health", "/"})


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    path = request.url.path

    clear_contextvars()
    bind_contextvars(request_id=request_id, method=request.method, path=path)
    request.state.request_id = request_id

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.error("request_failed", duration_ms=_elapsed_ms(started), exc_info=True)
        raise

    response.headers[REQUEST_ID_HEADER] = request_id
    if path not in QUIET_PATHS:
        log = logger.warning if response.status_code >= 500 else logger.info
        log("request_completed", status_code=response.status_code, duration_ms=_elapsed_ms(started))
    return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
