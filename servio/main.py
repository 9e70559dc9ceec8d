# servio/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# ---------------------------------------------
# LOAD ENVIRONMENT VARIABLES
# ---------------------------------------------
load_dotenv()

from servio.config import settings
from servio.core.cache import redis_manager
from servio.errors import ServiceError
from servio.logging_config import get_logger
from servio.middleware import request_id_middleware
from servio.routers import bookings, payments, webhooks

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await redis_manager.connect()
    logger.info("app_started", environment=settings.ENVIRONMENT)
    yield
    await redis_manager.close()


# ---------------------------------------------
# APP INIT
# ---------------------------------------------
app = FastAPI(
    title=f"{settings.APP_NAME} API",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------
# CORS & REQUEST TRACKING
# ---------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_id_middleware)


# ---------------------------------------------
# ERROR HANDLERS
# ---------------------------------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("service_error", error=exc.kind, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error": "validation_error",
            "message": "Invalid request",
            "details": {"errors": errors},
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "error": "internal", "message": "Something went wrong"},
    )


# ---------------------------------------------
# ROUTERS
# ---------------------------------------------

# Payments
app.include_router(payments.router, prefix="/v1/payments", tags=["Payments"])

# Webhooks
app.include_router(webhooks.router, prefix="/v1/webhooks/razorpay", tags=["Razorpay Webhooks"])

# Bookings
app.include_router(bookings.router, prefix="/v1/bookings", tags=["Bookings"])


# ---------------------------------------------
# HEALTH & ROOT
# ---------------------------------------------
@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} backend is running"}
