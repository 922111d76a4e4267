import logging

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from backend.core.conf import settings
from backend.core.middleware import (
    billing_exception_handler,
    exception_logging_middleware,
    validation_exception_handler,
)
from backend.src.billing.endpoints import billing_router
from backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)

health_router = APIRouter()


@health_router.get('/health')
async def health_check():
    return {'status': 'ok'}


def register_logger() -> None:
    """Configure stdlib logging once, from LOG_STD_LEVEL and LOG_FORMAT."""
    logging.basicConfig(level=settings.LOG_STD_LEVEL, format=settings.LOG_FORMAT)
    # uvicorn access logs duplicate the request log lines
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)


@asynccontextmanager
async def register_init(app: FastAPI):
    """Create tables in dev, start the subscription monitor and close the Razorpay client on shutdown."""
    from backend.src.billing.external.razorpay import razorpay_api
    from backend.src.cron.subscription_monitor import shutdown_scheduler, start_scheduler

    if settings.ENVIRONMENT == 'dev':
        from backend.database.db import create_tables

        await create_tables()
    if settings.MONITOR_ENABLED:
        start_scheduler()
    if not settings.razorpay_configured:
        logger.warning('[RAZORPAY] Credentials not configured, provider calls will fail')

    yield

    if settings.MONITOR_ENABLED:
        shutdown_scheduler()
    await razorpay_api.client.aclose()


def register_middleware(app: FastAPI) -> None:
    app.middleware('http')(exception_logging_middleware)

    if settings.MIDDLEWARE_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=['*'],
            allow_headers=['*'],
            expose_headers=settings.CORS_EXPOSE_HEADERS,
        )


def register_exception(app: FastAPI) -> None:
    app.exception_handler(BillingError)(billing_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)


def register_router(app: FastAPI) -> None:
    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)  # /api/v1/*
    app.include_router(health_router)


def register_app(lifespan=register_init) -> FastAPI:
    """Create and configure the FastAPI application."""
    register_logger()

    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=lifespan,
    )

    register_middleware(app)
    register_exception(app)
    register_router(app)

    return app
