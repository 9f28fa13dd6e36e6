"""
FastAPI application for the subledger billing service.

Provides REST API for:
- Token quota status, pre-flight checks and consumption
- Checkout, subscription status and cancellation requests
- Stripe webhooks
- Prometheus metrics

Run with:
    uvicorn subledger.main:app
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from subledger.billing.ledger import InsufficientQuotaError, UnitQuotaExceededError
from subledger.billing.provider import ProviderUnavailableError
from subledger.billing.reconciler import SubscriptionNotFoundError, WebhookProcessingError
from subledger.billing.webhooks import WebhookVerificationError
from subledger.config import Settings, get_settings
from subledger.observability.logging import RequestContext, configure_logging, get_logger
from subledger.observability.metrics import generate_metrics
from subledger.routers import billing_router
from subledger.services import BillingServices, build_services
from subledger.storage.database import SubscriberNotFoundError

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Map billing exceptions to HTTP responses."""

    @app.exception_handler(InsufficientQuotaError)
    async def insufficient_quota_handler(request: Request, exc: InsufficientQuotaError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(UnitQuotaExceededError)
    async def unit_quota_handler(request: Request, exc: UnitQuotaExceededError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SubscriberNotFoundError)
    async def subscriber_not_found_handler(request: Request, exc: SubscriberNotFoundError):
        return JSONResponse(status_code=404, content={"error": "not_found", "message": str(exc)})

    @app.exception_handler(SubscriptionNotFoundError)
    async def subscription_not_found_handler(request: Request, exc: SubscriptionNotFoundError):
        return JSONResponse(status_code=404, content={"error": "not_found", "message": str(exc)})

    @app.exception_handler(ProviderUnavailableError)
    async def provider_error_handler(request: Request, exc: ProviderUnavailableError):
        # Provider status and body pass through unmodified
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc), "details": exc.payload},
        )

    @app.exception_handler(WebhookVerificationError)
    async def webhook_verification_handler(request: Request, exc: WebhookVerificationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(WebhookProcessingError)
    async def webhook_processing_handler(request: Request, exc: WebhookProcessingError):
        return JSONResponse(
            status_code=500,
            content={"error": str(exc), "delivery_id": exc.delivery_id},
        )


def create_app(
    settings: Settings | None = None, services: BillingServices | None = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings (defaults to the process settings)
        services: Prebuilt services (tests); built in the lifespan otherwise
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build services, start background sweeps.
        Shutdown: stop sweeps, close the database.
        """
        logger.info("=== Subledger Service Starting ===")
        owns_services = app.state.services is None
        if owns_services:
            app.state.services = await build_services(settings)

        current: BillingServices = app.state.services
        if settings.sweeps.enabled:
            current.sweeper.start()

        yield

        await current.sweeper.stop()
        if owns_services:
            current.close()
            app.state.services = None
        logger.info("=== Subledger Service Stopped ===")

    app = FastAPI(
        title="Subledger",
        description="Subscription quota ledger and payment provider reconciliation",
        version=settings.logging.service_version,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        with RequestContext(request_id=request.headers.get("X-Request-ID")) as ctx:
            response = await call_next(request)
            response.headers["X-Request-ID"] = ctx.request_id
            return response

    register_exception_handlers(app)
    app.include_router(billing_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict:
        return {"status": "ok", "provider_configured": settings.billing.is_configured}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        body, content_type = generate_metrics()
        return Response(content=body, media_type=content_type)

    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
        service_name=settings.logging.service_name,
        service_version=settings.logging.service_version,
        environment=settings.logging.environment,
    )
    return create_app(settings)


app = _build_default_app()
