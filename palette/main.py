import logging
import time
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from prometheus_client import REGISTRY, generate_latest

from palette.config import Config
from palette.config.logging_config import configure_logging
from palette.services.admission import RateLimitExceededError
from palette.services.credit_ledger import (
    CreditContentionError,
    InsufficientCreditsError,
    UserNotFoundError,
)
from palette.services.prometheus_metrics import record_http_response
from palette.services.signup_counter import SignupCounterContentionError
from palette.utils.exceptions import APIExceptions

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """Skip monitoring endpoints, sample everything else at the configured rate."""
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")
        if endpoint in ["/health", "/metrics"]:
            return 0.0
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.APP_ENV,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(f"Sentry initialized (environment: {Config.APP_ENV})")
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Palette API",
        description="Quota, billing and scheduling backend for the Palette visual generator",
        version="1.0.0",
    )

    # ==================== Middleware ====================

    def _route_label(request: Request) -> str:
        # Matched route template, so unknown paths cannot add label series
        route = request.scope.get("route")
        return getattr(route, "path", None) or "unmatched"

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        """Request count and latency per matched route."""
        method = request.method
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            record_http_response(method, _route_label(request), 500, time.time() - start_time)
            raise

        record_http_response(
            method, _route_label(request), response.status_code, time.time() - start_time
        )
        return response

    # ==================== Routers ====================

    from palette.routes.admission import router as admission_router
    from palette.routes.batch import router as batch_router
    from palette.routes.generate import router as generate_router
    from palette.routes.notifications import router as notifications_router
    from palette.routes.payments import router as payments_router
    from palette.routes.teams import router as teams_router
    from palette.routes.user import router as user_router

    for router in (
        payments_router,
        admission_router,
        user_router,
        generate_router,
        batch_router,
        notifications_router,
        teams_router,
    ):
        app.include_router(router)

    # ==================== Monitoring ====================

    @app.get("/health", tags=["monitoring"])
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

    # ==================== Exception Handlers ====================

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exception_handler(request: Request, exc: RateLimitExceededError):
        return await http_exception_handler(
            request,
            APIExceptions.rate_limited(retry_after=exc.result.retry_after, reason=f"{exc.scope} scope"),
        )

    @app.exception_handler(InsufficientCreditsError)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError):
        return await http_exception_handler(
            request, APIExceptions.payment_required(credits=exc.balance)
        )

    @app.exception_handler(UserNotFoundError)
    async def user_not_found_handler(request: Request, exc: UserNotFoundError):
        return await http_exception_handler(request, APIExceptions.not_found("User"))

    @app.exception_handler(CreditContentionError)
    @app.exception_handler(SignupCounterContentionError)
    async def contention_handler(request: Request, exc: Exception):
        logger.error(f"Contention exhausted on {request.url.path}: {exc}")
        return await http_exception_handler(
            request, APIExceptions.service_unavailable("Credit ledger", retry_after=1)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
            import sentry_sdk

            sentry_sdk.capture_exception(exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    logger.info("Palette API ready")
    return app


app = create_app()
