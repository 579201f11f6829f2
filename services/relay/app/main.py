from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.cors import CORSMiddleware

from .api.v1.routers.audit import router as audit_router
from .api.v1.routers.commands import router as commands_router
from .api.v1.routers.events import router as events_router
from .api.v1.routers.health import router as health_router
from .api.v1.routers.ingest import router as ingest_router
from .api.v1.routers.operations import router as operations_router
from .api.v1.routers.webhooks import router as webhooks_router
from .context import build_context
from .core.config import get_settings, validate_settings
from .core.errors import RelayError
from .core.logging import configure_structlog, get_logger
from .core.observability import add_prometheus
from .middleware.logging import RequestLoggingMiddleware


def create_app() -> FastAPI:
    settings = get_settings()
    # Reliability: validate env/settings early
    try:
        validate_settings(settings)
    except Exception as exc:  # noqa: BLE001
        # Fail-fast with a clear error
        raise RuntimeError(f"Invalid configuration: {exc}")

    configure_structlog(settings.log_level)
    logger = get_logger(__name__)

    app = FastAPI(title=settings.app_name, version=settings.app_version)

    # Rate limiting setup
    if settings.rate_limit_enabled:
        limiter = Limiter(
            key_func=get_remote_address,
            default_limits=[f"{settings.rate_limit_per_min}/minute"],
        )
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
        app.add_middleware(SlowAPIMiddleware)
        logger.info("rate_limiting.enabled", limit_per_min=settings.rate_limit_per_min)
    else:
        logger.info("rate_limiting.disabled")

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request.relay_error",
            path=request.url.path,
            status_code=exc.status_code,
            code=exc.code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed bodies and query parameters are client errors: 400."""
        logger.warning(
            "request.validation_error",
            path=request.url.path,
            errors=jsonable_encoder(exc.errors()),
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": "invalid_request",
                "message": "Validation error",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(
        request: Request, exc: SQLAlchemyError
    ) -> JSONResponse:
        """Handle database errors gracefully."""
        logger.error(
            "request.database_error",
            path=request.url.path,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "database_error", "message": "Database error occurred"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "request.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "internal_error", "message": "Internal server error"},
        )

    # Middleware (order matters - later middleware wraps earlier ones)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age,
    )
    logger.info(
        "cors.configured",
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
    )

    add_prometheus(app, app_name="relay")

    @app.on_event("startup")
    async def on_startup() -> None:
        # Tests install a prepared context before the app starts
        if getattr(app.state, "relay", None) is None:
            logger.info("startup.build_context", service_mode=settings.service_mode)
            app.state.relay = build_context(settings)
        await app.state.relay.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        context = getattr(app.state, "relay", None)
        if context is not None:
            await context.stop()

    app.include_router(health_router)
    app.include_router(commands_router)
    app.include_router(operations_router)
    app.include_router(events_router)
    app.include_router(webhooks_router)
    app.include_router(audit_router)
    app.include_router(ingest_router)

    @app.get("/")
    def root() -> dict:
        return {"service": "relay", "status": "ok"}

    return app


app = create_app()
