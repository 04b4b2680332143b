"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from konfirmpay.api.routes import callbacks_router, health_router, verification_router
from konfirmpay.config import Settings, get_settings
from konfirmpay.database import create_schema, dispose_db, init_db
from konfirmpay.log import configure_logging
from konfirmpay.verification.config import validate_production_config
from konfirmpay.verification.errors import VerificationError
from konfirmpay.verification.events import EventEmitter, log_event
from konfirmpay.verification.fees import FeePolicy
from konfirmpay.verification.gateway import (
    AsyncDarajaGateway,
    AsyncPaymentGateway,
    AsyncStubGateway,
)

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> AsyncPaymentGateway:
    """Gateway selected by the GATEWAY setting."""
    if settings.daraja is not None:
        return AsyncDarajaGateway(settings.daraja)
    return AsyncStubGateway()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings: Settings = app.state.settings
    configure_logging(settings.log_level)
    for issue in validate_production_config(settings.verification, settings.daraja):
        logger.warning(issue)

    engine, _ = init_db()
    if settings.create_schema:
        await create_schema(engine)
    logger.info("KonfirmPay started with %s gateway", app.state.gateway.gateway_name)
    yield
    # Shutdown
    await app.state.gateway.aclose()
    await dispose_db()


def create_app(
    settings: Settings | None = None,
    gateway: AsyncPaymentGateway | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="KonfirmPay API",
        description="Payment verification before merchant disclosure",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.gateway = gateway or build_gateway(settings)
    app.state.fee_policy = FeePolicy(settings.verification.fee_bands)
    if emitter is None:
        emitter = EventEmitter()
        emitter.on_all(log_event)
    app.state.emitter = emitter

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(VerificationError)
    async def verification_exception_handler(
        request: Request, exc: VerificationError
    ) -> JSONResponse:
        """Map domain errors to their HTTP status."""
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed request bodies are INVALID_REQUEST."""
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": detail, "code": "INVALID_REQUEST"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(verification_router)
    app.include_router(callbacks_router)

    return app


# Default app instance for uvicorn
app = create_app()
