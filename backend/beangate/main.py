"""
BeanGate Backend: FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() registers middleware, exception handlers and routers;
       lifespan() builds the gateway services and stores them on app.state.
Who:   uvicorn (uvicorn beangate.main:app).

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware Chain:                                  │
    │  ┌──────────┐ ┌─────────┐ ┌──────┐ ┌─────────────┐  │
    │  │  Req ID  │→│ Logging │→│ GZip │→│    CORS     │  │
    │  └──────────┘ └─────────┘ └──────┘ └─────────────┘  │
    │                                                     │
    │  Routes:                                            │
    │  ┌──────────────┐ ┌───────────┐ ┌────────────────┐  │
    │  │ /api/analyze │ │ /api/keys │ │ /api/images    │  │
    │  └──────────────┘ └───────────┘ └────────────────┘  │
    │                   ┌───────────┐                     │
    │                   │  /health  │                     │
    │                   └───────────┘                     │
    │                                                     │
    │  Exception Handlers:                                │
    │  ┌───────────────────────────────────────────────┐  │
    │  │ BeanGateError → its status_code │ else → 500  │  │
    │  └───────────────────────────────────────────────┘  │
    └─────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Configure logging
    2. Validate configuration (logged, not fatal, except the vault secret)
    3. Build vault, provider registry, ledger, credential store, image store
       and orchestrator
    4. Start the usage retention sweep

    Shutdown:
    1. Cancel the sweep
    2. Dispose database engine
"""

import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from beangate import __version__
from beangate.config import settings
from beangate.database import async_session_factory, dispose_engine, engine
from beangate.exceptions import (
    BeanGateError,
    ConfigurationError,
    DatabaseError,
    IntegrityError,
    NotIdentifiedError,
    QuotaExceededError,
    RateLimitedError,
    StorageError,
)
from beangate.middleware.logging import RequestLoggingMiddleware
from beangate.middleware.request_id import RequestIDMiddleware, request_id_var
from beangate.providers.registry import ProviderRegistry
from beangate.routes import analyze, credentials, health, images
from beangate.services.analysis_service import AnalysisOrchestrator
from beangate.services.credential_store import CredentialStore
from beangate.services.credential_vault import CredentialVault
from beangate.services.image_store import FileImageStore
from beangate.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Request ids are written into the message by the access logger and the
    exception handlers.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Provider SDKs log full request lines through httpx at INFO.
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx",
                  "openai", "anthropic", "google_genai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

def build_services(app: FastAPI) -> QuotaLedger:
    """Wire the gateway components onto app.state. Returns the ledger."""
    vault = CredentialVault(settings.api_key_encryption_secret)
    registry = ProviderRegistry(settings)
    ledger = QuotaLedger(async_session_factory, settings)
    credential_store = CredentialStore(async_session_factory, vault, registry)
    image_store = FileImageStore(settings.storage_root, settings.max_file_size)

    app.state.engine = engine
    app.state.registry = registry
    app.state.ledger = ledger
    app.state.credential_store = credential_store
    app.state.image_store = image_store
    app.state.orchestrator = AnalysisOrchestrator(
        settings=settings,
        registry=registry,
        credentials=credential_store,
        ledger=ledger,
        images=image_store,
        session_factory=async_session_factory,
    )
    return ledger


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("BeanGate Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: /health reports the gap and analyze calls fail with
        # configuration_error until the settings are fixed.
        logger.error("%s", e)

    # Without a usable vault secret no stored key can be read or written.
    try:
        ledger = build_services(app)
    except ConfigurationError as e:
        logger.critical("Cannot start: %s", e.message)
        raise

    sweep_task = asyncio.create_task(ledger.run_retention_sweep())

    logger.info(
        "House Blend backend: %s (configured=%s)",
        settings.free_tier_provider.value,
        app.state.registry.house_blend.is_configured(),
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("BeanGate Backend shutting down...")
    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

GENERIC_SERVER_MESSAGE = "An internal error occurred. Please try again later."

# Kinds whose message and context stay server-side.
_OPAQUE_ERRORS = (ConfigurationError, DatabaseError, StorageError)


def error_body(exc: BeanGateError, rid: str, include_details: bool = True) -> dict:
    body = {
        "error": exc.error_code,
        "message": exc.message,
        "request_id": rid,
    }
    if include_details and exc.context:
        body["details"] = exc.context
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

        Validation / Unknown provider      → 400
        Invalid / Missing credential       → 400
        AuthenticationRequired             → 401
        NotFound                           → 404
        Integrity                          → 409
        QuotaExceeded / RateLimited        → 429 (+ Retry-After)
        MalformedResponse                  → 502
        UpstreamFailure                    → 503
        Configuration / Database / Storage → generic 5xx, details logged
        RequestValidationError             → 422 without the submitted values
        Exception                          → 500

    Response bodies never include stack traces, key material, or stored
    ciphertext.
    """

    @app.exception_handler(QuotaExceededError)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceededError):
        rid = request_id_var.get("")
        logger.info("[%s] Free tier exhausted (limit=%d)", rid, exc.limit)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc, rid),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        rid = request_id_var.get("")
        logger.warning("[%s] Provider rate limited: %s", rid, exc.message)
        headers = {}
        if exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc, rid),
            headers=headers,
        )

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        rid = request_id_var.get("")
        logger.error("[%s] Stored credential failed integrity check | Context: %s",
                     rid, exc.context)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc, rid, include_details=False),
        )

    @app.exception_handler(BeanGateError)
    async def handle_beangate_error(request: Request, exc: BeanGateError):
        rid = request_id_var.get("")
        if isinstance(exc, _OPAQUE_ERRORS):
            logger.error("[%s] %s: %s | Context: %s",
                         rid, type(exc).__name__, exc.message, exc.context)
            return JSONResponse(
                status_code=exc.status_code,
                content={
                    "error": exc.error_code,
                    "message": GENERIC_SERVER_MESSAGE,
                    "request_id": rid,
                },
            )

        if exc.status_code >= 500:
            logger.error("[%s] %s: %s", rid, type(exc).__name__, exc.message)
        else:
            logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc, rid))

    @app.exception_handler(NotIdentifiedError)
    async def handle_not_identified(request: Request, exc: NotIdentifiedError):
        # Routes normally turn this into a regular response themselves.
        rid = request_id_var.get("")
        return JSONResponse(
            status_code=200,
            content={
                "analysis": exc.result.model_dump(mode="json", by_alias=True),
                "message": exc.message,
                "metering_degraded": exc.metering_degraded,
                "request_id": rid,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # Submitted values are dropped: on /api/keys they are secrets.
        rid = request_id_var.get("")
        errors = [
            {
                "loc": list(err.get("loc", ())),
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": "Request body or parameters are invalid.",
                "details": {"errors": errors},
                "request_id": rid,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, type(exc).__name__, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="BeanGate API",
        description=(
            "AI bean-analysis gateway: identify coffee bags from a photo using "
            "OpenAI, Claude or Gemini vision models, on a metered free tier or "
            "your own API key."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware executes in reverse order of addition:
    # RequestID → Logging → GZip → CORS.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(analyze.router)
    app.include_router(credentials.router)
    app.include_router(images.router)
    app.include_router(health.router)

    return app


app = create_app()
