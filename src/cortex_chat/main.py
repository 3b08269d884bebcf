"""
Cortex Chat - Streaming chat relay service.

This service sits between a chat client and an OpenAI-compatible completion
API. It relays incremental answers to the client as an event stream while
persisting every finished turn to the conversation store.

Endpoints:
    Chat:
        - POST /api/chat - Blocking turn
        - POST /api/chat/stream - Streaming turn (text/event-stream)
        - POST /api/chat/regenerate - Replace the last assistant answer

    Threads:
        - GET /api/thread - List thread summaries
        - GET /api/thread/{thread_id} - Thread messages
        - PATCH /api/thread/{thread_id} - Rename thread
        - DELETE /api/thread/{thread_id} - Delete thread

    Health:
        - GET /health - Health check
        - GET /health/live - Liveness
        - GET /health/ready - Readiness (conversation store reachable)

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import sys
import time
import uuid
import logging
from contextlib import asynccontextmanager
from typing import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from cortex_chat.config import get_settings
from cortex_chat.db.engine import init_db, close_db
from cortex_chat.routers import chat, threads
from cortex_chat.services.completion_client import CompletionClient
from cortex_chat.services.errors import ChatError, chat_error_response, create_error_response, internal_error
from cortex_chat.services.http_client import close_client
from cortex_chat.services.observability import get_metric_snapshot
from cortex_chat.services.relay import StreamRelay
from cortex_chat.services.thread_store import create_thread_store
from cortex_chat.services.title_generator import TitleGenerator


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging() -> None:
    """
    Configure structured logging with structlog.

    Sets up structlog with JSON output for production and pretty printing
    for development (when LOG_FORMAT=console).

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    settings = get_settings()
    log_level = settings.log_level.upper()

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level, logging.INFO),
    )

    # Shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "console":
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging before creating logger
configure_logging()
logger = structlog.get_logger("cortex-chat")


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup and shutdown events.

    Startup:
        - Builds the conversation store (creating tables for the SQL backend)
        - Wires the completion client, title generator and stream relay

    Shutdown:
        - Waits for in-flight stream commits
        - Closes HTTP client connections
        - Closes database connections

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    settings = get_settings()
    logger.info("cortex_chat.startup", thread_store=settings.thread_store_backend)

    if settings.thread_store_backend == "sql":
        try:
            await init_db()
        except Exception as e:
            logger.error("cortex_chat.database.error", error=str(e))
            raise

    store = create_thread_store(settings)
    completion = CompletionClient(settings)
    title_generator = TitleGenerator(
        completion,
        default_title=settings.default_title,
        model=settings.title_model,
    )
    app.state.thread_store = store
    app.state.relay = StreamRelay(store, completion, title_generator, settings)

    logger.info("cortex_chat.ready")

    yield

    # Shutdown
    logger.info("cortex_chat.shutdown")

    await app.state.relay.drain()
    await close_client()
    await close_db()

    logger.info("cortex_chat.shutdown.complete")


# ============================================================================
# Application Instance
# ============================================================================

app = FastAPI(
    title="Cortex Chat",
    description="Streaming chat relay with persisted conversation threads",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Response-Time"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ChatError)
async def chat_exception_handler(request: Request, exc: ChatError) -> JSONResponse:
    """
    Render relay and store failures with their stable public message.

    The chained cause (if any) is logged, never returned.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "cortex_chat.chat_error",
        path=request.url.path,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        cause=repr(exc.__cause__) if exc.__cause__ else None,
    )
    return chat_error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors with a flat ``{"error": message}`` body.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = first_error.get("loc", [])
        param = ".".join(str(part) for part in loc if part != "body")
        message = first_error.get("msg", "Validation error")
    else:
        param = None
        message = "Request validation failed"

    logger.warning(
        "cortex_chat.validation_error",
        path=request.url.path,
        param=param,
        message=message,
    )
    return create_error_response(message, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """Handle HTTPException (including routing 404/405) with the flat shape."""
    logger.warning(
        "cortex_chat.http_error",
        path=request.url.path,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )
    return create_error_response(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Global exception handler for unhandled errors.

    Logs the full exception and returns a generic message without leaking
    internal details.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    logger.exception(
        "cortex_chat.unhandled_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return internal_error()


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next: Callable):
    """
    Middleware to log all requests with timing information.

    Binds ``request_id``, ``path`` and ``method`` for every log line emitted
    while the request is handled, including the relay's stream worker.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start_time = time.perf_counter()

    # Bind request context for all logs in this request
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    logger.info("cortex_chat.request.start")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "cortex_chat.request.complete",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )

    # For event streams this is time to first byte
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    return response


# ============================================================================
# Routers
# ============================================================================

app.include_router(chat.router, tags=["chat"])
app.include_router(threads.router, tags=["threads"])


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for service monitoring.

    Returns:
        dict: Status information including service name and version

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return {
        "status": "ok",
        "service": "cortex-chat",
        "version": "0.1.0",
    }


@app.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Verifies the conversation store answers (``SELECT 1`` for SQL).

    Returns:
        dict: Readiness status with component health.
        JSONResponse 503 if the store is unreachable.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    store = getattr(request.app.state, "thread_store", None)
    store_ok = store is not None and await store.ping()

    if not store_ok:
        logger.warning("readiness_check.store_unhealthy")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "checks": {"thread_store": "unreachable"},
            },
        )

    return {
        "status": "ready",
        "checks": {
            "thread_store": "ok",
        },
    }


@app.get("/health/live")
async def liveness_check():
    """Liveness check: the process is up and serving."""
    return {"status": "alive"}


@app.get("/internal/metrics")
async def internal_metrics() -> dict:
    """Turn latency and failure counters."""
    return {"metrics": get_metric_snapshot()}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "cortex_chat.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
