from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from refreshguard.api.error_handling import register_exception_handlers
from refreshguard.api.routes import router
from refreshguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Resolve the signing secret and store at startup; a bad secret aborts boot."""
    from refreshguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "startup_complete",
        environment=runtime.settings.environment.value,
        key_fingerprint=runtime.key.fingerprint,
    )

    yield

    try:
        runtime = get_runtime()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="refreshguard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add a correlation ID to each request for tracing.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated; echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_no_store_header(request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/token/"):
        response.headers["Cache-Control"] = "no-store"
    return response


register_exception_handlers(app)
app.include_router(router)
