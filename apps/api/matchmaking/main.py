import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from matchmaking.api.routes import router as api_router
from matchmaking.context import get_correlation_id
from matchmaking.core.config import get_settings
from matchmaking.core.database import Base, engine
from matchmaking.logging import configure_logging
from matchmaking.middleware.correlation_id import CorrelationIdMiddleware
from matchmaking.middleware.request_logging import RequestLoggingMiddleware
from matchmaking.otel import get_fastapi_server_request_hook, setup_otel
from matchmaking.platform.security.errors import SecurityError, ValidationFailedError


configure_logging()
logger = logging.getLogger("matchmaking.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.storage_backend == "sql":
        Base.metadata.create_all(bind=engine)
    logger.info("app.started")
    yield


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    content = {
        "error": exc.code,
        "detail": exc.message,
        "correlation_id": getattr(request.state, "correlation_id", None) or get_correlation_id(),
    }
    if isinstance(exc, ValidationFailedError) and exc.errors:
        content["errors"] = exc.errors
    if exc.status_code >= 500:
        logger.error("app.internal_error", extra={"error": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=content)


app = FastAPI(title="Matchmaking API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(SecurityError, security_error_handler)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("matchmaking-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
