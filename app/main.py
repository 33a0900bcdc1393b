from contextlib import asynccontextmanager
from typing import Any, cast

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api import analytics
from app.core.config import settings
from app.core.db_utils import check_db_connection
from app.core.errors import AnalyticsError, capture_exception, init_sentry
from app.core.logging_config import configure_logging
from app.core.scheduler import start_scheduler
from app.db import create_db_and_tables, engine
from app.middleware.context import RequestContextMiddleware
from app.services.runtime import build_runtime

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Studio Analytics API starting", environment=settings.ENVIRONMENT)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    runtime = build_runtime(engine)
    runtime.start()
    app.state.runtime = runtime

    scheduler = None
    if settings.RUN_SCHEDULER:
        scheduler = start_scheduler(runtime)
    else:
        logger.info("RUN_SCHEDULER is false, skipping scheduler startup in this process")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        # Final flush of the real-time window
        runtime.shutdown()
        app.state.runtime = None


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_PREFIX}/openapi.json", lifespan=lifespan)

origins = [
    "http://localhost:5173",  # Vite default
    "http://localhost:3000",  # React default
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
    settings.FRONTEND_URL,
]
origins = list(set([o for o in origins if o]))

# GZip compression for responses > 1KB
app.add_middleware(cast(Any, GZipMiddleware), minimum_size=1000)
app.add_middleware(cast(Any, RequestContextMiddleware))
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(analytics.router, prefix=f"{settings.API_PREFIX}/analytics", tags=["analytics"])


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "message": message})


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    if exc.status_code >= 500:
        capture_exception(exc, context={"path": request.url.path, **exc.details})
    else:
        logger.info("Request rejected", error=exc.error_code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())[1:])
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return _error(400, "validation_error", "; ".join(problems) or "Invalid request")


_HTTP_ERRORS = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, _HTTP_ERRORS.get(exc.status_code, "http_error"), str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    capture_exception(exc, context={"path": request.url.path})
    return _error(500, "internal_error", "An unexpected error occurred")


@app.get("/")
def root():
    return {"message": "Welcome to Studio Analytics API"}


@app.get("/health")
def health(request: Request):
    """Health check with database connectivity and aggregator state."""
    database_ok = check_db_connection(engine)
    runtime = getattr(request.app.state, "runtime", None)
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "aggregator": runtime.aggregator.state.value if runtime is not None else None,
    }
