from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.dependencies import get_registry
from recipe_feed_server.core.errors import (
    DimensionMismatchError,
    ExhaustedRetriesError,
    FatalRequestError,
    InvalidCursorError,
    MetricNotFoundError,
)
from recipe_feed_server.core.logging_config import configure_logging
from recipe_feed_server.api import feed as feed_router
from recipe_feed_server.api import metrics as metrics_router
from recipe_feed_server.db.session import init_db

_log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup creates tables; shutdown flushes every open metrics session."""
    configure_logging(settings.log_level)
    for line in settings.diagnostics or []:
        _log.debug("[config] %s", line)
    init_db()
    _log.info("started %s version=%s db=%s", settings.app_name, settings.version, settings.database_url)

    yield

    registry = app.dependency_overrides.get(get_registry, get_registry)()
    await registry.stop_all()
    _log.info("metrics sessions flushed, shutting down")


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    _log.info("validation error url=%s errors=%s", request.url, exc.errors())
    return JSONResponse(status_code=422, content={'detail': exc.errors()})


@app.exception_handler(InvalidCursorError)
async def invalid_cursor_handler(request: Request, exc: InvalidCursorError):
    return JSONResponse(status_code=400, content={'detail': str(exc)})


@app.exception_handler(MetricNotFoundError)
async def metric_not_found_handler(request: Request, exc: MetricNotFoundError):
    return JSONResponse(status_code=404, content={'detail': str(exc)})


@app.exception_handler(DimensionMismatchError)
async def dimension_mismatch_handler(request: Request, exc: DimensionMismatchError):
    _log.error("embedding dimension mismatch url=%s: %s", request.url, exc)
    return JSONResponse(status_code=500, content={'detail': str(exc)})


@app.exception_handler(FatalRequestError)
async def fatal_request_handler(request: Request, exc: FatalRequestError):
    return JSONResponse(status_code=502, content={'detail': str(exc), 'kind': exc.kind.value})


@app.exception_handler(ExhaustedRetriesError)
async def exhausted_retries_handler(request: Request, exc: ExhaustedRetriesError):
    return JSONResponse(status_code=503, content={'detail': str(exc), 'attempts': exc.attempts})


# Routers
app.include_router(metrics_router.router, prefix=settings.api_v1_prefix)
app.include_router(feed_router.router, prefix=settings.api_v1_prefix)

# Basic CORS (development)
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.get('/')
async def root():
    return {'status': 'ok', 'app': settings.app_name, 'version': settings.version}
