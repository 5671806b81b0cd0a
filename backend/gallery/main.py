import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gallery.api.v1 import api_router
from gallery.api.v1.images import media_error_status
from gallery.core.config import settings
from gallery.core.logging_config import configure_logging
from gallery.core.redis_client import close_redis, get_redis
from gallery.core.sentry import init_sentry
from gallery.db.session import SessionLocal, engine
from gallery.middleware import RequestLoggingMiddleware
from gallery.schemas.error import ErrorResponse
from gallery.services.media_errors import MediaPipelineError
from gallery.services.media_pipeline import build_media_pipeline, reconcile_unfinished

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    pipeline = build_media_pipeline(session_factory=SessionLocal, redis=get_redis(), config=settings)
    app.state.media_pipeline = pipeline
    if settings.media_reconcile_on_startup:
        try:
            await reconcile_unfinished(pipeline, leader_engine=engine)
        except Exception:
            logger.exception("derivative_reconcile_failed")
    try:
        yield
    finally:
        try:
            await asyncio.wait_for(pipeline.queue.wait_idle(), timeout=max(0.0, settings.media_shutdown_drain_seconds))
        except TimeoutError:
            status = pipeline.queue.get_status()
            logger.warning(
                "derivative_queue_drain_timeout",
                extra={"queue_length": status.queue_length, "running_count": status.running_count},
            )
        await close_redis()


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(MediaPipelineError)
    async def media_exception_handler(request: Request, exc: MediaPipelineError):
        status_code = media_error_status(exc)
        if status_code >= 500:
            logger.error("media_request_failed", exc_info=exc, extra={"path": request.url.path, "code": exc.code})
        payload = ErrorResponse(detail=str(exc), code=exc.code, request_id=_request_id(request))
        return JSONResponse(status_code=status_code, content=payload.model_dump())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None, request_id=_request_id(request))
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error", request_id=_request_id(request))
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
