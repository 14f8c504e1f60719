from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from promo_engine.api.v1 import api_router
from promo_engine.core.config import settings
from promo_engine.core.errors import EngineError
from promo_engine.core.logging_config import configure_logging
from promo_engine.core.redis_client import close_redis
from promo_engine.core.sentry import init_sentry
from promo_engine.middleware import RequestLoggingMiddleware
from promo_engine.schemas.error import ErrorResponse
from promo_engine.services import events, housekeeping_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    housekeeping_scheduler.start(app)
    try:
        yield
    finally:
        await housekeeping_scheduler.stop(app)
        await events.drain()
        await close_redis()


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "campaigns", "description": "Campaign registry, evaluation and audit"},
        {"name": "coupons", "description": "Coupon pool reservations"},
        {"name": "health", "description": "Liveness and readiness"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        payload = ErrorResponse(detail=exc.detail, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
