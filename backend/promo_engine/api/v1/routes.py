import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.api.v1 import campaigns, coupons
from promo_engine.core.redis_client import get_redis
from promo_engine.db.session import get_session

logger = logging.getLogger(__name__)

api_router = APIRouter()

api_router.include_router(campaigns.router)
api_router.include_router(coupons.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(response: Response, session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    checks: dict[str, str] = {}
    try:
        await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_failed", extra={"error": str(exc)})
        checks["database"] = "error"
    client = get_redis()
    if client is None:
        checks["cache"] = "disabled"
    else:
        try:
            await client.ping()
            checks["cache"] = "ok"
        except Exception as exc:
            logger.warning("readiness_cache_failed", extra={"error": str(exc)})
            checks["cache"] = "error"
    if checks["database"] != "ok":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unavailable", **checks}
    return {"status": "ready", **checks}
