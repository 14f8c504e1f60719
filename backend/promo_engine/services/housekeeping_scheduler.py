from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import datetime

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promo_engine.core.clock import utcnow
from promo_engine.core.config import settings
from promo_engine.db.session import SessionLocal
from promo_engine.services import audit_trail, coupon_pool, leader_lock, registry

logger = logging.getLogger(__name__)

Step = Callable[[AsyncSession, datetime], Awaitable[int]]


async def _activate(session: AsyncSession, now: datetime) -> int:
    return await registry.activate_due(session, now=now)


async def _expire(session: AsyncSession, now: datetime) -> int:
    return await registry.expire_due(session, now=now)


async def _reclaim(session: AsyncSession, now: datetime) -> int:
    return await coupon_pool.reclaim_expired_reservations(session, now=now)


async def _prune(session: AsyncSession, now: datetime) -> int:
    return await audit_trail.prune(session, now=now)


STEPS: tuple[tuple[str, Step], ...] = (
    ("campaigns_activated", _activate),
    ("campaigns_expired", _expire),
    ("reservations_reclaimed", _reclaim),
    ("audit_pruned", _prune),
)


async def run_once(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """One sweep. Every step gets its own session; a failing step is logged and skipped."""
    factory = session_factory or SessionLocal
    now = now or utcnow()
    report: dict[str, int] = {}
    for label, step in STEPS:
        try:
            async with factory() as session:
                report[label] = int(await step(session, now))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("housekeeping_step_failed", extra={"step": label, "error": str(exc)})
            report[label] = -1
    return report


async def _loop(stop: asyncio.Event) -> None:
    interval = max(5, int(settings.housekeeping_interval_seconds or 300))
    while not stop.is_set():
        try:
            report = await run_once()
            if any(value > 0 for value in report.values()):
                logger.info("housekeeping_sweep", extra=report)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("housekeeping_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not settings.housekeeping_enabled:
        return
    if getattr(app.state, "housekeeping_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(leader_lock.run_as_leader(name="campaign_housekeeping", stop=stop_event, work=_loop))
    app.state.housekeeping_stop = stop_event
    app.state.housekeeping_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "housekeeping_stop", None)
    task = getattr(app.state, "housekeeping_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    for attr in ("housekeeping_stop", "housekeeping_task"):
        if getattr(app.state, attr, None) is not None:
            delattr(app.state, attr)
    await leader_lock.dispose_leader_engine()
