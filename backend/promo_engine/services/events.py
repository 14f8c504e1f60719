from __future__ import annotations

import asyncio
import logging
from typing import Any

from promo_engine.core.clock import utcnow
from promo_engine.core.config import settings
from promo_engine.core.redis_client import get_redis, json_dumps

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


async def _send(event: str, payload: dict[str, Any]) -> None:
    client = get_redis()
    if client is None:
        return
    message = json_dumps({"event": event, "at": utcnow().isoformat(), **payload})
    timeout = max(0.05, float(settings.event_publish_timeout_seconds))
    try:
        await asyncio.wait_for(client.publish(settings.event_channel, message), timeout=timeout)
    except Exception as exc:
        logger.warning("event_publish_failed", extra={"event": event, "error": str(exc)})


def publish(event: str, payload: dict[str, Any]) -> None:
    """Schedule a best-effort publish; never blocks or fails the caller."""
    logger.info(event, extra=payload)
    if get_redis() is None:
        return
    try:
        task = asyncio.get_running_loop().create_task(_send(event, payload))
    except RuntimeError:
        return
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain(timeout: float = 2.0) -> None:
    if not _pending:
        return
    await asyncio.wait(list(_pending), timeout=timeout)
