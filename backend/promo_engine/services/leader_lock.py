from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from promo_engine.core.config import settings
from promo_engine.db.session import build_engine, engine

logger = logging.getLogger(__name__)

_RETRY_SECONDS = 15
_LEADER_ENGINE: AsyncEngine | None = None


def _is_postgres() -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def _lock_id(name: str) -> int:
    digest = hashlib.blake2b(str(name or "").encode("utf-8"), digest_size=8).digest()
    # Fit within signed BIGINT range.
    return int(int.from_bytes(digest, "big", signed=False) % (2**63 - 1))


def _leader_engine() -> AsyncEngine:
    """Small dedicated pool: advisory locks are session-scoped and pin one connection."""
    global _LEADER_ENGINE
    if _LEADER_ENGINE is None:
        _LEADER_ENGINE = build_engine(settings.database_url, pool_size=1, max_overflow=0, pool_pre_ping=True)
    return _LEADER_ENGINE


async def run_as_leader(
    *,
    name: str,
    stop: asyncio.Event,
    work: Callable[[asyncio.Event], Awaitable[None]],
    retry_seconds: int = _RETRY_SECONDS,
) -> None:
    """Run ``work`` only on the instance holding the Postgres advisory lock for ``name``.

    Other backends have no advisory locks; the work runs directly there.
    """
    if not _is_postgres():
        await work(stop)
        return

    lock_id = _lock_id(name)
    retry = max(5, int(retry_seconds or _RETRY_SECONDS))

    while not stop.is_set():
        try:
            async with _leader_engine().connect() as conn:
                acquired = bool(
                    (await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id})).scalar()
                )
                if not acquired:
                    with suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(stop.wait(), timeout=retry)
                    continue

                logger.info("leader_lock_acquired", extra={"lock_name": name, "lock_id": lock_id})
                try:
                    await work(stop)
                finally:
                    with suppress(Exception):
                        await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})
                return
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "lock_id": lock_id, "error": str(exc)})
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=retry)


async def dispose_leader_engine() -> None:
    global _LEADER_ENGINE
    leader, _LEADER_ENGINE = _LEADER_ENGINE, None
    if leader is not None:
        await leader.dispose()
