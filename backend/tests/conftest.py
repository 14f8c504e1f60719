import asyncio
import os
from collections.abc import Awaitable, Callable, Generator

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio

os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]

from promo_engine.db.session import build_engine, build_sessionmaker  # noqa: E402
from promo_engine.models import Base  # noqa: E402
from promo_engine.services.evaluation import admission_gate  # noqa: E402
from promo_engine.services.registry import registry  # noqa: E402


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # The registry snapshot and the admission gate are process-global and would leak across tests.
    registry.reset()
    admission_gate.reset()
    yield
    registry.reset()
    admission_gate.reset()


@pytest.fixture
def open_store(tmp_path) -> Callable[..., Awaitable[sa_asyncio.async_sessionmaker]]:
    """Create a schema-initialised store; file-backed when connections must not share state."""

    async def _open(*, file_backed: bool = False) -> sa_asyncio.async_sessionmaker:
        url = f"sqlite+aiosqlite:///{tmp_path / 'promo.db'}" if file_backed else "sqlite+aiosqlite:///:memory:"
        engine = build_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return build_sessionmaker(engine)

    return _open
