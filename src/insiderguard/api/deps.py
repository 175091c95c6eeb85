from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insiderguard.config import Settings, get_settings
from insiderguard.db.session import get_session_factory
from insiderguard.runtime import Runtime, build_runtime


def session_factory_dependency() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


async def session_dependency(
    factory: async_sessionmaker[AsyncSession] = Depends(session_factory_dependency),  # noqa: B008
) -> AsyncIterator[AsyncSession]:
    async with factory() as session:
        yield session


_runtime: Runtime | None = None


def get_runtime(
    settings: Settings = Depends(get_settings),  # noqa: B008
    factory: async_sessionmaker[AsyncSession] = Depends(session_factory_dependency),  # noqa: B008
) -> Runtime:
    global _runtime

    if _runtime is None:
        _runtime = build_runtime(settings, factory)
    return _runtime


def reset_runtime() -> None:
    global _runtime
    _runtime = None
