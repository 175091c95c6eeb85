from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insiderguard.api.deps import get_runtime, reset_runtime
from insiderguard.api.routes import events, health, notifications, policies, subjects
from insiderguard.config import get_settings
from insiderguard.db.session import dispose_engine, get_session_factory, init_engine
from insiderguard.logging import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings)
    init_engine(settings)
    runtime = get_runtime(settings, get_session_factory())
    runtime.worker.start()
    try:
        yield
    finally:
        await runtime.worker.stop()
        reset_runtime()
        await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="InsiderGuard Policy Engine",
        version="0.1.0",
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.cors_origins],
            allow_methods=["*"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    app.include_router(events.router, prefix=settings.api_prefix, tags=["events"])
    app.include_router(policies.router, prefix=settings.api_prefix, tags=["policies"])
    app.include_router(subjects.router, prefix=settings.api_prefix, tags=["subjects"])
    app.include_router(
        notifications.router, prefix=settings.api_prefix, tags=["notifications"]
    )
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()
