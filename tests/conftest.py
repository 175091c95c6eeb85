"""Root test configuration."""

import logging
from datetime import datetime, timedelta

import pytest
import structlog
from insiderguard.config import Settings
from insiderguard.db.models import Base
from insiderguard.queue import DeferredActionQueue
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


T0 = datetime(2026, 3, 2, 10, 0, 0)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingMailer:
    """MailService double that records messages and can fail on demand."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures: list[Exception] = []

    async def send(self, recipients: list[str], subject: str, body: str) -> str:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({"recipients": recipients, "subject": subject, "body": body})
        return f"msg-{len(self.sent)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'insiderguard.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'insiderguard.db'}",
        delivery_max_retries=3,
        delivery_backoff_multiplier=0,
        delivery_backoff_max=0,
        management_recipients=["ciso@example.com"],
    )


@pytest.fixture
def runtime(settings, session_factory, mailer, clock):
    from insiderguard.runtime import build_runtime

    return build_runtime(
        settings,
        session_factory,
        mail=mailer,
        queue=DeferredActionQueue(),
        clock=clock,
    )
