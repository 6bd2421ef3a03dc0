"""
Async SQLAlchemy engines and session management for both stores.

The relational registry (issues, alerts, channels, locks) and the analytics
event store are separate databases with separate metadata. They never share
a session or a transaction.
CRITICAL: expire_on_commit=False prevents lazy-loading issues in async contexts.
"""
import asyncio
import logging
import time
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from faultline.errors import ConnectionFailedError, is_retryable_error

logger = logging.getLogger(__name__)

CONNECT_RETRY_INTERVAL_SECONDS = 1.0

_engine = None
_async_session_factory = None
_analytics_engine = None
_analytics_session_factory = None


class Base(DeclarativeBase):
    pass


class AnalyticsBase(DeclarativeBase):
    pass


def _engine_kwargs(url: str, settings) -> dict:
    kwargs = {"echo": settings.app_env == "development" and settings.log_level.upper() == "DEBUG"}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
        kwargs["pool_pre_ping"] = True
    return kwargs


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from faultline.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            **_engine_kwargs(settings.database_url, settings),
        )
    return _engine


def _get_analytics_engine() -> AsyncEngine:
    global _analytics_engine
    if _analytics_engine is None:
        from faultline.config import get_settings
        settings = get_settings()
        url = settings.resolved_analytics_database_url
        _analytics_engine = create_async_engine(url, **_engine_kwargs(url, settings))
    return _analytics_engine


def _get_session_factory():
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            _get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _async_session_factory


def _get_analytics_session_factory():
    global _analytics_session_factory
    if _analytics_session_factory is None:
        _analytics_session_factory = async_sessionmaker(
            _get_analytics_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _analytics_session_factory


def registry_engine() -> AsyncEngine:
    return _get_engine()


def analytics_engine() -> AsyncEngine:
    return _get_analytics_engine()


def registry_session_factory() -> async_sessionmaker:
    """Session factory for the relational registry."""
    return _get_session_factory()


def analytics_session_factory() -> async_sessionmaker:
    """Session factory for the analytics event store."""
    return _get_analytics_session_factory()


def async_session_factory() -> AsyncSession:
    """Open a registry session for use in background workers."""
    return _get_session_factory()()


async def connect_with_retry(
    engine: AsyncEngine,
    timeout_seconds: float,
    name: str = "database",
    interval_seconds: float = CONNECT_RETRY_INTERVAL_SECONDS,
) -> None:
    """
    Ping the engine until it answers or the timeout elapses.
    Only transient failures (refused, reset, timeouts) are retried.
    Bad credentials, unknown databases and missing privileges raise at once.
    """
    deadline = time.monotonic() + timeout_seconds
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            if attempt > 1:
                logger.info("Connected to %s after %d attempts", name, attempt)
            return
        except Exception as e:
            if not is_retryable_error(e):
                logger.error("Permanent %s connection error: %s", name, str(e))
                raise
            if time.monotonic() + interval_seconds > deadline:
                raise ConnectionFailedError(
                    f"could not connect to {name} within {timeout_seconds}s: {e}"
                ) from e
            logger.warning(
                "Connecting to %s failed (attempt %d), retrying: %s", name, attempt, str(e),
            )
            await asyncio.sleep(interval_seconds)


async def dispose_engines() -> None:
    global _engine, _async_session_factory, _analytics_engine, _analytics_session_factory
    if _engine is not None:
        await _engine.dispose()
    if _analytics_engine is not None:
        await _analytics_engine.dispose()
    _engine = None
    _async_session_factory = None
    _analytics_engine = None
    _analytics_session_factory = None
