"""
faultline process entry point.

Connects to the relational registry and the analytics store, then runs the
alert worker until SIGINT/SIGTERM. Run with `python -m faultline.main`.
"""
import asyncio
import logging
import signal

from faultline.config import get_settings
from faultline.utils.logging import configure_structured_logging

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


def init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


async def wait_for_stop(worker_task: asyncio.Task, stop_event: asyncio.Event) -> None:
    """Return once the worker exits or stop_event is set. A worker crash is re-raised."""
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        done, _ = await asyncio.wait([worker_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        await asyncio.gather(stop_task, return_exceptions=True)

    if worker_task in done:
        # Worker exited on its own, surface its error if any
        worker_task.result()


async def run() -> None:
    """Start up, run the alert worker, shut down cleanly on a signal."""
    from opentelemetry import trace

    from faultline.database import (
        analytics_engine,
        analytics_session_factory,
        connect_with_retry,
        dispose_engines,
        registry_engine,
        registry_session_factory,
    )
    from faultline.workers.alert_worker import build_alert_worker

    settings = get_settings()
    logger.info("faultline starting up (env=%s)", settings.app_env)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - webhook secrets cannot be stored or used for signing."
        )

    init_sentry(settings)

    try:
        await connect_with_retry(registry_engine(), settings.connect_timeout_seconds, "registry")
        await connect_with_retry(analytics_engine(), settings.connect_timeout_seconds, "analytics")

        worker = build_alert_worker(
            registry_session_factory(),
            analytics_session_factory(),
            settings,
            tracer=trace.get_tracer("faultline"),
        )
        worker_task = asyncio.create_task(worker.run())

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await wait_for_stop(worker_task, stop_event)

        logger.info("faultline shutting down - stopping alert worker...")
        worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Alert worker did not stop within %.0fs, cancelled", SHUTDOWN_GRACE_SECONDS)
    finally:
        await dispose_engines()

    logger.info("faultline shutdown complete")


def main() -> None:
    settings = get_settings()
    configure_structured_logging(settings.log_level)
    asyncio.run(run())


if __name__ == "__main__":
    main()
