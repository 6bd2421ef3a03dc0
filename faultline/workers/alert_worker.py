"""
Alert worker - evaluates alert rules against recent event metrics.

Runs once on start and then every ALERT_WORKER_INTERVAL_SECONDS. Each tick:
purge expired locks, list alerts, then evaluate each active/triggered alert
in turn. Evaluation of one alert is guarded by a lease in the alert lock
ledger, so any number of worker instances can run side by side.

State machine per alert: active -> triggered when any in-scope issue's
metric is strictly above the threshold; triggered -> active once none is.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from faultline.models.alert import Alert, AlertCondition, AlertLock, AlertStatus
from faultline.models.notification import AlertNotification, NotificationStatus, NotificationType
from faultline.schemas.analytics import IssueMetrics, IssueMetricsCriteria
from faultline.utils.logging import correlation_scope
from faultline.utils.timezone import utcnow

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
LOCK_DURATION = timedelta(minutes=5)
ALERT_BATCH_LIMIT = 1000


def metric_value(alert: Alert, metrics: IssueMetrics) -> int:
    """The metric an alert's condition looks at. Unknown conditions count occurrences."""
    if alert.condition == AlertCondition.USERS:
        return metrics.user_count
    return metrics.times_seen


class AlertWorker:
    def __init__(
        self,
        alert_store,
        analytics_store,
        issue_store,
        notification_store,
        notifier,
        instance_id: str,
        interval_seconds: float = POLL_INTERVAL_SECONDS,
        lock_duration: timedelta = LOCK_DURATION,
        now: Callable[[], datetime] = utcnow,
    ):
        self.alert_store = alert_store
        self.analytics_store = analytics_store
        self.issue_store = issue_store
        self.notification_store = notification_store
        self.notifier = notifier
        self.instance_id = instance_id
        self.interval_seconds = interval_seconds
        self.lock_duration = lock_duration
        self._now = now
        self._stop = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Evaluate now, then once per interval until stop() or cancellation."""
        if self._running:
            return
        self._running = True
        self._stop.clear()
        logger.info("Alert worker started", extra={"instance_id": self.instance_id})

        try:
            while not self._stop.is_set():
                with correlation_scope():
                    try:
                        await self.process_alerts()
                    except Exception as e:
                        logger.error("Alert worker tick failed: %s", str(e), exc_info=True)

                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Alert worker cancelled", extra={"instance_id": self.instance_id})
            raise
        finally:
            self._running = False

        logger.info("Alert worker stopped", extra={"instance_id": self.instance_id})

    def stop(self) -> None:
        """Skip all further ticks. A tick in progress runs to completion."""
        self._stop.set()

    async def process_alerts(self) -> None:
        try:
            await self.notification_store.cleanup_expired_locks(self._now())
        except Exception as e:
            logger.error("Process alerts: failed to clean up expired locks: %s", str(e))
            return

        try:
            alerts, _ = await self.alert_store.list_alerts([], "", 0, ALERT_BATCH_LIMIT)
        except Exception as e:
            logger.error("Process alerts: failed to list alerts: %s", str(e))
            return

        for alert in alerts:
            if alert.status not in AlertStatus.EVALUATED:
                continue
            try:
                await self.check_alert(alert)
            except Exception as e:
                logger.error(
                    "Failed to check alert %d (%s): %s", alert.id, alert.rule_name, str(e),
                    exc_info=True, extra={"alert_id": alert.id},
                )

    async def check_alert(self, alert: Alert) -> None:
        """Evaluate one alert under its lease. Contention is a silent skip."""
        now = self._now()
        lock = AlertLock(
            alert_id=alert.id,
            instance_id=self.instance_id,
            locked_at=now,
            expires_at=now + self.lock_duration,
        )

        if not await self.notification_store.acquire_alert_lock(lock):
            logger.debug(
                "Alert %d is locked by another instance, skipping", alert.id,
                extra={"alert_id": alert.id},
            )
            return

        try:
            await self._evaluate(alert, now)
        finally:
            try:
                await self.notification_store.release_alert_lock(alert.id, self.instance_id)
            except Exception as e:
                logger.error(
                    "Failed to release lock for alert %d: %s", alert.id, str(e),
                    extra={"alert_id": alert.id},
                )

    async def _evaluate(self, alert: Alert, now: datetime) -> None:
        start = now - alert.window

        issues = await self.issue_store.list_issues([alert.project_id], start, now)
        if not issues:
            if alert.status == AlertStatus.TRIGGERED:
                await self.resolve_alert(alert, now)
            return

        metrics = await self.analytics_store.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[alert.project_id],
            group_ids=[issue.id for issue in issues],
            start=start,
            end=now,
        ))

        breached = any(metric_value(alert, m) > alert.threshold for m in metrics)

        if breached and alert.status == AlertStatus.ACTIVE:
            await self.trigger_alert(alert, now)
        elif not breached and alert.status == AlertStatus.TRIGGERED:
            await self.resolve_alert(alert, now)

    async def trigger_alert(self, alert: Alert, now: datetime) -> None:
        alert.status = AlertStatus.TRIGGERED
        alert.updated_at = now
        alert.last_triggered_at = now
        await self.alert_store.update_alert(alert)

        logger.info("Alert %d triggered", alert.id, extra={"alert_id": alert.id})
        await self.send_notifications(alert, NotificationType.TRIGGERED)

    async def resolve_alert(self, alert: Alert, now: datetime) -> None:
        alert.status = AlertStatus.ACTIVE
        alert.updated_at = now
        alert.resolved_at = now
        await self.alert_store.update_alert(alert)

        logger.info("Alert %d resolved", alert.id, extra={"alert_id": alert.id})
        await self.send_notifications(alert, NotificationType.RESOLVED)

    async def send_notifications(self, alert: Alert, notification_type: str) -> None:
        """Record and deliver one notification per enabled channel of the alert's team."""
        channels = await self.notification_store.list_notification_channels(alert.team_id)

        for channel in channels:
            if not channel.enabled:
                continue

            notification = AlertNotification(
                alert_id=alert.id,
                channel_id=channel.id,
                notification_type=notification_type,
                status=NotificationStatus.PENDING,
                created_at=self._now(),
            )
            try:
                notification = await self.notification_store.create_alert_notification(notification)
            except Exception as e:
                logger.error(
                    "Failed to create notification record: %s", str(e),
                    extra={"alert_id": alert.id, "channel_id": channel.id},
                )
                continue

            try:
                await self.notifier.send(alert, channel, notification_type)
            except Exception as e:
                logger.error(
                    "Failed to send %s notification via %s channel: %s",
                    notification_type, channel.channel_type, str(e),
                    extra={"alert_id": alert.id, "channel_id": channel.id},
                )
                notification.status = NotificationStatus.FAILED
                notification.error_message = str(e)
            else:
                notification.status = NotificationStatus.SENT
                notification.sent_at = self._now()

            try:
                await self.notification_store.update_alert_notification(notification)
            except Exception as e:
                logger.error(
                    "Failed to update notification record: %s", str(e),
                    extra={"notification_id": notification.id},
                )


def build_alert_worker(
    registry_session_factory,
    analytics_session_factory,
    settings,
    http_client=None,
    tracer=None,
) -> AlertWorker:
    """Wire an AlertWorker from settings and session factories."""
    from faultline.notifier.webhook import WebhookNotifier
    from faultline.stores.alerts import AlertStore
    from faultline.stores.analytics import AnalyticsStore
    from faultline.stores.issues import IssueStore
    from faultline.stores.notifications import NotificationStore
    from faultline.utils.encryption import SecretCipher

    cipher = SecretCipher(settings.encryption_key) if settings.encryption_key else None

    notification_store = NotificationStore(registry_session_factory)
    notifier = WebhookNotifier(
        notification_store,
        cipher,
        http_client=http_client,
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    return AlertWorker(
        alert_store=AlertStore(registry_session_factory),
        analytics_store=AnalyticsStore(
            analytics_session_factory,
            tracer=tracer,
            async_insert_wait=settings.analytics_async_insert_wait,
        ),
        issue_store=IssueStore(registry_session_factory),
        notification_store=notification_store,
        notifier=notifier,
        instance_id=settings.resolved_instance_id,
        interval_seconds=settings.alert_worker_interval_seconds,
        lock_duration=timedelta(seconds=settings.alert_lock_seconds),
    )


async def run_alert_worker(worker: Optional[AlertWorker] = None) -> None:
    """Main alert worker loop. Runs until cancelled."""
    if worker is None:
        from faultline.config import get_settings
        from faultline.database import analytics_session_factory, registry_session_factory

        worker = build_alert_worker(registry_session_factory(), analytics_session_factory(), get_settings())

    await worker.run()
