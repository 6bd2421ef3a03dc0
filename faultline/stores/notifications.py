"""
Notification channels, webhook configs, delivery records and the alert lock ledger.

The lock ledger is the only thing keeping two worker instances from
evaluating (and notifying for) the same alert at once. Acquisition is one
atomic INSERT .. ON CONFLICT DO UPDATE that only overwrites an expired row,
so correctness does not depend on any in-process lock.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite

from faultline.errors import NotFoundError
from faultline.models.alert import AlertLock
from faultline.models.notification import (
    AlertNotification,
    NotificationChannel,
    NotificationStatus,
    WebhookConfig,
)
from faultline.uow import session_scope
from faultline.utils.timezone import as_utc

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class NotificationStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    # -----------------------------------------------------------------------
    # Channels
    # -----------------------------------------------------------------------

    async def create_notification_channel(self, channel: NotificationChannel) -> NotificationChannel:
        async with session_scope(self._session_factory, "create_notification_channel") as session:
            session.add(channel)
            await session.flush()
        return channel

    async def get_notification_channel(self, channel_id: int) -> NotificationChannel:
        async with session_scope(self._session_factory, "get_notification_channel") as session:
            channel = await session.get(NotificationChannel, channel_id)
        if channel is None:
            raise NotFoundError(f"notification channel {channel_id} not found")
        return channel

    async def list_notification_channels(
        self, team_id: int, enabled_only: bool = False
    ) -> list[NotificationChannel]:
        stmt = select(NotificationChannel).where(NotificationChannel.team_id == team_id)
        if enabled_only:
            stmt = stmt.where(NotificationChannel.enabled.is_(True))
        stmt = stmt.order_by(NotificationChannel.id)

        async with session_scope(self._session_factory, "list_notification_channels") as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_notification_channel(self, channel: NotificationChannel) -> None:
        stmt = (
            update(NotificationChannel)
            .where(NotificationChannel.id == channel.id)
            .values(name=channel.name, enabled=channel.enabled, updated_at=channel.updated_at)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "update_notification_channel") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"notification channel {channel.id} not found")

    async def delete_notification_channel(self, channel_id: int) -> None:
        async with session_scope(self._session_factory, "delete_notification_channel") as session:
            await session.execute(delete(WebhookConfig).where(WebhookConfig.channel_id == channel_id))
            result = await session.execute(
                delete(NotificationChannel).where(NotificationChannel.id == channel_id)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"notification channel {channel_id} not found")

    # -----------------------------------------------------------------------
    # Webhook configs
    # -----------------------------------------------------------------------

    async def create_webhook_config(self, config: WebhookConfig) -> WebhookConfig:
        async with session_scope(self._session_factory, "create_webhook_config") as session:
            session.add(config)
            await session.flush()
        return config

    async def get_webhook_config(self, channel_id: int) -> WebhookConfig:
        stmt = select(WebhookConfig).where(WebhookConfig.channel_id == channel_id)
        async with session_scope(self._session_factory, "get_webhook_config") as session:
            config = (await session.execute(stmt)).scalars().first()
        if config is None:
            raise NotFoundError(f"webhook config for channel {channel_id} not found")
        return config

    async def update_webhook_config(self, config: WebhookConfig) -> None:
        stmt = (
            update(WebhookConfig)
            .where(WebhookConfig.channel_id == config.channel_id)
            .values(
                url=config.url,
                secret_encrypted=config.secret_encrypted,
                verified_at=config.verified_at,
                updated_at=config.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "update_webhook_config") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"webhook config for channel {config.channel_id} not found")

    async def delete_webhook_config(self, channel_id: int) -> None:
        async with session_scope(self._session_factory, "delete_webhook_config") as session:
            await session.execute(delete(WebhookConfig).where(WebhookConfig.channel_id == channel_id))

    # -----------------------------------------------------------------------
    # Delivery records
    # -----------------------------------------------------------------------

    async def create_alert_notification(self, notification: AlertNotification) -> AlertNotification:
        async with session_scope(self._session_factory, "create_alert_notification") as session:
            session.add(notification)
            await session.flush()
        return notification

    async def update_alert_notification(self, notification: AlertNotification) -> None:
        stmt = (
            update(AlertNotification)
            .where(AlertNotification.id == notification.id)
            .values(
                status=notification.status,
                error_message=notification.error_message,
                sent_at=notification.sent_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "update_alert_notification") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"alert notification {notification.id} not found")

    async def list_pending_notifications(self, limit: int = 100) -> list[AlertNotification]:
        stmt = (
            select(AlertNotification)
            .where(AlertNotification.status == NotificationStatus.PENDING)
            .order_by(AlertNotification.created_at, AlertNotification.id)
            .limit(limit)
        )
        async with session_scope(self._session_factory, "list_pending_notifications") as session:
            return list((await session.execute(stmt)).scalars().all())

    # -----------------------------------------------------------------------
    # Lock ledger
    # -----------------------------------------------------------------------

    async def acquire_alert_lock(self, lock: AlertLock) -> bool:
        """
        Take the lease for lock.alert_id, or reclaim it if the current lease expired.
        Returns False (not an error) while another holder's lease is live.
        """
        values = {
            "alert_id": lock.alert_id,
            "instance_id": lock.instance_id,
            "locked_at": as_utc(lock.locked_at),
            "expires_at": as_utc(lock.expires_at),
        }

        async with session_scope(self._session_factory, "acquire_alert_lock") as session:
            dialect = session.bind.dialect.name
            insert = _UPSERT_DIALECTS.get(dialect)
            if insert is None:
                raise NotImplementedError(f"alert locks are not supported on {dialect}")

            stmt = insert(AlertLock).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[AlertLock.alert_id],
                set_={
                    "instance_id": stmt.excluded.instance_id,
                    "locked_at": stmt.excluded.locked_at,
                    "expires_at": stmt.excluded.expires_at,
                },
                where=AlertLock.expires_at < stmt.excluded.locked_at,
            ).returning(AlertLock.instance_id)

            row = (await session.execute(stmt)).first()

        return row is not None and row.instance_id == lock.instance_id

    async def release_alert_lock(self, alert_id: int, instance_id: str) -> None:
        """Drop the lease if this instance still holds it."""
        stmt = delete(AlertLock).where(
            AlertLock.alert_id == alert_id,
            AlertLock.instance_id == instance_id,
        )
        async with session_scope(self._session_factory, "release_alert_lock") as session:
            await session.execute(stmt)

    async def cleanup_expired_locks(self, now: datetime) -> int:
        stmt = delete(AlertLock).where(AlertLock.expires_at < as_utc(now))
        async with session_scope(self._session_factory, "cleanup_expired_locks") as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    async def get_alert_lock(self, alert_id: int) -> Optional[AlertLock]:
        async with session_scope(self._session_factory, "get_alert_lock") as session:
            return await session.get(AlertLock, alert_id)
