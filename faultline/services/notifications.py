"""
Notification service - per-team webhook settings.

A team has at most one webhook channel ("Default Webhook"), created the
first time a URL is saved. Saving always ends with a signed test delivery
so a misconfigured endpoint surfaces immediately. A config becomes
verified when it is saved a second time.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from faultline.errors import NoAccessError, NotFoundError
from faultline.models.alert import AlertCondition, AlertTimeframe
from faultline.models.notification import ChannelType, NotificationChannel, NotificationType, WebhookConfig
from faultline.notifier.webhook import WebhookNotifier, condition_name, timeframe_name
from faultline.schemas.webhook_payloads import AlertPayload, WebhookConfigWithSecret
from faultline.utils.timezone import rfc3339, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_NAME = "Default Webhook"
TEST_ALERT_NAME = "Test Alert"
TEST_THRESHOLD = 100


class NotificationService:
    def __init__(
        self,
        notification_store,
        notifier: WebhookNotifier,
        now: Callable[[], datetime] = utcnow,
    ):
        self.notification_store = notification_store
        self.notifier = notifier
        self._now = now

    async def _webhook_channel(self, team_id: int) -> Optional[NotificationChannel]:
        channels = await self.notification_store.list_notification_channels(team_id)
        for channel in channels:
            if channel.channel_type == ChannelType.WEBHOOK:
                return channel
        return None

    def _test_payload(self, team_id: int) -> AlertPayload:
        return AlertPayload(
            timestamp=rfc3339(self._now()),
            alert_name=TEST_ALERT_NAME,
            status=NotificationType.TEST,
            condition=condition_name(AlertCondition.OCCURRENCES),
            timeframe=timeframe_name(AlertTimeframe.HOUR),
            alert_id=0,
            project_id=0,
            team_id=team_id,
            threshold=TEST_THRESHOLD,
            high_priority=False,
        )

    async def save_webhook_config(self, team_ids: list[int], team_id: int, url: str, secret: str = "") -> None:
        """
        Create or replace the team's webhook endpoint and send a test delivery.
        An empty URL clears the existing config instead.
        """
        if team_id not in team_ids:
            raise NoAccessError(f"no access to team {team_id}")

        now = self._now()

        if not url:
            await self._clear_webhook_config(team_id, now)
            return

        channel = await self._webhook_channel(team_id)
        if channel is None:
            channel = await self.notification_store.create_notification_channel(NotificationChannel(
                team_id=team_id,
                name=DEFAULT_CHANNEL_NAME,
                channel_type=ChannelType.WEBHOOK,
                enabled=True,
                created_at=now,
                updated_at=now,
            ))
            logger.info("Created webhook channel %d for team %d", channel.id, team_id,
                        extra={"channel_id": channel.id})

        encrypted = self.notifier.encrypt_secret(secret) if secret else ""

        try:
            config = await self.notification_store.get_webhook_config(channel.id)
        except NotFoundError:
            config = await self.notification_store.create_webhook_config(WebhookConfig(
                channel_id=channel.id,
                url=url,
                secret_encrypted=encrypted,
                created_at=now,
                updated_at=now,
            ))
        else:
            config.url = url
            config.secret_encrypted = encrypted
            config.verified_at = now
            config.updated_at = now
            await self.notification_store.update_webhook_config(config)

        await self.notifier.send_webhook(config, self._test_payload(team_id))

    async def _clear_webhook_config(self, team_id: int, now: datetime) -> None:
        channel = await self._webhook_channel(team_id)
        if channel is None:
            return
        try:
            config = await self.notification_store.get_webhook_config(channel.id)
        except NotFoundError:
            return

        config.url = ""
        config.secret_encrypted = ""
        config.updated_at = now
        await self.notification_store.update_webhook_config(config)
        logger.info("Cleared webhook config for team %d", team_id, extra={"channel_id": channel.id})

    async def test_webhook(self, team_ids: list[int], team_id: int) -> None:
        """Send a test delivery to the team's saved webhook."""
        config = await self.get_webhook_config_by_team(team_ids, team_id)
        if not config.url:
            raise NotFoundError(f"no webhook url configured for team {team_id}")
        await self.notifier.send_webhook(config, self._test_payload(team_id))

    async def get_webhook_config_by_team(self, team_ids: list[int], team_id: int) -> WebhookConfig:
        if team_id not in team_ids:
            raise NoAccessError(f"no access to team {team_id}")

        channel = await self._webhook_channel(team_id)
        if channel is None:
            raise NotFoundError(f"no webhook channel for team {team_id}")
        return await self.notification_store.get_webhook_config(channel.id)

    async def get_webhook_config_with_secret(self, team_ids: list[int], team_id: int) -> WebhookConfigWithSecret:
        """URL and decrypted secret; empty values when nothing is configured."""
        try:
            config = await self.get_webhook_config_by_team(team_ids, team_id)
        except NotFoundError:
            return WebhookConfigWithSecret()

        secret = ""
        if config.secret_encrypted:
            secret = self.notifier.decrypt_secret(config.secret_encrypted)
        return WebhookConfigWithSecret(url=config.url or "", secret=secret)
