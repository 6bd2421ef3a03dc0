"""
Webhook notifier - signs and POSTs alert notifications.

One synchronous attempt per call. Any 2xx is success; everything else
(non-2xx, transport failure, unreadable response, undecryptable secret)
raises a NotificationError subclass for the caller to record on the
AlertNotification row. No retries happen here.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

import httpx

from faultline.errors import (
    DecryptionError,
    NotFoundError,
    UnsupportedChannelError,
    WebhookDeliveryError,
    WebhookNotVerifiedError,
)
from faultline.models.alert import Alert, AlertCondition, AlertTimeframe
from faultline.models.notification import ChannelType, NotificationChannel, NotificationType, WebhookConfig
from faultline.schemas.webhook_payloads import AlertPayload
from faultline.utils.encryption import SecretCipher
from faultline.utils.timezone import rfc3339, utcnow
from faultline.utils.webhook_signatures import SIGNATURE_HEADER, compute_signature

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def condition_name(condition: int) -> str:
    return AlertCondition.WIRE_NAMES.get(condition, "unknown")


def timeframe_name(timeframe: int) -> str:
    return AlertTimeframe.WIRE_NAMES.get(timeframe, "unknown")


class WebhookNotifier:
    def __init__(
        self,
        store,
        cipher: Optional[SecretCipher],
        http_client: Optional[httpx.AsyncClient] = None,
        now: Callable[[], datetime] = utcnow,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._store = store
        self._cipher = cipher
        self._http_client = http_client
        self._now = now
        self._timeout = timeout_seconds

    def encrypt_secret(self, secret: str) -> str:
        if self._cipher is None:
            raise DecryptionError("encryption key not configured")
        return self._cipher.encrypt(secret)

    def decrypt_secret(self, encrypted: str) -> str:
        if self._cipher is None:
            raise DecryptionError("encryption key not configured")
        return self._cipher.decrypt(encrypted)

    def build_payload(self, alert: Alert, status: str) -> AlertPayload:
        return AlertPayload(
            timestamp=rfc3339(self._now()),
            alert_name=alert.rule_name,
            status=status,
            condition=condition_name(alert.condition),
            timeframe=timeframe_name(alert.timeframe),
            alert_id=alert.id,
            project_id=alert.project_id,
            team_id=alert.team_id,
            threshold=alert.threshold,
            high_priority=bool(alert.high_priority),
        )

    async def send(self, alert: Alert, channel: NotificationChannel, notification_type: str) -> None:
        """Deliver one notification for an alert to one channel."""
        if channel.channel_type != ChannelType.WEBHOOK:
            raise UnsupportedChannelError(f"unsupported channel type: {channel.channel_type}")

        try:
            config = await self._store.get_webhook_config(channel.id)
        except NotFoundError as e:
            raise WebhookNotVerifiedError(f"webhook not configured for channel {channel.id}") from e

        if config.verified_at is None:
            raise WebhookNotVerifiedError("webhook not verified")

        if notification_type == NotificationType.TRIGGERED:
            await self.send_alert_triggered(alert, config)
        else:
            await self.send_alert_resolved(alert, config)

    async def send_alert_triggered(self, alert: Alert, config: WebhookConfig) -> None:
        await self.send_webhook(config, self.build_payload(alert, NotificationType.TRIGGERED))

    async def send_alert_resolved(self, alert: Alert, config: WebhookConfig) -> None:
        await self.send_webhook(config, self.build_payload(alert, NotificationType.RESOLVED))

    async def send_webhook(self, config: WebhookConfig, payload: AlertPayload) -> None:
        """POST the payload. The signature covers exactly the bytes sent."""
        body = payload.to_bytes()
        headers = {"Content-Type": "application/json"}

        if config.secret_encrypted:
            try:
                secret = self.decrypt_secret(config.secret_encrypted)
            except DecryptionError as e:
                raise DecryptionError(f"webhook notifier: decrypt secret: {e}") from e
            headers[SIGNATURE_HEADER] = compute_signature(body, secret)

        try:
            if self._http_client is not None:
                response = await self._http_client.post(config.url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(config.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"webhook notifier: send request: {e}") from e

        if not response.is_success:
            try:
                response_body = response.text
            except (httpx.HTTPError, UnicodeDecodeError) as e:
                raise WebhookDeliveryError(
                    f"webhook notifier: read response body: {e}", status_code=response.status_code,
                ) from e
            raise WebhookDeliveryError(
                f"webhook notifier: webhook returned non-2xx status: {response.status_code}, body: {response_body}",
                status_code=response.status_code,
                body=response_body,
            )

        logger.debug(
            "Webhook delivered (status=%d, alert=%s)", response.status_code, payload.alert_id,
            extra={"alert_id": payload.alert_id},
        )
