"""
Notification channels, webhook configuration and the per-delivery record.

An AlertNotification row is written as pending before each delivery attempt
and updated to sent or failed afterwards, so failed deliveries stay visible.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey
from faultline.database import Base


class ChannelType:
    WEBHOOK = "webhook"


class NotificationType:
    TRIGGERED = "triggered"
    RESOLVED = "resolved"
    TEST = "test"


class NotificationStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationChannel(Base):
    __tablename__ = "notification_channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    channel_type = Column(String(20), nullable=False, default=ChannelType.WEBHOOK)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class WebhookConfig(Base):
    __tablename__ = "webhook_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(
        Integer, ForeignKey("notification_channels.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    url = Column(Text, nullable=False)
    secret_encrypted = Column(Text, nullable=True)  # AES-GCM, base64(nonce || ciphertext)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class AlertNotification(Base):
    __tablename__ = "alert_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, nullable=False, index=True)
    channel_id = Column(Integer, nullable=False, index=True)
    notification_type = Column(String(20), nullable=False)  # triggered, resolved
    status = Column(
        String(20), nullable=False, default=NotificationStatus.PENDING, index=True
    )  # pending, sent, failed
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
