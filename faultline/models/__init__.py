"""
Database models - import all models here so Alembic and create_all can discover them.
"""
from faultline.models.project import Project
from faultline.models.issue import Issue
from faultline.models.alert import Alert, AlertLock
from faultline.models.notification import NotificationChannel, WebhookConfig, AlertNotification
from faultline.models.event import Event, EventTag

__all__ = [
    "Project",
    "Issue",
    "Alert",
    "AlertLock",
    "NotificationChannel",
    "WebhookConfig",
    "AlertNotification",
    "Event",
    "EventTag",
]
