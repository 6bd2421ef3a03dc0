"""
Analytics event fact table - append-only, never updated except for the
soft-delete flag.

Each event's tags are stored twice over in event_tags: as the raw key/value
pair (for breakdowns) and as a precomputed 64-bit hash of "key=value"
(for filter membership checks through the (tag_hash, event_pk) index).
"""
from datetime import datetime, timezone
from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, SmallInteger, String, Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from faultline.database import AnalyticsBase

# SQLite only autoincrements INTEGER PRIMARY KEY
EventPK = BigInteger().with_variant(Integer, "sqlite")
ExceptionJSON = JSON().with_variant(JSONB, "postgresql")


class Event(AnalyticsBase):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_project_created", "project_id", "created_at"),
        Index("ix_events_group_created", "group_id", "created_at"),
    )

    id = Column(EventPK, primary_key=True, autoincrement=True)
    event_id = Column(String(32), nullable=False, index=True)
    project_id = Column(Integer, nullable=False)
    group_id = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    deleted = Column(Boolean, nullable=False, default=False)
    retention_days = Column(SmallInteger, nullable=False, default=90)
    platform = Column(String(50), nullable=False, default="")
    level = Column(String(20), nullable=False, default="error")
    env = Column(String(255), nullable=False, default="")
    release = Column(String(255), nullable=False, default="")
    user = Column(String(255), nullable=False, default="")  # "id:<user id>" or empty
    user_email = Column(String(255), nullable=False, default="")
    user_name = Column(String(255), nullable=False, default="")
    user_username = Column(String(255), nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    title = Column(Text, nullable=False, default="")
    primary_hash = Column(String(32), nullable=False, default="")
    sdk_name = Column(String(100), nullable=False, default="")
    sdk_version = Column(String(50), nullable=False, default="")
    exception = Column(ExceptionJSON, nullable=True)  # [{"type", "value", "frames": [...]}]

    tags = relationship(
        "EventTag", order_by="EventTag.position", lazy="selectin", cascade="all, delete-orphan",
    )


class EventTag(AnalyticsBase):
    __tablename__ = "event_tags"
    __table_args__ = (
        Index("ix_event_tags_hash_event", "tag_hash", "event_pk"),
        Index("ix_event_tags_key_value", "key", "value"),
    )

    event_pk = Column(EventPK, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True)
    position = Column(SmallInteger, primary_key=True, autoincrement=False)
    key = Column(String(255), nullable=False)
    value = Column(String(1024), nullable=False)
    tag_hash = Column(BigInteger, nullable=False)
