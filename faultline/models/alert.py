"""
Alert rules and the cross-instance evaluation lock ledger.

Alert.status is written only by the alert worker and only ever moves
between active and triggered. AlertLock holds at most one row per alert;
the row is a lease that any instance may reclaim once expires_at passes.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from faultline.database import Base


class AlertStatus:
    ACTIVE = "active"
    TRIGGERED = "triggered"

    EVALUATED = (ACTIVE, TRIGGERED)


class AlertCondition:
    OCCURRENCES = 1
    USERS = 2

    # Human text used in generated descriptions
    LABELS = {OCCURRENCES: "occurrences", USERS: "users affected"}
    # Names used on the webhook wire
    WIRE_NAMES = {OCCURRENCES: "occurrences", USERS: "users_affected"}


class AlertTimeframe:
    MINUTE = 1
    FIVE_MINUTES = 2
    FIFTEEN_MINUTES = 3
    HOUR = 4
    DAY = 5
    WEEK = 6
    THIRTY_DAYS = 7

    DURATIONS = {
        MINUTE: timedelta(minutes=1),
        FIVE_MINUTES: timedelta(minutes=5),
        FIFTEEN_MINUTES: timedelta(minutes=15),
        HOUR: timedelta(hours=1),
        DAY: timedelta(days=1),
        WEEK: timedelta(weeks=1),
        THIRTY_DAYS: timedelta(days=30),
    }
    LABELS = {
        MINUTE: "1 minute",
        FIVE_MINUTES: "5 minutes",
        FIFTEEN_MINUTES: "15 minutes",
        HOUR: "1 hour",
        DAY: "1 day",
        WEEK: "1 week",
        THIRTY_DAYS: "30 days",
    }
    WIRE_NAMES = {
        MINUTE: "1m",
        FIVE_MINUTES: "5m",
        FIFTEEN_MINUTES: "15m",
        HOUR: "1h",
        DAY: "1d",
        WEEK: "1w",
        THIRTY_DAYS: "30d",
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AlertStatus.ACTIVE, index=True
    )  # active, triggered
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    condition: Mapped[int] = mapped_column(Integer, nullable=False, default=AlertCondition.OCCURRENCES)
    timeframe: Mapped[int] = mapped_column(Integer, nullable=False, default=AlertTimeframe.HOUR)
    high_priority: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @property
    def window(self) -> timedelta:
        """Lookback window; unknown codes fall back to one hour."""
        return AlertTimeframe.DURATIONS.get(self.timeframe, timedelta(hours=1))


class AlertLock(Base):
    __tablename__ = "alert_locks"

    alert_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    instance_id: Mapped[str] = mapped_column(String(255), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
