"""
Alert rule management.

Callers pass the ids of the teams the acting user belongs to; every
operation on an existing alert checks that the alert's team is among them.
New alerts always start active. Only the alert worker moves them to
triggered and back.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from faultline.errors import NoAccessError, ValidationError
from faultline.models.alert import Alert, AlertCondition, AlertStatus, AlertTimeframe
from faultline.utils.timezone import utcnow

logger = logging.getLogger(__name__)

MAX_RULE_NAME_LENGTH = 255
MAX_PAGE_SIZE = 100


def describe_alert(threshold: int, condition: int, timeframe: int) -> str:
    return (
        f"Alert when more than {threshold} "
        f"{AlertCondition.LABELS[condition]} in {AlertTimeframe.LABELS[timeframe]}"
    )


def validate_alert_fields(rule_name: str, threshold: int, condition: int, timeframe: int) -> None:
    if not rule_name or not rule_name.strip():
        raise ValidationError("rule name is required")
    if len(rule_name) > MAX_RULE_NAME_LENGTH:
        raise ValidationError(f"rule name must be at most {MAX_RULE_NAME_LENGTH} characters")
    if threshold < 1:
        raise ValidationError("threshold must be a positive integer")
    if condition not in AlertCondition.LABELS:
        raise ValidationError(f"unknown alert condition: {condition}")
    if timeframe not in AlertTimeframe.LABELS:
        raise ValidationError(f"unknown alert timeframe: {timeframe}")


class AlertService:
    def __init__(self, alert_store, now: Callable[[], datetime] = utcnow):
        self.alert_store = alert_store
        self._now = now

    def _check_access(self, alert: Alert, team_ids: list[int]) -> None:
        if alert.team_id not in team_ids:
            raise NoAccessError(f"no access to alert {alert.id}")

    async def list_alerts(
        self,
        team_ids: list[int],
        project_name: str = "",
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Alert], int]:
        """One page of the teams' alerts plus the total count."""
        if not team_ids:
            return [], 0
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        return await self.alert_store.list_alerts(
            team_ids, project_name, (page - 1) * page_size, page_size,
        )

    async def get_alert(self, alert_id: int, team_ids: list[int]) -> Alert:
        alert = await self.alert_store.get_alert(alert_id)
        self._check_access(alert, team_ids)
        return alert

    async def create_alert(
        self,
        team_ids: list[int],
        team_id: int,
        project_id: int,
        rule_name: str,
        threshold: int,
        condition: int = AlertCondition.OCCURRENCES,
        timeframe: int = AlertTimeframe.HOUR,
        high_priority: bool = False,
    ) -> Alert:
        if team_id not in team_ids:
            raise NoAccessError(f"no access to team {team_id}")
        validate_alert_fields(rule_name, threshold, condition, timeframe)

        now = self._now()
        alert = Alert(
            team_id=team_id,
            project_id=project_id,
            rule_name=rule_name.strip(),
            description=describe_alert(threshold, condition, timeframe),
            status=AlertStatus.ACTIVE,
            threshold=threshold,
            condition=condition,
            timeframe=timeframe,
            high_priority=high_priority,
            created_at=now,
            updated_at=now,
        )
        alert = await self.alert_store.create_alert(alert)
        logger.info("Alert %d created", alert.id, extra={"alert_id": alert.id, "project_id": project_id})
        return alert

    async def update_alert(
        self,
        alert_id: int,
        team_ids: list[int],
        rule_name: Optional[str] = None,
        project_id: Optional[int] = None,
        threshold: Optional[int] = None,
        condition: Optional[int] = None,
        timeframe: Optional[int] = None,
        high_priority: Optional[bool] = None,
    ) -> Alert:
        """Edit the rule's definition. Status and trigger timestamps are left alone."""
        alert = await self.get_alert(alert_id, team_ids)

        if rule_name is not None:
            alert.rule_name = rule_name.strip()
        if project_id is not None:
            alert.project_id = project_id
        if threshold is not None:
            alert.threshold = threshold
        if condition is not None:
            alert.condition = condition
        if timeframe is not None:
            alert.timeframe = timeframe
        if high_priority is not None:
            alert.high_priority = high_priority

        validate_alert_fields(alert.rule_name, alert.threshold, alert.condition, alert.timeframe)
        alert.description = describe_alert(alert.threshold, alert.condition, alert.timeframe)
        alert.updated_at = self._now()

        await self.alert_store.update_alert(alert)
        return alert

    async def delete_alert(self, alert_id: int, team_ids: list[int]) -> None:
        await self.get_alert(alert_id, team_ids)
        await self.alert_store.delete_alert(alert_id)
        logger.info("Alert %d deleted", alert_id, extra={"alert_id": alert_id})
