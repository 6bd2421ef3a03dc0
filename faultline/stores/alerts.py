"""
Alert rule persistence.
"""
import logging
from typing import Optional

from sqlalchemy import delete, func, select, update

from faultline.errors import NotFoundError
from faultline.models.alert import Alert
from faultline.models.project import Project
from faultline.uow import session_scope

logger = logging.getLogger(__name__)


class AlertStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def list_alerts(
        self,
        team_ids: Optional[list[int]] = None,
        project_name: str = "",
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Alert], int]:
        """
        Page of alerts, newest first, plus the total matching count.
        Empty team_ids means all teams; project_name filters by project.
        """
        conditions = []
        if team_ids:
            conditions.append(Alert.team_id.in_(team_ids))
        if project_name:
            conditions.append(Project.name == project_name)

        count_stmt = select(func.count()).select_from(Alert)
        list_stmt = select(Alert)
        if project_name:
            count_stmt = count_stmt.join(Project, Project.id == Alert.project_id)
            list_stmt = list_stmt.join(Project, Project.id == Alert.project_id)

        count_stmt = count_stmt.where(*conditions)
        list_stmt = (
            list_stmt.where(*conditions)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(limit)
            .offset(offset)
        )

        async with session_scope(self._session_factory, "list_alerts") as session:
            total = (await session.execute(count_stmt)).scalar_one()
            alerts = list((await session.execute(list_stmt)).scalars().all())

        return alerts, int(total)

    async def create_alert(self, alert: Alert) -> Alert:
        async with session_scope(self._session_factory, "create_alert") as session:
            session.add(alert)
            await session.flush()
        return alert

    async def update_alert(self, alert: Alert) -> None:
        """Persist the mutable fields of an alert. Raises NotFoundError if the row is gone."""
        stmt = (
            update(Alert)
            .where(Alert.id == alert.id)
            .values(
                updated_at=alert.updated_at,
                rule_name=alert.rule_name,
                description=alert.description,
                status=alert.status,
                threshold=alert.threshold,
                condition=alert.condition,
                timeframe=alert.timeframe,
                high_priority=alert.high_priority,
                last_triggered_at=alert.last_triggered_at,
                resolved_at=alert.resolved_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "update_alert") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"alert {alert.id} not found")

    async def delete_alert(self, alert_id: int) -> None:
        stmt = delete(Alert).where(Alert.id == alert_id).execution_options(synchronize_session=False)
        async with session_scope(self._session_factory, "delete_alert") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"alert {alert_id} not found")

    async def get_alert(self, alert_id: int) -> Alert:
        async with session_scope(self._session_factory, "get_alert") as session:
            alert = await session.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    async def list_alerts_by_project(self, project_id: int) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.project_id == project_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
        )
        async with session_scope(self._session_factory, "list_alerts_by_project") as session:
            return list((await session.execute(stmt)).scalars().all())
