"""
Issue registry - the relational side of issue identity.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update

from faultline.errors import NotFoundError
from faultline.models.issue import Issue
from faultline.uow import session_scope
from faultline.utils.timezone import as_utc

logger = logging.getLogger(__name__)


class IssueStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_issue(self, project_id: int, hash: str) -> Issue:
        stmt = select(Issue).where(Issue.project_id == project_id, Issue.hash == hash)
        async with session_scope(self._session_factory, "get_issue") as session:
            issue = (await session.execute(stmt)).scalars().first()
        if issue is None:
            raise NotFoundError(f"issue {hash} not found in project {project_id}")
        return issue

    async def get_issue_by_id(self, issue_id: int) -> Issue:
        async with session_scope(self._session_factory, "get_issue_by_id") as session:
            issue = await session.get(Issue, issue_id)
        if issue is None:
            raise NotFoundError(f"issue {issue_id} not found")
        return issue

    async def store_issue(self, issue: Issue) -> Issue:
        """Insert a new issue. A second issue with the same (project_id, hash) raises DuplicateKeyError."""
        async with session_scope(self._session_factory, "store_issue") as session:
            session.add(issue)
            await session.flush()
        return issue

    async def update_last_seen(
        self,
        issue_id: int,
        last_seen: datetime,
        message: Optional[str] = None,
        error_type: Optional[str] = None,
        view: Optional[str] = None,
    ) -> None:
        values = {"last_seen": as_utc(last_seen)}
        if message is not None:
            values["message"] = message
        if error_type is not None:
            values["error_type"] = error_type
        if view is not None:
            values["view"] = view

        stmt = (
            update(Issue)
            .where(Issue.id == issue_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "update_last_seen") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError(f"issue {issue_id} not found")

    async def list_issues(
        self,
        project_ids: list[int],
        start: datetime,
        end: datetime,
        group_ids: Optional[list[int]] = None,
    ) -> list[Issue]:
        """Issues first or last seen inside [start, end]."""
        if not project_ids:
            return []

        start, end = as_utc(start), as_utc(end)
        stmt = select(Issue).where(
            Issue.project_id.in_(project_ids),
            or_(
                Issue.last_seen.between(start, end),
                Issue.first_seen.between(start, end),
            ),
        )
        if group_ids is not None:
            stmt = stmt.where(Issue.id.in_(group_ids))
        stmt = stmt.order_by(Issue.last_seen.desc(), Issue.id)

        async with session_scope(self._session_factory, "list_issues") as session:
            return list((await session.execute(stmt)).scalars().all())
