"""
Event service - ingestion and issue-scoped event queries.

Ingestion fingerprints the event, resolves (or creates) its issue in the
relational registry, then appends the derived event row to the analytics
store. The two writes are independent: there is no cross-store transaction,
so an analytics failure after the issue write leaves the issue in place.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from faultline.errors import DuplicateKeyError, NotFoundError
from faultline.models.issue import Issue, IssuePriority
from faultline.normalize import culprit, exception_type, exception_value, fingerprint
from faultline.query import compile_query, tokenize
from faultline.schemas.analytics import (
    EventCriteria,
    EventDefCriteria,
    EventEntry,
    EventRecord,
    FieldValueNum,
    TagCount,
)
from faultline.schemas.event_body import EventBody
from faultline.utils.logging import correlation_scope
from faultline.utils.timezone import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
ISSUE_CACHE_TTL = 300  # seconds
ISSUE_CACHE_MAX_ENTRIES = 10_000


class IngestResult:
    def __init__(self, event_id: str, issue_id: int, created_issue: bool):
        self.event_id = event_id
        self.issue_id = issue_id
        self.created_issue = created_issue


def make_user(event: EventBody) -> str:
    return f"id:{event.user.id}" if event.user.id else ""


def make_tags(event: EventBody) -> list[tuple[str, str]]:
    """Derived tags first, then the event's own non-empty tags in key order."""
    tags = []
    if event.environment:
        tags.append(("env", event.environment))
    if event.level:
        tags.append(("level", event.level))
    if event.release:
        tags.append(("release", event.release))
    if event.server_name:
        tags.append(("server_name", event.server_name))
    if event.user.id:
        tags.append(("user", make_user(event)))
    if event.os_name:
        tags.append(("os", event.os_name))

    for key in sorted(event.tags):
        value = event.tags[key]
        if key and value:
            tags.append((key, value))
    return tags


class EventService:
    def __init__(
        self,
        issue_store,
        analytics_store,
        now: Callable[[], datetime] = utcnow,
        cache_ttl: float = ISSUE_CACHE_TTL,
        max_cache_entries: int = ISSUE_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.issue_store = issue_store
        self.analytics_store = analytics_store
        self._now = now
        self._cache_ttl = cache_ttl
        self._max_cache_entries = max_cache_entries
        self._clock = clock
        # "project_id:hash" -> (issue_id, issue_uuid, cached_at), oldest first
        self._issue_cache: dict[str, tuple[int, str, float]] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}

    def _cached_issue(self, key: str) -> Optional[tuple[int, str]]:
        entry = self._issue_cache.get(key)
        if entry is None:
            return None
        issue_id, issue_uuid, cached_at = entry
        if self._clock() - cached_at > self._cache_ttl:
            del self._issue_cache[key]
            return None
        return issue_id, issue_uuid

    def _cache_issue(self, key: str, issue: Issue) -> None:
        """Insert at the young end, dropping expired entries and the oldest past the size cap."""
        now = self._clock()
        self._issue_cache.pop(key, None)

        while self._issue_cache:
            oldest_key = next(iter(self._issue_cache))
            expired = now - self._issue_cache[oldest_key][2] > self._cache_ttl
            if not expired and len(self._issue_cache) < self._max_cache_entries:
                break
            del self._issue_cache[oldest_key]

        self._issue_cache[key] = (issue.id, issue.uuid, now)

    async def ingest_event(
        self,
        project_id: int,
        event: EventBody,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> IngestResult:
        with correlation_scope():
            return await self._ingest(project_id, event, retention_days)

    async def _ingest(self, project_id: int, event: EventBody, retention_days: int) -> IngestResult:
        event_hash = fingerprint(event)
        cache_key = f"{project_id}:{event_hash}"

        error_type = exception_type(event.exception, event.message)
        error_value = exception_value(event.exception)
        now = self._now()
        created = False

        cached = self._cached_issue(cache_key)
        if cached is not None:
            issue_id, issue_uuid = cached
            await self.issue_store.update_last_seen(issue_id, now)
        else:
            lock = self._key_locks.setdefault(cache_key, asyncio.Lock())
            try:
                async with lock:
                    issue, created = await self._resolve_issue(
                        project_id, event_hash, event, error_type, error_value, now,
                    )
            finally:
                self._key_locks.pop(cache_key, None)
            self._cache_issue(cache_key, issue)
            issue_id, issue_uuid = issue.id, issue.uuid

        record = EventRecord(
            event_id=event.event_id,
            project_id=project_id,
            group_id=issue_id,
            created_at=event.timestamp,
            retention_days=retention_days,
            platform=event.platform,
            level=event.level,
            env=event.environment,
            release=event.release,
            user=make_user(event),
            user_email=event.user.email,
            user_name=event.user.name,
            user_username=event.user.username,
            message=event.message,
            title=f"{error_type}: {error_value}",
            primary_hash=issue_uuid,
            sdk_name=event.sdk.name,
            sdk_version=event.sdk.version,
            exception=[exc.model_dump() for exc in event.exception],
            tags=make_tags(event),
        )
        await self.analytics_store.store_event(record)

        logger.debug(
            "Ingested event %s into issue %d", event.event_id, issue_id,
            extra={"project_id": project_id, "issue_id": issue_id},
        )
        return IngestResult(event_id=event.event_id, issue_id=issue_id, created_issue=created)

    async def _resolve_issue(
        self,
        project_id: int,
        event_hash: str,
        event: EventBody,
        error_type: str,
        error_value: str,
        now: datetime,
    ) -> tuple[Issue, bool]:
        try:
            issue = await self.issue_store.get_issue(project_id, event_hash)
        except NotFoundError:
            issue = None

        if issue is not None:
            await self.issue_store.update_last_seen(issue.id, now)
            return issue, False

        issue = Issue(
            project_id=project_id,
            hash=event_hash,
            first_seen=now,
            last_seen=now,
            message=error_value[:255],
            error_type=error_type[:512],
            view=culprit(event.exception)[:255],
            priority=IssuePriority.HIGH,
            num_comments=0,
        )
        try:
            issue = await self.issue_store.store_issue(issue)
        except DuplicateKeyError:
            # Another process created it first
            issue = await self.issue_store.get_issue(project_id, event_hash)
            await self.issue_store.update_last_seen(issue.id, now)
            return issue, False

        logger.info(
            "New issue %d for project %d", issue.id, project_id,
            extra={"project_id": project_id, "issue_id": issue.id},
        )
        return issue, True

    async def list_fields(
        self, project_id: int, issue_id: int, start: datetime, end: datetime
    ) -> tuple[list[TagCount], list[FieldValueNum]]:
        """Per-tag totals and the top values of each tag, with share of the tag total."""
        criteria = EventDefCriteria(project_id=project_id, group_id=issue_id, start=start, end=end)
        totals = await self.analytics_store.calculate_fields(criteria)
        values = await self.analytics_store.count_fields(criteria)

        total_by_tag = {t.tag: t.count for t in totals}
        for value in values:
            total = total_by_tag.get(value.tag, 0)
            value.percent_of_total = (value.count / total * 100) if total else 0.0

        return totals, values

    async def list_events(
        self,
        project_id: int,
        issue_id: int,
        query: str,
        start: datetime,
        end: datetime,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[EventEntry]]:
        compiled = compile_query(query)
        criteria = EventCriteria(
            project_ids=[project_id],
            group_id=issue_id,
            start=start,
            end=end,
            message=compiled.free_text,
            predicates=compiled.predicates,
            limit=limit,
            offset=offset,
        )
        total = await self.analytics_store.count_events(criteria)
        if total == 0:
            return 0, []
        events = await self.analytics_store.list_events(criteria)
        return total, events

    async def search_issue_ids(
        self, query: str, project_ids: list[int], start: datetime, end: datetime
    ) -> list[int]:
        return await self.analytics_store.get_filtered_group_ids(tokenize(query), start, end, project_ids)
