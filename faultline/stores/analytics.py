"""
Analytics store - append-only event facts plus the aggregate query surface.

Every read is scoped by project id(s), a time window and the soft-delete
flag, and every result set is bounded. Tag filters are membership checks
against event_tags.tag_hash rather than scans of raw key/value pairs.

Queries are built with SQLAlchemy Core; nothing is assembled by string
concatenation. Any driver failure is raised as AnalyticsStoreError with the
original exception chained, and results are fully materialised before
returning, so callers never see partial data.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from opentelemetry import trace
from sqlalchemy import Date, DateTime, exists, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

from faultline.errors import AnalyticsStoreError
from faultline.models.event import Event, EventTag
from faultline.query import QueryToken, TagPredicate, tag_hash
from faultline.schemas.analytics import (
    AnalyticsStoreErr,
    ErrorsCriteria,
    EventCriteria,
    EventDefCriteria,
    EventEntry,
    EventPerDay,
    EventRecord,
    EventsPerHour,
    FieldValueNum,
    Filter,
    IssueEvent,
    IssueMetrics,
    IssueMetricsCriteria,
    ProjectWindowCriteria,
    Schema,
    SQLQuery,
    TagCount,
    TagValueCount,
    TagValuesCriteria,
)
from faultline.utils.timezone import as_utc

logger = logging.getLogger(__name__)

TOP_VALUES_PER_TAG = 4
MAX_FIELD_ROWS = 1000
MAX_HOURLY_ROWS = 5000
MAX_SLOW_QUERIES = 10


# ---------------------------------------------------------------------------
# Dialect-specific time buckets
# ---------------------------------------------------------------------------

class hour_bucket(FunctionElement):
    """Truncate a timestamp to the start of its UTC hour."""
    type = DateTime()
    name = "hour_bucket"
    inherit_cache = True


class day_bucket(FunctionElement):
    """Truncate a timestamp to its UTC calendar date."""
    type = Date()
    name = "day_bucket"
    inherit_cache = True


@compiles(hour_bucket)
def _hour_bucket_default(element, compiler, **kw):
    return "date_trunc('hour', (" + compiler.process(element.clauses, **kw) + ") AT TIME ZONE 'UTC')"


@compiles(hour_bucket, "sqlite")
def _hour_bucket_sqlite(element, compiler, **kw):
    return "strftime('%Y-%m-%d %H:00:00', " + compiler.process(element.clauses, **kw) + ")"


@compiles(day_bucket)
def _day_bucket_default(element, compiler, **kw):
    return "CAST((" + compiler.process(element.clauses, **kw) + ") AT TIME ZONE 'UTC' AS DATE)"


@compiles(day_bucket, "sqlite")
def _day_bucket_sqlite(element, compiler, **kw):
    return "date(" + compiler.process(element.clauses, **kw) + ")"


def _readable_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    size = float(num_bytes)
    for unit in ("KiB", "MiB", "GiB"):
        size /= 1024
        if size < 1024:
            return f"{size:.2f} {unit}"
    return f"{size / 1024:.2f} TiB"


def _has_tag(key: str, value: str):
    return exists().where(
        EventTag.event_pk == Event.id,
        EventTag.tag_hash == tag_hash(key, value),
    )


def _predicate_clause(predicate: TagPredicate):
    clause = _has_tag(predicate.key, predicate.value)
    return ~clause if predicate.negated else clause


def _tag_value_subquery(key: str):
    """Value of one tag key on the current event, empty string when absent."""
    return func.coalesce(
        select(EventTag.value)
        .where(EventTag.event_pk == Event.id, EventTag.key == key)
        .limit(1)
        .scalar_subquery(),
        "",
    )


class AnalyticsStore:
    """
    Query and write access to the analytics event store.

    tracer is an OpenTelemetry tracer handle; when omitted spans are no-ops.
    With async_insert_wait False, store_event schedules the write and returns
    without waiting for it to commit.
    """

    def __init__(self, session_factory, tracer: Optional[trace.Tracer] = None, async_insert_wait: bool = True):
        self._session_factory = session_factory
        self._tracer = tracer or trace.NoOpTracer()
        self._async_insert_wait = async_insert_wait
        self._pending: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _operation(self, name: str):
        with self._tracer.start_as_current_span(f"AnalyticsStore.{name}") as span:
            try:
                async with self._session_factory() as session:
                    yield session
            except SQLAlchemyError as e:
                span.record_exception(e)
                raise AnalyticsStoreError(name, str(e)) from e

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def store_event(self, record: EventRecord) -> None:
        """Append one event. Waits for the commit only when async_insert_wait is on."""
        if self._async_insert_wait:
            await self._insert(record)
            return

        task = asyncio.create_task(self._insert(record))
        self._pending.add(task)
        task.add_done_callback(self._on_insert_done)

    def _on_insert_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event insert failed: %s", str(exc), exc_info=exc)

    async def flush(self) -> None:
        """Wait for fire-and-forget inserts scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _insert(self, record: EventRecord) -> None:
        event = Event(
            event_id=record.event_id,
            project_id=record.project_id,
            group_id=record.group_id,
            created_at=as_utc(record.created_at),
            deleted=False,
            retention_days=record.retention_days,
            platform=record.platform,
            level=record.level,
            env=record.env,
            release=record.release,
            user=record.user,
            user_email=record.user_email,
            user_name=record.user_name,
            user_username=record.user_username,
            message=record.message,
            title=record.title,
            primary_hash=record.primary_hash,
            sdk_name=record.sdk_name,
            sdk_version=record.sdk_version,
            exception=record.exception or None,
        )
        event.tags = [
            EventTag(position=position, key=key, value=value, tag_hash=tag_hash(key, value))
            for position, (key, value) in enumerate(record.tags)
        ]

        async with self._operation("store_event") as session:
            session.add(event)
            await session.commit()

    # -----------------------------------------------------------------------
    # Issue aggregates
    # -----------------------------------------------------------------------

    async def list_issue_metrics(self, criteria: IssueMetricsCriteria) -> list[IssueMetrics]:
        """
        Times seen, distinct users and first/last seen per issue over [start, end].
        Issues without events in the window are absent from the result.
        """
        if not criteria.group_ids or not criteria.project_ids:
            return []

        stmt = (
            select(
                Event.group_id,
                func.count().label("times_seen"),
                func.min(Event.created_at).label("first_seen"),
                func.max(Event.created_at).label("last_seen"),
                func.count(func.nullif(Event.user, "").distinct()).label("user_count"),
            )
            .where(
                Event.deleted.is_(False),
                Event.group_id.in_(criteria.group_ids),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at <= as_utc(criteria.end),
                Event.project_id.in_(criteria.project_ids),
            )
            .group_by(Event.group_id)
        )

        async with self._operation("list_issue_metrics") as session:
            rows = (await session.execute(stmt)).all()

        return [
            IssueMetrics(
                gid=row.group_id,
                times_seen=row.times_seen,
                user_count=row.user_count or 0,
                first_seen=as_utc(row.first_seen),
                last_seen=as_utc(row.last_seen),
            )
            for row in rows
        ]

    async def count_fields(self, criteria: EventDefCriteria) -> list[FieldValueNum]:
        """Top values per tag key for one issue, with first/last seen per value."""
        count = func.count().label("count")
        rank = func.row_number().over(
            partition_by=EventTag.key,
            order_by=(func.count().desc(), EventTag.value),
        ).label("rank")

        grouped = (
            select(
                EventTag.key.label("tag"),
                EventTag.value.label("value"),
                count,
                func.min(Event.created_at).label("first_seen"),
                func.max(Event.created_at).label("last_seen"),
                rank,
            )
            .join(Event, Event.id == EventTag.event_pk)
            .where(
                Event.group_id == criteria.group_id,
                Event.deleted.is_(False),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
                Event.project_id == criteria.project_id,
            )
            .group_by(EventTag.key, EventTag.value)
            .subquery()
        )

        stmt = (
            select(grouped.c.tag, grouped.c.value, grouped.c.count, grouped.c.first_seen, grouped.c.last_seen)
            .where(grouped.c.rank <= TOP_VALUES_PER_TAG)
            .order_by(grouped.c.count.desc(), grouped.c.tag, grouped.c.value)
            .limit(MAX_FIELD_ROWS)
        )

        async with self._operation("count_fields") as session:
            rows = (await session.execute(stmt)).all()

        return [
            FieldValueNum(
                tag=row.tag,
                value=row.value,
                count=row.count,
                first_seen=as_utc(row.first_seen),
                last_seen=as_utc(row.last_seen),
            )
            for row in rows
        ]

    async def calculate_fields(self, criteria: EventDefCriteria) -> list[TagCount]:
        """Total occurrences per tag key for one issue."""
        count = func.count().label("count")
        stmt = (
            select(EventTag.key, count)
            .join(Event, Event.id == EventTag.event_pk)
            .where(
                Event.group_id == criteria.group_id,
                Event.deleted.is_(False),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
                Event.project_id == criteria.project_id,
            )
            .group_by(EventTag.key)
            .order_by(count.desc(), EventTag.key)
            .limit(MAX_FIELD_ROWS)
        )

        async with self._operation("calculate_fields") as session:
            rows = (await session.execute(stmt)).all()

        return [TagCount(tag=row.key, count=row.count) for row in rows]

    async def get_issue_event(self, criteria: EventDefCriteria) -> Optional[IssueEvent]:
        """One event of an issue: by event_id when given, else the earliest in the window."""
        stmt = select(Event).where(
            Event.deleted.is_(False),
            Event.project_id == criteria.project_id,
            Event.group_id == criteria.group_id,
        )
        if criteria.event_id:
            stmt = stmt.where(Event.event_id == criteria.event_id.replace("-", ""))
        else:
            stmt = stmt.where(
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
            ).order_by(Event.created_at, Event.id)
        stmt = stmt.limit(1)

        async with self._operation("get_issue_event") as session:
            event = (await session.execute(stmt)).scalars().first()
            if event is None:
                return None
            return IssueEvent(
                event_id=event.event_id,
                created_at=as_utc(event.created_at),
                env=event.env,
                release=event.release,
                user=event.user,
                user_username=event.user_username,
                user_name=event.user_name,
                user_email=event.user_email,
                message=event.message,
                title=event.title,
                tags=[(tag.key, tag.value) for tag in event.tags],
                exception=event.exception or [],
            )

    # -----------------------------------------------------------------------
    # Event lists
    # -----------------------------------------------------------------------

    def _event_filters(self, criteria: EventCriteria) -> list:
        filters = [
            Event.deleted.is_(False),
            Event.group_id == criteria.group_id,
            Event.created_at >= as_utc(criteria.start),
            Event.created_at < as_utc(criteria.end),
        ]
        if criteria.message:
            filters.append(Event.message.icontains(criteria.message, autoescape=True))
        filters.extend(_predicate_clause(p) for p in criteria.predicates)
        filters.append(Event.project_id.in_(criteria.project_ids))
        return filters

    async def list_events(self, criteria: EventCriteria) -> list[EventEntry]:
        """Newest-first page of an issue's events matching text and tag filters."""
        stmt = (
            select(
                Event.event_id,
                Event.created_at,
                Event.title,
                Event.message,
                Event.release,
                Event.env,
                Event.user,
                Event.user_email,
                Event.user_username,
                Event.user_name,
                _tag_value_subquery("os").label("os"),
            )
            .where(*self._event_filters(criteria))
            .order_by(Event.created_at.desc(), Event.id.desc())
            .limit(criteria.limit)
            .offset(criteria.offset)
        )

        async with self._operation("list_events") as session:
            rows = (await session.execute(stmt)).all()

        return [
            EventEntry(
                event_id=row.event_id,
                created_at=as_utc(row.created_at),
                title=row.title,
                message=row.message,
                release=row.release,
                env=row.env,
                user=row.user,
                user_email=row.user_email,
                user_username=row.user_username,
                user_name=row.user_name,
                os=row.os or "",
            )
            for row in rows
        ]

    async def count_events(self, criteria: EventCriteria) -> int:
        stmt = select(func.count()).select_from(Event).where(*self._event_filters(criteria))

        async with self._operation("count_events") as session:
            return int((await session.execute(stmt)).scalar_one())

    async def get_filtered_group_ids(
        self,
        tokens: list[QueryToken],
        start,
        end,
        project_ids: list[int],
    ) -> list[int]:
        """Distinct issue ids with at least one event matching every token."""
        if not project_ids:
            return []

        stmt = select(Event.group_id).distinct().where(
            Event.deleted.is_(False),
            Event.project_id.in_(project_ids),
            Event.created_at >= as_utc(start),
            Event.created_at <= as_utc(end),
        )

        for token in tokens:
            if token.is_raw_text:
                stmt = stmt.where(or_(
                    Event.message.icontains(token.value, autoescape=True),
                    Event.title.icontains(token.value, autoescape=True),
                ))
            elif token.negated:
                stmt = stmt.where(~_has_tag(token.key, token.value))
            else:
                stmt = stmt.where(_has_tag(token.key, token.value))

        stmt = stmt.order_by(Event.group_id)

        async with self._operation("get_filtered_group_ids") as session:
            return [int(gid) for gid in (await session.execute(stmt)).scalars().all()]

    # -----------------------------------------------------------------------
    # Histograms and tag frequency
    # -----------------------------------------------------------------------

    async def calculate_events_per_day(self, criteria: EventDefCriteria) -> list[EventPerDay]:
        """Per-day event counts for one issue, newest day first."""
        day = day_bucket(Event.created_at).label("time")
        count = func.count().label("event_count")
        stmt = (
            select(Event.group_id, day, count)
            .where(
                Event.deleted.is_(False),
                Event.group_id == criteria.group_id,
                Event.project_id == criteria.project_id,
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
            )
            .group_by(Event.group_id, day_bucket(Event.created_at))
            .order_by(day_bucket(Event.created_at).desc(), Event.group_id)
        )

        async with self._operation("calculate_events_per_day") as session:
            rows = (await session.execute(stmt)).all()

        return [EventPerDay(gid=row.group_id, time=row.time, count=row.event_count) for row in rows]

    async def calculate_events(self, criteria: ProjectWindowCriteria) -> list[EventsPerHour]:
        """Hourly event counts per project, oldest bucket first."""
        if not criteria.project_ids:
            return []

        ts = hour_bucket(Event.created_at).label("ts")
        count = func.count().label("event_count")
        stmt = (
            select(ts, Event.project_id, count)
            .where(
                Event.deleted.is_(False),
                Event.project_id.in_(criteria.project_ids),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
            )
            .group_by(hour_bucket(Event.created_at), Event.project_id)
            .order_by(hour_bucket(Event.created_at), Event.project_id)
            .limit(MAX_HOURLY_ROWS)
        )

        async with self._operation("calculate_events") as session:
            rows = (await session.execute(stmt)).all()

        return [
            EventsPerHour(ts=as_utc(row.ts), project_id=row.project_id, count=row.event_count)
            for row in rows
        ]

    async def list_popular_tags(self, criteria: ProjectWindowCriteria) -> list[TagCount]:
        """Most frequent tag keys across the given projects."""
        if not criteria.project_ids:
            return []

        count = func.count().label("count")
        stmt = (
            select(EventTag.key, count)
            .join(Event, Event.id == EventTag.event_pk)
            .where(
                Event.deleted.is_(False),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at <= as_utc(criteria.end),
                Event.project_id.in_(criteria.project_ids),
            )
            .group_by(EventTag.key)
            .order_by(count.desc(), EventTag.key)
            .limit(criteria.limit)
        )

        async with self._operation("list_popular_tags") as session:
            rows = (await session.execute(stmt)).all()

        return [TagCount(tag=row.key, count=row.count) for row in rows]

    async def list_tag_values(self, criteria: TagValuesCriteria) -> list[TagValueCount]:
        """Most frequent values of one tag key across the given projects."""
        if not criteria.project_ids:
            return []

        count = func.count().label("count")
        stmt = (
            select(EventTag.value, count)
            .join(Event, Event.id == EventTag.event_pk)
            .where(
                EventTag.key == criteria.tag,
                Event.deleted.is_(False),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at <= as_utc(criteria.end),
                Event.project_id.in_(criteria.project_ids),
            )
            .group_by(EventTag.value)
            .order_by(count.desc(), EventTag.value)
            .limit(criteria.limit)
        )

        async with self._operation("list_tag_values") as session:
            rows = (await session.execute(stmt)).all()

        return [TagValueCount(value=row.value, count=row.count) for row in rows]

    async def list_field_filters(self, criteria: ProjectWindowCriteria) -> list[Filter]:
        """(key, value) pairs ordered by frequency, for filter suggestions."""
        if not criteria.project_ids:
            return []

        frequency = func.count().label("frequency")
        stmt = (
            select(EventTag.key, EventTag.value, frequency)
            .join(Event, Event.id == EventTag.event_pk)
            .where(
                Event.deleted.is_(False),
                Event.project_id.in_(criteria.project_ids),
                Event.created_at >= as_utc(criteria.start),
                Event.created_at < as_utc(criteria.end),
            )
            .group_by(EventTag.key, EventTag.value)
            .order_by(frequency.desc(), EventTag.key, EventTag.value)
            .limit(min(criteria.limit, MAX_FIELD_ROWS))
        )

        async with self._operation("list_field_filters") as session:
            rows = (await session.execute(stmt)).all()

        return [Filter(key=row.key, value=row.value) for row in rows]

    # -----------------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------------

    async def list_schemas(self) -> list[Schema]:
        """Tables of the analytics database, largest first."""
        async with self._operation("list_schemas") as session:
            dialect = session.bind.dialect.name

            if dialect == "postgresql":
                rows = (await session.execute(text(
                    "SELECT relname AS name, "
                    "pg_size_pretty(pg_total_relation_size(relid)) AS readable_bytes, "
                    "pg_total_relation_size(relid) AS total_bytes, "
                    "n_live_tup AS total_rows "
                    "FROM pg_stat_user_tables ORDER BY total_bytes DESC"
                ))).all()
                return [
                    Schema(
                        name=row.name,
                        readable_bytes=row.readable_bytes,
                        total_bytes=int(row.total_bytes or 0),
                        total_rows=int(row.total_rows or 0),
                        engine="heap",
                    )
                    for row in rows
                ]

            if dialect == "sqlite":
                names = (await session.execute(text(
                    "SELECT name FROM sqlite_master WHERE type = 'table' "
                    "AND name NOT LIKE 'sqlite_%' ORDER BY name"
                ))).scalars().all()
                schemas = []
                for name in names:
                    quoted = session.bind.dialect.identifier_preparer.quote(name)
                    total_rows = (await session.execute(text(f"SELECT count(*) FROM {quoted}"))).scalar_one()
                    schemas.append(Schema(
                        name=name, readable_bytes=_readable_size(0), total_bytes=0,
                        total_rows=int(total_rows), engine="sqlite",
                    ))
                return sorted(schemas, key=lambda s: s.total_rows, reverse=True)

        return []

    async def list_slow_queries(self) -> list[SQLQuery]:
        """Heaviest statements by bytes read, with each one's share of the total."""
        async with self._operation("list_slow_queries") as session:
            if session.bind.dialect.name != "postgresql":
                return []

            rows = (await session.execute(text(
                "SELECT query AS normalized_query, "
                "mean_exec_time AS avg_duration, "
                "rows::float / greatest(calls, 1) AS avg_result_rows, "
                "calls AS total_calls, "
                "(shared_blks_read * current_setting('block_size')::bigint) AS read_bytes, "
                "total_exec_time / greatest(sum(total_exec_time) OVER (), 1) * 100 AS percentage_runtime, "
                "queryid::text AS normalized_query_hash "
                "FROM pg_stat_statements "
                "ORDER BY read_bytes DESC "
                "LIMIT :limit"
            ), {"limit": MAX_SLOW_QUERIES})).all()

        queries = [
            SQLQuery(
                normalized_query=row.normalized_query,
                avg_duration=float(row.avg_duration or 0),
                avg_result_rows=float(row.avg_result_rows or 0),
                total_calls=int(row.total_calls or 0),
                read_bytes=int(row.read_bytes or 0),
                total_read_bytes=_readable_size(int(row.read_bytes or 0)),
                percentage_runtime=float(row.percentage_runtime or 0),
                normalized_query_hash=row.normalized_query_hash or "",
            )
            for row in rows
        ]

        total_read = sum(q.read_bytes for q in queries)
        for q in queries:
            q.percent = q.read_bytes / total_read * 100 if total_read else 0.0
        return queries

    async def list_errors(self, criteria: ErrorsCriteria) -> list[AnalyticsStoreErr]:
        """Error counters of the analytics database."""
        async with self._operation("list_errors") as session:
            if session.bind.dialect.name != "postgresql":
                return []

            row = (await session.execute(text(
                "SELECT xact_rollback, deadlocks, conflicts, "
                "coalesce(checksum_failures, 0) AS checksum_failures, "
                "checksum_last_failure, stats_reset "
                "FROM pg_stat_database WHERE datname = current_database()"
            ))).first()

        if row is None:
            return []

        since = as_utc(criteria.last_error_time)
        last_seen = as_utc(row.checksum_last_failure or row.stats_reset)
        counters = (
            ("checksum_failures", row.checksum_failures, as_utc(row.checksum_last_failure)),
            ("deadlocks", row.deadlocks, last_seen),
            ("conflicts", row.conflicts, last_seen),
            ("xact_rollback", row.xact_rollback, last_seen),
        )
        errors = [
            AnalyticsStoreErr(name=name, count=int(count), max_last_error_time=when)
            for name, count, when in counters
            if count and (when is None or when > since)
        ]
        return sorted(errors, key=lambda e: e.count, reverse=True)
