"""
Analytics store tests against in-memory SQLite.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from faultline.errors import AnalyticsStoreError
from faultline.query import QueryToken, TagPredicate, tokenize
from faultline.schemas.analytics import (
    ErrorsCriteria,
    EventCriteria,
    EventDefCriteria,
    EventRecord,
    IssueMetricsCriteria,
    ProjectWindowCriteria,
    TagValuesCriteria,
)
from faultline.stores.analytics import AnalyticsStore, _readable_size

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_counter = {"n": 0}


def _record(group_id=1, project_id=1, minutes_ago=10, user="", message="boom", tags=None, **kw):
    _counter["n"] += 1
    kw.setdefault("event_id", f"{_counter['n']:032x}")
    return EventRecord(
        project_id=project_id,
        group_id=group_id,
        created_at=NOW - timedelta(minutes=minutes_ago),
        user=user,
        message=message,
        title=f"ValueError: {message}",
        tags=tags or [],
        **kw,
    )


@pytest.fixture
def store(analytics_session_factory):
    return AnalyticsStore(analytics_session_factory)


@pytest.fixture
async def seeded(store):
    """Issue 1: 3 events, 2 users. Issue 2: 1 event. Issue 3 in another project."""
    await store.store_event(_record(group_id=1, user="id:1", minutes_ago=50, message="disk full on /dev/sda",
                                    tags=[("env", "prod"), ("release", "1.0"), ("os", "Linux")]))
    await store.store_event(_record(group_id=1, user="id:2", minutes_ago=20,
                                    tags=[("env", "prod"), ("release", "1.1")]))
    await store.store_event(_record(group_id=1, user="id:1", minutes_ago=5,
                                    tags=[("env", "staging"), ("release", "1.1")]))
    await store.store_event(_record(group_id=2, minutes_ago=15, message="timeout", tags=[("env", "prod")]))
    await store.store_event(_record(group_id=3, project_id=2, minutes_ago=15, tags=[("env", "prod")]))
    return store


def _window(hours=1):
    return NOW - timedelta(hours=hours), NOW


class TestStoreEvent:
    """Append path."""

    async def test_stored_event_is_readable(self, store):
        record = _record(event_id="f" * 32, tags=[("env", "prod"), ("os", "Linux")],
                         exception=[{"type": "ValueError", "value": "boom"}])
        await store.store_event(record)

        start, end = _window()
        event = await store.get_issue_event(EventDefCriteria(
            project_id=1, group_id=1, start=start, end=end, event_id="f" * 32,
        ))

        assert event is not None
        assert event.event_id == "f" * 32
        assert event.tags == [("env", "prod"), ("os", "Linux")]
        assert event.exception == [{"type": "ValueError", "value": "boom"}]

    async def test_fire_and_forget_then_flush(self, analytics_session_factory):
        store = AnalyticsStore(analytics_session_factory, async_insert_wait=False)
        await store.store_event(_record())
        await store.flush()

        start, end = _window()
        count = await store.count_events(EventCriteria(project_ids=[1], group_id=1, start=start, end=end))
        assert count == 1

    async def test_fire_and_forget_failure_is_logged(self, caplog):
        def broken_factory():
            raise OperationalError("INSERT", {}, Exception("connection refused"))

        store = AnalyticsStore(broken_factory, async_insert_wait=False)
        await store.store_event(_record())
        await store.flush()

        assert any("Async event insert failed" in r.getMessage() for r in caplog.records)


class TestIssueMetrics:
    """Per-issue aggregates consumed by the alert worker."""

    async def test_counts_and_users(self, seeded):
        start, end = _window()
        metrics = await seeded.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[1], group_ids=[1, 2], start=start, end=end,
        ))
        by_gid = {m.gid: m for m in metrics}

        assert by_gid[1].times_seen == 3
        assert by_gid[1].user_count == 2
        assert by_gid[2].times_seen == 1
        assert by_gid[2].user_count == 0
        assert by_gid[1].first_seen == NOW - timedelta(minutes=50)
        assert by_gid[1].last_seen == NOW - timedelta(minutes=5)

    async def test_issue_without_events_absent(self, seeded):
        start, end = _window()
        metrics = await seeded.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[1], group_ids=[99], start=start, end=end,
        ))
        assert metrics == []

    async def test_window_excludes_old_events(self, seeded):
        metrics = await seeded.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[1], group_ids=[1], start=NOW - timedelta(minutes=30), end=NOW,
        ))
        assert metrics[0].times_seen == 2

    async def test_other_project_scoped_out(self, seeded):
        start, end = _window()
        metrics = await seeded.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[1], group_ids=[3], start=start, end=end,
        ))
        assert metrics == []

    async def test_empty_inputs(self, seeded):
        start, end = _window()
        assert await seeded.list_issue_metrics(IssueMetricsCriteria(
            project_ids=[], group_ids=[1], start=start, end=end,
        )) == []


class TestFields:
    """Tag breakdowns for one issue."""

    async def test_calculate_fields(self, seeded):
        start, end = _window()
        totals = await seeded.calculate_fields(EventDefCriteria(project_id=1, group_id=1, start=start, end=end))
        by_tag = {t.tag: t.count for t in totals}

        assert by_tag == {"env": 3, "release": 3, "os": 1}

    async def test_count_fields_top_values(self, seeded):
        start, end = _window()
        values = await seeded.count_fields(EventDefCriteria(project_id=1, group_id=1, start=start, end=end))
        pairs = {(v.tag, v.value): v.count for v in values}

        assert pairs[("env", "prod")] == 2
        assert pairs[("env", "staging")] == 1
        assert pairs[("release", "1.1")] == 2

    async def test_count_fields_limits_values_per_tag(self, store):
        for i in range(6):
            await store.store_event(_record(tags=[("browser", f"b{i}")]))

        start, end = _window()
        values = await store.count_fields(EventDefCriteria(project_id=1, group_id=1, start=start, end=end))

        assert len([v for v in values if v.tag == "browser"]) == 4


class TestIssueEvent:
    """Single event lookup."""

    async def test_earliest_in_window_without_event_id(self, seeded):
        start, end = _window()
        event = await seeded.get_issue_event(EventDefCriteria(project_id=1, group_id=1, start=start, end=end))

        assert event.created_at == NOW - timedelta(minutes=50)

    async def test_missing_returns_none(self, seeded):
        start, end = _window()
        event = await seeded.get_issue_event(EventDefCriteria(
            project_id=1, group_id=1, start=start, end=end, event_id="0" * 32,
        ))
        assert event is None


class TestListEvents:
    """Filtered event pages."""

    async def test_newest_first(self, seeded):
        start, end = _window()
        events = await seeded.list_events(EventCriteria(project_ids=[1], group_id=1, start=start, end=end))

        assert len(events) == 3
        assert events[0].created_at > events[1].created_at > events[2].created_at

    async def test_os_column_from_tag(self, seeded):
        start, end = _window()
        events = await seeded.list_events(EventCriteria(project_ids=[1], group_id=1, start=start, end=end))

        assert events[-1].os == "Linux"
        assert events[0].os == ""

    async def test_required_tag(self, seeded):
        start, end = _window()
        criteria = EventCriteria(
            project_ids=[1], group_id=1, start=start, end=end,
            predicates=[TagPredicate(key="env", value="prod")],
        )
        assert await seeded.count_events(criteria) == 2

    async def test_forbidden_tag(self, seeded):
        start, end = _window()
        criteria = EventCriteria(
            project_ids=[1], group_id=1, start=start, end=end,
            predicates=[TagPredicate(key="env", value="prod", negated=True)],
        )
        assert await seeded.count_events(criteria) == 1

    async def test_message_substring_case_insensitive(self, seeded):
        start, end = _window()
        criteria = EventCriteria(project_ids=[1], group_id=1, start=start, end=end, message="DISK")
        assert await seeded.count_events(criteria) == 1

    async def test_limit_offset(self, seeded):
        start, end = _window()
        events = await seeded.list_events(EventCriteria(
            project_ids=[1], group_id=1, start=start, end=end, limit=1, offset=1,
        ))
        assert len(events) == 1
        assert events[0].created_at == NOW - timedelta(minutes=20)


class TestFilteredGroupIds:
    """Issue search across projects."""

    async def test_tag_token(self, seeded):
        start, end = _window()
        gids = await seeded.get_filtered_group_ids(tokenize("env:prod"), start, end, [1, 2])
        assert gids == [1, 2, 3]

    async def test_negated_and_text(self, seeded):
        start, end = _window()
        gids = await seeded.get_filtered_group_ids(tokenize("timeout"), start, end, [1])
        assert gids == [2]

        gids = await seeded.get_filtered_group_ids(
            [QueryToken(key="env", value="staging", operator="is not")], start, end, [1],
        )
        assert gids == [1, 2]

    async def test_no_projects(self, seeded):
        start, end = _window()
        assert await seeded.get_filtered_group_ids([], start, end, []) == []


class TestHistograms:
    """Time-bucketed counts."""

    async def test_events_per_day(self, seeded):
        start, end = _window()
        days = await seeded.calculate_events_per_day(EventDefCriteria(project_id=1, group_id=1, start=start, end=end))

        assert len(days) == 1
        assert days[0].time == date(2026, 1, 15)
        assert days[0].count == 3

    async def test_events_per_hour(self, seeded):
        start, end = _window(hours=2)
        hours = await seeded.calculate_events(ProjectWindowCriteria(project_ids=[1], start=start, end=end))

        assert sum(h.count for h in hours) == 4
        assert hours[0].ts.minute == 0
        assert hours == sorted(hours, key=lambda h: h.ts)


class TestTagFrequency:
    """Project-wide tag statistics."""

    async def test_popular_tags(self, seeded):
        start, end = _window()
        tags = await seeded.list_popular_tags(ProjectWindowCriteria(project_ids=[1], start=start, end=end))

        assert tags[0].tag == "env"
        assert tags[0].count == 4

    async def test_tag_values(self, seeded):
        start, end = _window()
        values = await seeded.list_tag_values(TagValuesCriteria(project_ids=[1], start=start, end=end, tag="env"))

        assert values[0].value == "prod"
        assert values[0].count == 3

    async def test_field_filters(self, seeded):
        start, end = _window()
        filters = await seeded.list_field_filters(ProjectWindowCriteria(project_ids=[1], start=start, end=end))

        assert (filters[0].key, filters[0].value) == ("env", "prod")


class TestDiagnostics:
    """Store health views on SQLite."""

    async def test_schemas(self, seeded):
        schemas = await seeded.list_schemas()
        names = [s.name for s in schemas]

        assert "events" in names
        assert "event_tags" in names
        assert schemas[0].total_rows >= schemas[-1].total_rows

    async def test_slow_queries_and_errors_empty(self, seeded):
        assert await seeded.list_slow_queries() == []
        assert await seeded.list_errors(ErrorsCriteria(last_error_time=NOW)) == []

    def test_readable_size(self):
        assert _readable_size(512) == "512 B"
        assert _readable_size(2048) == "2.00 KiB"


class TestErrors:
    """Driver failures surface as AnalyticsStoreError."""

    async def test_wrapped(self):
        def broken_factory():
            raise OperationalError("SELECT", {}, Exception("no such table: events"))

        store = AnalyticsStore(broken_factory)
        start, end = _window()

        with pytest.raises(AnalyticsStoreError) as exc_info:
            await store.count_events(EventCriteria(project_ids=[1], group_id=1, start=start, end=end))

        assert exc_info.value.operation == "count_events"
        assert isinstance(exc_info.value.__cause__, OperationalError)

    async def test_span_per_operation(self, seeded):
        tracer = MagicMock()
        seeded._tracer = tracer
        start, end = _window()

        await seeded.count_events(EventCriteria(project_ids=[1], group_id=1, start=start, end=end))

        tracer.start_as_current_span.assert_called_once_with("AnalyticsStore.count_events")
