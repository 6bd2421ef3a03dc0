"""
Event service tests: ingestion into both stores and issue-scoped queries.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from faultline.errors import DuplicateKeyError, NotFoundError
from faultline.models.issue import Issue
from faultline.schemas.event_body import EventBody, EventUser, ExceptionInfo, Frame, StackTrace
from faultline.normalize import fingerprint
from faultline.services.events import EventService, make_tags, make_user
from faultline.stores.analytics import AnalyticsStore
from faultline.stores.issues import IssueStore
from faultline.utils.timezone import as_utc

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = (NOW - timedelta(days=1), NOW + timedelta(minutes=1))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _event(n=1, message="", value="division by zero", minutes_ago=5, **kw):
    return EventBody(
        event_id=f"{n:032x}",
        timestamp=NOW - timedelta(minutes=minutes_ago),
        message=message,
        exception=[ExceptionInfo(
            type="ZeroDivisionError",
            value=value,
            stacktrace=StackTrace(frames=[Frame(module="app.billing", function="total", lineno=40, in_app=True)]),
        )],
        **kw,
    )


@pytest.fixture
def service(registry_session_factory, analytics_session_factory):
    return EventService(
        IssueStore(registry_session_factory),
        AnalyticsStore(analytics_session_factory),
        now=lambda: NOW,
    )


class TestTags:
    """Derived tag list written with every event."""

    def test_user(self):
        assert make_user(EventBody(event_id="a" * 32)) == ""
        assert make_user(EventBody(event_id="a" * 32, user=EventUser(id="42"))) == "id:42"

    def test_order(self):
        event = EventBody(
            event_id="a" * 32,
            environment="production",
            level="error",
            release="1.4.0",
            server_name="web-1",
            user=EventUser(id="42"),
            os_name="Linux",
            tags={"zone": "eu", "browser": "firefox", "empty": ""},
        )

        assert make_tags(event) == [
            ("env", "production"),
            ("level", "error"),
            ("release", "1.4.0"),
            ("server_name", "web-1"),
            ("user", "id:42"),
            ("os", "Linux"),
            ("browser", "firefox"),
            ("zone", "eu"),
        ]


class TestIngest:
    """Issue resolution and event append."""

    async def test_first_event_creates_issue(self, service):
        result = await service.ingest_event(1, _event())

        assert result.created_issue is True
        issue = await service.issue_store.get_issue_by_id(result.issue_id)
        assert issue.project_id == 1
        assert issue.error_type == "ZeroDivisionError"
        assert issue.message == "division by zero"
        assert issue.view == "app.billing in total"
        assert as_utc(issue.first_seen) == NOW

    async def test_same_error_groups(self, service):
        first = await service.ingest_event(1, _event(1, value="no row 1234567"))
        second = await service.ingest_event(1, _event(2, value="no row 7654321"))

        assert second.created_issue is False
        assert second.issue_id == first.issue_id

    async def test_other_project_separate_issue(self, service):
        first = await service.ingest_event(1, _event(1))
        second = await service.ingest_event(2, _event(2))

        assert second.issue_id != first.issue_id

    async def test_event_row_written(self, service):
        result = await service.ingest_event(1, _event(user=EventUser(id="7", email="a@example.com"), environment="prod"))

        total, events = await service.list_events(1, result.issue_id, "", *WINDOW)

        assert total == 1
        assert events[0].title == "ZeroDivisionError: division by zero"
        assert events[0].user == "id:7"
        assert events[0].env == "prod"

    async def test_existing_issue_updates_last_seen(self, registry_session_factory, analytics_session_factory):
        clock = [NOW]
        service = EventService(
            IssueStore(registry_session_factory), AnalyticsStore(analytics_session_factory),
            now=lambda: clock[0], cache_ttl=0,
        )
        result = await service.ingest_event(1, _event(1))

        clock[0] = NOW + timedelta(minutes=10)
        await service.ingest_event(1, _event(2))

        issue = await service.issue_store.get_issue_by_id(result.issue_id)
        assert as_utc(issue.first_seen) == NOW
        assert as_utc(issue.last_seen) == NOW + timedelta(minutes=10)

    async def test_cache_skips_lookup(self):
        issue_store = AsyncMock()
        issue_store.get_issue.side_effect = NotFoundError("issue not found")
        issue_store.store_issue.side_effect = lambda issue: _with_id(issue, 5)
        service = EventService(issue_store, AsyncMock(), now=lambda: NOW)

        await service.ingest_event(1, _event(1))
        await service.ingest_event(1, _event(2))

        assert issue_store.get_issue.await_count == 1
        assert issue_store.store_issue.await_count == 1
        issue_store.update_last_seen.assert_awaited_once_with(5, NOW)

    async def test_lost_create_race(self):
        existing = Issue(id=9, uuid="b" * 32, project_id=1, hash="x")
        issue_store = AsyncMock()
        issue_store.get_issue.side_effect = [NotFoundError("issue not found"), existing]
        issue_store.store_issue.side_effect = DuplicateKeyError("issue already exists")
        analytics_store = AsyncMock()
        service = EventService(issue_store, analytics_store, now=lambda: NOW)

        result = await service.ingest_event(1, _event())

        assert result.issue_id == 9
        assert result.created_issue is False
        issue_store.update_last_seen.assert_awaited_once_with(9, NOW)
        assert analytics_store.store_event.call_args.args[0].primary_hash == "b" * 32


def _with_id(issue, issue_id):
    issue.id = issue_id
    issue.uuid = "c" * 32
    return issue


class TestQueries:
    """Issue-scoped event lists and tag breakdowns."""

    async def _seed(self, service):
        result = await service.ingest_event(1, _event(1, message="disk full", environment="prod", release="1.0"))
        await service.ingest_event(1, _event(2, message="disk full", environment="prod", release="1.1", minutes_ago=4))
        await service.ingest_event(1, _event(3, message="timeout", environment="staging", release="1.1", minutes_ago=3))
        return result.issue_id

    async def test_list_events_filters(self, service):
        issue_id = await self._seed(service)

        total, events = await service.list_events(1, issue_id, "env:prod", *WINDOW)
        assert total == 2

        total, events = await service.list_events(1, issue_id, "disk !release:1.0", *WINDOW)
        assert total == 1
        assert events[0].event_id == f"{2:032x}"

    async def test_list_events_paging(self, service):
        issue_id = await self._seed(service)

        total, events = await service.list_events(1, issue_id, "", *WINDOW, offset=1, limit=1)

        assert total == 3
        assert [e.event_id for e in events] == [f"{2:032x}"]

    async def test_list_events_empty(self, service):
        issue_id = await self._seed(service)

        assert await service.list_events(1, issue_id, "env:nowhere", *WINDOW) == (0, [])

    async def test_list_fields_percentages(self, service):
        issue_id = await self._seed(service)

        totals, values = await service.list_fields(1, issue_id, *WINDOW)

        assert {t.tag: t.count for t in totals}["env"] == 3
        env = {v.value: v for v in values if v.tag == "env"}
        assert env["prod"].count == 2
        assert env["prod"].percent_of_total == pytest.approx(200 / 3)
        assert env["staging"].percent_of_total == pytest.approx(100 / 3)

    async def test_search_issue_ids(self, service):
        issue_id = await self._seed(service)
        other = await service.ingest_event(1, EventBody(event_id="f" * 32, timestamp=NOW, message="unrelated", level="warning"))

        assert await service.search_issue_ids("release:1.1", [1], *WINDOW) == [issue_id]
        assert await service.search_issue_ids("unrelated", [1], *WINDOW) == [other.issue_id]
        assert await service.search_issue_ids("", [2], *WINDOW) == []


def _mock_issue_store():
    issue_store = AsyncMock()
    issue_store.get_issue.side_effect = NotFoundError("issue not found")
    ids = iter(range(1, 10_000))

    def store(issue):
        return _with_id(issue, next(ids))

    issue_store.store_issue.side_effect = store
    return issue_store


def _message_event(i):
    # Letters only, so every message normalizes to a distinct fingerprint
    suffix = chr(97 + i % 26) + chr(97 + i // 26)
    return EventBody(event_id=f"{i:032x}", timestamp=NOW, message=f"queue worker failure {suffix}")


class TestIssueCache:
    """The fingerprint -> issue cache stays bounded."""

    async def test_expired_entries_leave_the_cache(self):
        clock = [0.0]
        service = EventService(
            _mock_issue_store(), AsyncMock(), now=lambda: NOW, cache_ttl=300, clock=lambda: clock[0],
        )

        for i in range(50):
            await service.ingest_event(1, _message_event(i))
            clock[0] += 301

        assert len(service._issue_cache) == 1

    async def test_live_entries_kept(self):
        clock = [0.0]
        service = EventService(
            _mock_issue_store(), AsyncMock(), now=lambda: NOW, cache_ttl=300, clock=lambda: clock[0],
        )

        for i in range(5):
            await service.ingest_event(1, _message_event(i))
            clock[0] += 10

        assert len(service._issue_cache) == 5

    async def test_size_cap_evicts_oldest(self):
        service = EventService(
            _mock_issue_store(), AsyncMock(), now=lambda: NOW, max_cache_entries=10, clock=lambda: 0.0,
        )

        for i in range(25):
            await service.ingest_event(1, _message_event(i))

        assert len(service._issue_cache) == 10
        newest = f"1:{fingerprint(_message_event(24))}"
        oldest = f"1:{fingerprint(_message_event(0))}"
        assert newest in service._issue_cache
        assert oldest not in service._issue_cache

    async def test_key_lock_released_when_lookup_fails(self):
        issue_store = AsyncMock()
        issue_store.get_issue.side_effect = RuntimeError("registry down")
        service = EventService(issue_store, AsyncMock(), now=lambda: NOW)

        with pytest.raises(RuntimeError):
            await service.ingest_event(1, _message_event(0))

        assert service._key_locks == {}
        assert service._issue_cache == {}
