"""
Unit of work tests: one registry transaction across stores.
"""
from datetime import datetime, timezone

import pytest

from faultline.errors import DuplicateKeyError, NotFoundError
from faultline.models.alert import Alert
from faultline.models.issue import Issue
from faultline.stores.alerts import AlertStore
from faultline.stores.issues import IssueStore
from faultline.uow import current_unit_of_work, run_in_unit_of_work, unit_of_work

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _alert(**kw):
    return Alert(team_id=1, project_id=1, rule_name="rule", threshold=5, created_at=NOW, updated_at=NOW, **kw)


def _issue(hash="a" * 32):
    return Issue(project_id=1, hash=hash, first_seen=NOW, last_seen=NOW)


class TestUnitOfWork:
    """Commit on success, roll back on anything else."""

    async def test_commits_on_success(self, registry_session_factory):
        async with unit_of_work(registry_session_factory) as uow:
            alert = await uow.alerts.create_alert(_alert())
            await uow.issues.store_issue(_issue())

        assert (await AlertStore(registry_session_factory).get_alert(alert.id)).rule_name == "rule"
        assert (await IssueStore(registry_session_factory).get_issue(1, "a" * 32)) is not None

    async def test_rolls_back_on_error(self, registry_session_factory):
        alert_id = None
        with pytest.raises(RuntimeError):
            async with unit_of_work(registry_session_factory) as uow:
                alert = await uow.alerts.create_alert(_alert())
                alert_id = alert.id
                raise RuntimeError("boom")

        with pytest.raises(NotFoundError):
            await AlertStore(registry_session_factory).get_alert(alert_id)

    async def test_store_error_rolls_back_earlier_writes(self, registry_session_factory):
        with pytest.raises(DuplicateKeyError):
            async with unit_of_work(registry_session_factory) as uow:
                await uow.alerts.create_alert(_alert())
                await uow.issues.store_issue(_issue())
                await uow.issues.store_issue(_issue())

        alerts, total = await AlertStore(registry_session_factory).list_alerts([], "", 0, 10)
        assert total == 0

    async def test_stores_outside_join_current(self, registry_session_factory):
        store = AlertStore(registry_session_factory)

        with pytest.raises(RuntimeError):
            async with unit_of_work(registry_session_factory):
                await store.create_alert(_alert())
                raise RuntimeError("boom")

        _, total = await store.list_alerts([], "", 0, 10)
        assert total == 0

    async def test_nested_reuses_outer(self, registry_session_factory):
        async with unit_of_work(registry_session_factory) as outer:
            async with unit_of_work(registry_session_factory) as inner:
                assert inner is outer
                assert current_unit_of_work() is outer

        assert current_unit_of_work() is None

    async def test_run_in_unit_of_work_returns_result(self, registry_session_factory):
        async def create(uow):
            alert = await uow.alerts.create_alert(_alert())
            return alert.id

        alert_id = await run_in_unit_of_work(registry_session_factory, create)

        assert (await AlertStore(registry_session_factory).get_alert(alert_id)).id == alert_id

    async def test_standalone_store_call_commits(self, registry_session_factory):
        store = AlertStore(registry_session_factory)
        alert = await store.create_alert(_alert())

        assert current_unit_of_work() is None
        assert (await store.get_alert(alert.id)).id == alert.id
