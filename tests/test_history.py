from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_payload
from offboard_scheduler.errors import StoreError
from offboard_scheduler.history import AUDIT_SCHEDULE, OffboardingHistory
from offboard_scheduler.models import STATUS_COMPLETED, STATUS_FAILED, StepResult, new_schedule


def _finished(scope, minutes=0, status=STATUS_COMPLETED, **overrides):
    record = new_schedule(scope, make_payload(**overrides))
    started = datetime(2030, 3, 14, 16, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return replace(
        record,
        status=status,
        executed_at=started,
        executed_by="operator@contoso.com",
        finished_at=started + timedelta(seconds=30),
    )


def test_execution_entries_count_step_outcomes(history, scope):
    results = [
        StepResult("Disable Account", "success", "Account disabled"),
        StepResult("Revoke Sessions", "error", "timeout"),
        StepResult("Group Membership", "success", "Removed from 4 groups"),
    ]

    entry = history.log_execution(_finished(scope, status=STATUS_FAILED), results)

    stored = history.executions(scope)[0]
    assert stored.id == entry.id
    assert (stored.total_steps, stored.successful_steps, stored.failed_steps) == (3, 2, 1)
    assert stored.results == results
    assert stored.started_at == datetime(2030, 3, 14, 16, 0, tzinfo=timezone.utc)


def test_executions_are_newest_first_and_filterable(history, scope, other_scope):
    first = _finished(scope, minutes=0)
    second = _finished(scope, minutes=10, userId="user-2")
    history.log_execution(first, [])
    history.log_execution(second, [])
    history.log_execution(_finished(other_scope, minutes=20), [])

    assert [entry.schedule_id for entry in history.executions(scope)] == [second.id, first.id]
    assert [entry.schedule_id for entry in history.executions(scope, user_id="user-2")] == [second.id]
    assert [entry.schedule_id for entry in history.executions(scope, schedule_id=first.id)] == [first.id]
    assert len(history.executions(scope, limit=1)) == 1
    assert len(history.executions(other_scope)) == 1


def test_audit_trail_is_scoped_to_tenant(history, scope, other_scope):
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    history.audit(scope, AUDIT_SCHEDULE, "abc", "Scheduled offboarding", now=now)
    history.audit(other_scope, AUDIT_SCHEDULE, "def", "Scheduled offboarding", now=now)

    (entry,) = history.audit_trail(scope)

    assert entry.schedule_id == "abc"
    assert entry.actor == "admin@contoso.com"
    assert entry.timestamp == now


def test_history_survives_a_new_instance(tmp_path, scope):
    path = tmp_path / "offboarding_history.json"
    OffboardingHistory(path).log_execution(_finished(scope), [])

    assert len(OffboardingHistory(path).executions(scope)) == 1


def test_corrupt_history_raises_store_error(tmp_path, scope):
    path = tmp_path / "offboarding_history.json"
    path.write_text("[oops", encoding="utf-8")

    with pytest.raises(StoreError):
        OffboardingHistory(path).executions(scope)
