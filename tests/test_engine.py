from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_payload
from offboard_scheduler.engine import SYSTEM_EXECUTOR, OffboardingScheduler
from offboard_scheduler.errors import InvalidState, NotFound, StepExecutionError, UnrecoverableError
from offboard_scheduler.models import STATUS_COMPLETED, STATUS_FAILED


def test_execute_standard_template(scheduler, scope, payload):
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope, executed_by="operator@contoso.com")

    assert outcome.schedule.status == STATUS_COMPLETED
    assert len(outcome.results) == 5
    stored = scheduler.get(record.id, scope)
    assert stored.status == STATUS_COMPLETED
    assert stored.executed_at is not None
    assert stored.finished_at >= stored.executed_at
    assert stored.executed_by == "operator@contoso.com"
    assert stored.results == outcome.results
    assert stored.error is None


def test_partial_failure_marks_record_failed(scheduler, adapters, scope, payload):
    adapters.directory.remove_devices.side_effect = StepExecutionError("Intune is unavailable")
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope)

    assert outcome.schedule.status == STATUS_FAILED
    assert len(outcome.results) == 5
    assert outcome.schedule.error == "1 step(s) failed: Remove Devices"
    assert outcome.schedule.executed_at is not None


def test_double_execute_runs_side_effects_once(scheduler, adapters, scope, payload):
    record = scheduler.create(scope, payload)
    scheduler.execute(record.id, scope)

    with pytest.raises(InvalidState):
        scheduler.execute(record.id, scope)

    adapters.directory.disable_account.assert_called_once()


def test_execute_other_tenant_is_not_found(scheduler, adapters, scope, other_scope, payload):
    record = scheduler.create(scope, payload)

    with pytest.raises(NotFound):
        scheduler.execute(record.id, other_scope)

    adapters.directory.disable_account.assert_not_called()
    assert scheduler.get(record.id, scope).status == "scheduled"


def test_missing_subject_fails_without_running_steps(scheduler, adapters, scope, payload):
    adapters.directory.ensure_subject.side_effect = UnrecoverableError("User no longer exists in Microsoft 365.")
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope)

    assert outcome.results == []
    assert outcome.schedule.status == STATUS_FAILED
    assert outcome.schedule.error == "User no longer exists in Microsoft 365."
    adapters.directory.disable_account.assert_not_called()


def test_adapter_factory_failure_is_unrecoverable(store, scope, payload):
    def broken_factory(scope):
        raise RuntimeError("credentials could not be decrypted")

    scheduler = OffboardingScheduler(store, broken_factory)
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope)

    assert outcome.schedule.status == STATUS_FAILED
    assert "credentials could not be decrypted" in outcome.schedule.error


def test_run_due_executes_past_records_as_system(scheduler, scope, other_scope):
    due_a = scheduler.create(scope, make_payload(scheduledDate="2029-12-31", timezone="UTC"))
    due_b = scheduler.create(other_scope, make_payload(scheduledDate="2029-12-30", timezone="UTC"))
    future = scheduler.create(scope, make_payload(scheduledDate="2030-06-01", timezone="UTC"))

    processed = scheduler.run_due(now=datetime(2030, 1, 1, tzinfo=timezone.utc))

    assert list(processed) == [due_b.id, due_a.id]
    assert set(processed.values()) == {STATUS_COMPLETED}
    assert scheduler.get(due_a.id, scope).executed_by == SYSTEM_EXECUTOR
    assert scheduler.get(due_b.id, other_scope).tenant_id == "tenant-b"
    assert scheduler.get(future.id, scope).status == "scheduled"


def test_run_due_skips_records_claimed_elsewhere(scheduler, store, scope):
    record = scheduler.create(scope, make_payload(scheduledDate="2029-12-31", timezone="UTC"))
    stale = store.due(now=datetime(2030, 1, 1, tzinfo=timezone.utc))
    store.claim(record.id, scope)
    store.due = lambda now=None, limit=None: stale

    assert scheduler.run_due(now=datetime(2030, 1, 1, tzinfo=timezone.utc)) == {}


def test_run_due_respects_limit(scheduler, scope):
    for day in ("2029-12-28", "2029-12-29", "2029-12-30"):
        scheduler.create(scope, make_payload(scheduledDate=day, timezone="UTC"))

    processed = scheduler.run_due(now=datetime(2030, 1, 1, tzinfo=timezone.utc), limit=2)

    assert len(processed) == 2
    assert len(scheduler.list(scope, status="scheduled")) == 1


def test_default_notifications_complete_with_known_recipients(scheduler, adapters, scope):
    payload = make_payload(scheduledDate="2025-06-01", scheduledTime="09:00", timezone="America/New_York")
    del payload["notifyManager"], payload["notifyUser"]
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope)

    assert outcome.schedule.status == STATUS_COMPLETED
    assert [result.action for result in outcome.results][-1] == "Notify User"
    assert "Notify Manager" not in [result.action for result in outcome.results]
    adapters.notifier.notify.assert_called_once()
    assert adapters.notifier.notify.call_args.args[0] == "jane.doe@contoso.com"


def test_results_survive_recovery_during_a_long_run(scheduler, store, adapters, scope, payload):
    def disable_while_recovery_runs(subject):
        store.recover_interrupted(timedelta(0))
        return "Account disabled"

    adapters.directory.disable_account.side_effect = disable_while_recovery_runs
    record = scheduler.create(scope, payload)

    outcome = scheduler.execute(record.id, scope)

    assert outcome.schedule.status == STATUS_COMPLETED
    assert len(outcome.results) == 5
    stored = scheduler.get(record.id, scope)
    assert stored.status == STATUS_COMPLETED
    assert stored.error is None
    assert stored.results == outcome.results


def test_results_are_returned_when_record_is_deleted_mid_run(scheduler, store, adapters, scope, payload):
    record = scheduler.create(scope, payload)

    def delete_then_retire(subject):
        store.remove(record.id, scope)
        return "Retired 1 managed devices"

    adapters.directory.remove_devices.side_effect = delete_then_retire

    outcome = scheduler.execute(record.id, scope)

    assert outcome.schedule.status == STATUS_COMPLETED
    assert len(outcome.results) == 5
    assert [entry.schedule_id for entry in scheduler.executions(scope)] == [record.id]


def test_execution_log_outlives_the_record(scheduler, adapters, scope, other_scope, payload):
    adapters.directory.remove_devices.side_effect = StepExecutionError("Intune is unavailable")
    record = scheduler.create(scope, payload)
    scheduler.execute(record.id, scope, executed_by="operator@contoso.com")
    scheduler.remove(record.id, scope)

    (entry,) = scheduler.executions(scope, schedule_id=record.id)

    assert entry.status == STATUS_FAILED
    assert (entry.total_steps, entry.successful_steps, entry.failed_steps) == (5, 4, 1)
    assert entry.executed_by == "operator@contoso.com"
    assert entry.user_id == payload["userId"]
    assert scheduler.executions(other_scope) == []


def test_audit_trail_records_each_change(scheduler, scope, payload):
    record = scheduler.create(scope, payload)
    scheduler.update(record.id, scope, {"scheduledTime": "18:00"})
    scheduler.execute(record.id, scope)
    scheduler.remove(record.id, scope)

    actions = [entry.action for entry in reversed(scheduler.audit_trail(scope, schedule_id=record.id))]

    assert actions == ["schedule_offboarding", "update_offboarding", "execute_offboarding", "delete_offboarding"]
    assert {entry.actor for entry in scheduler.audit_trail(scope)} == {"admin@contoso.com"}
