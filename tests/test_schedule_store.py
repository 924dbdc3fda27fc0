from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_payload
from offboard_scheduler.errors import InvalidState, NotFound, StoreError, ValidationError
from offboard_scheduler.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_SCHEDULED,
    StepResult,
)
from offboard_scheduler.schedule_store import ScheduledOffboardingStore


def test_create_and_get(store, scope, payload):
    created = store.create(scope, payload)

    fetched = store.get(created.id, scope)

    assert fetched == created
    assert fetched.status == STATUS_SCHEDULED


def test_list_orders_soonest_first(store, scope):
    later = store.create(scope, make_payload(scheduledDate="2030-05-01"))
    sooner = store.create(scope, make_payload(scheduledDate="2030-04-01"))

    assert [record.id for record in store.list(scope)] == [sooner.id, later.id]


def test_list_filters_by_status(store, scope):
    first = store.create(scope, make_payload())
    store.create(scope, make_payload())
    store.claim(first.id, scope)

    assert [record.id for record in store.list(scope, status=STATUS_IN_PROGRESS)] == [first.id]
    assert len(store.list(scope, status=STATUS_SCHEDULED)) == 1
    with pytest.raises(ValidationError, match="Unknown status 'paused'"):
        store.list(scope, status="paused")


def test_no_cross_tenant_visibility(store, scope, other_scope, payload):
    record = store.create(scope, payload)

    assert store.list(other_scope) == []
    with pytest.raises(NotFound):
        store.get(record.id, other_scope)
    with pytest.raises(NotFound):
        store.update(record.id, other_scope, {"scheduledTime": "08:00"})
    with pytest.raises(NotFound):
        store.claim(record.id, other_scope)
    assert store.remove(record.id, other_scope) is False

    assert store.get(record.id, scope) == record


def test_update_shifts_instant_and_persists(store, scope, payload):
    record = store.create(scope, payload)

    updated = store.update(record.id, scope, {"scheduledTime": "18:30"})

    reloaded = ScheduledOffboardingStore(store.path).get(record.id, scope)
    assert reloaded.scheduled_at == record.scheduled_at + timedelta(hours=1, minutes=30)
    assert reloaded == updated


def test_failed_update_leaves_record_unchanged(store, scope, payload):
    record = store.create(scope, payload)

    with pytest.raises(ValidationError):
        store.update(record.id, scope, {"scheduledTime": "99:99"})

    assert store.get(record.id, scope) == record


def test_terminal_records_are_immutable(store, scope, payload):
    record = store.create(scope, payload)
    store.claim(record.id, scope)
    store.record_result(record.id, STATUS_COMPLETED, [StepResult("Disable Account", "success", "Account disabled")])

    with pytest.raises(InvalidState):
        store.update(record.id, scope, {"scheduledTime": "08:00"})
    with pytest.raises(InvalidState):
        store.claim(record.id, scope)
    assert store.get(record.id, scope).status == STATUS_COMPLETED

    assert store.remove(record.id, scope) is True
    with pytest.raises(NotFound):
        store.get(record.id, scope)


def test_update_rejected_while_in_progress(store, scope, payload):
    record = store.create(scope, payload)
    store.claim(record.id, scope)

    with pytest.raises(InvalidState) as excinfo:
        store.update(record.id, scope, {"scheduledTime": "08:00"})

    assert excinfo.value.status == STATUS_IN_PROGRESS


def test_claim_records_executor_and_time(store, scope, payload):
    record = store.create(scope, payload)
    now = datetime(2030, 3, 14, 16, 0, tzinfo=timezone.utc)

    claimed = store.claim(record.id, scope, executed_by="operator@contoso.com", now=now)

    assert claimed.status == STATUS_IN_PROGRESS
    assert claimed.executed_at == now
    assert claimed.executed_by == "operator@contoso.com"


def test_concurrent_claims_have_exactly_one_winner(tmp_path, scope, payload):
    path = tmp_path / "scheduled_offboardings.json"
    record = ScheduledOffboardingStore(path).create(scope, payload)
    barrier = threading.Barrier(10)
    winners = []
    losers = []

    def attempt():
        # Separate store instances share the per-file lock.
        store = ScheduledOffboardingStore(path)
        barrier.wait()
        try:
            winners.append(store.claim(record.id, scope))
        except InvalidState:
            losers.append(True)

    threads = [threading.Thread(target=attempt) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert len(losers) == 9


def test_record_result_requires_claim(store, scope, payload):
    record = store.create(scope, payload)

    with pytest.raises(InvalidState):
        store.record_result(record.id, STATUS_COMPLETED, [])
    with pytest.raises(ValueError):
        store.record_result(record.id, STATUS_SCHEDULED, [])


def test_due_returns_past_records_across_tenants(store, scope, other_scope):
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    second = store.create(scope, make_payload(scheduledDate="2029-12-31", scheduledTime="12:00", timezone="UTC"))
    first = store.create(other_scope, make_payload(scheduledDate="2029-12-30", scheduledTime="12:00", timezone="UTC"))
    store.create(scope, make_payload(scheduledDate="2030-01-02", timezone="UTC"))
    claimed = store.create(scope, make_payload(scheduledDate="2029-12-29", timezone="UTC"))
    store.claim(claimed.id, scope)

    due = store.due(now=now)

    assert [record.id for record in due] == [first.id, second.id]
    assert [record.id for record in store.due(now=now, limit=1)] == [first.id]


def test_recover_interrupted_fails_stale_runs(store, scope):
    stale = store.create(scope, make_payload())
    fresh = store.create(scope, make_payload())
    now = datetime(2030, 3, 14, 18, 0, tzinfo=timezone.utc)
    store.claim(stale.id, scope, now=now - timedelta(hours=2))
    store.claim(fresh.id, scope, now=now - timedelta(minutes=5))

    recovered = store.recover_interrupted(timedelta(hours=1), now=now)

    assert recovered == [stale.id]
    failed = store.get(stale.id, scope)
    assert failed.status == STATUS_FAILED
    assert "interrupted" in failed.error
    assert store.get(fresh.id, scope).status == STATUS_IN_PROGRESS


def test_late_result_replaces_interrupted_marker(store, scope):
    record = store.create(scope, make_payload())
    store.claim(record.id, scope)
    store.recover_interrupted(timedelta(0))
    results = [StepResult("Disable Account", "success", "Account disabled")]

    finished = store.record_result(record.id, STATUS_COMPLETED, results)

    assert finished.status == STATUS_COMPLETED
    assert finished.error is None
    assert store.get(record.id, scope).results == results
    with pytest.raises(InvalidState):
        store.record_result(record.id, STATUS_FAILED, [])


def test_corrupt_file_raises_store_error(tmp_path, scope):
    path = tmp_path / "scheduled_offboardings.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreError):
        ScheduledOffboardingStore(path).list(scope)
