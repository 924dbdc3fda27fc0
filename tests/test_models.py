from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import make_payload
from offboard_scheduler.catalog import CustomActions, TemplateActions
from offboard_scheduler.errors import ValidationError
from offboard_scheduler.models import (
    STATUS_SCHEDULED,
    ScheduledOffboarding,
    Subject,
    apply_patch,
    new_schedule,
)


def test_subject_accepts_flat_and_nested_user_fields():
    flat = Subject.from_request({"userId": "u1", "userName": "Jane", "userEmail": "jane@contoso.com"})
    nested = Subject.from_request({"user": {"id": "u1", "displayName": "Jane", "mail": "jane@contoso.com"}})

    assert flat == nested == Subject("u1", "Jane", "jane@contoso.com")


def test_subject_lookup_falls_back_to_user_id():
    assert Subject("u1").lookup == "u1"
    assert Subject("u1", email="jane@contoso.com").lookup == "jane@contoso.com"


def test_subject_requires_user_id():
    with pytest.raises(ValidationError, match="userId"):
        Subject.from_request({"userDisplayName": "Nobody"})


def test_new_schedule_records_scope_and_instant(scope):
    record = new_schedule(scope, make_payload(scheduledTime="9:30"))

    assert record.status == STATUS_SCHEDULED
    assert record.tenant_id == "tenant-a"
    assert record.session_id == "session-1"
    assert record.created_by == "admin@contoso.com"
    assert record.scheduled_time == "09:30"
    assert record.actions == TemplateActions("standard")
    assert record.scheduled_at.utcoffset() == timedelta(0)


@pytest.mark.parametrize("missing", ["scheduledDate", "scheduledTime", "timezone"])
def test_new_schedule_requires_schedule_fields(scope, missing):
    payload = make_payload()
    payload.pop(missing)

    with pytest.raises(ValidationError, match=missing):
        new_schedule(scope, payload)


def test_notifications_default_to_known_recipients(scope):
    payload = make_payload()
    del payload["notifyManager"], payload["notifyUser"]

    without_manager = new_schedule(scope, payload)
    with_manager = new_schedule(scope, {**payload, "managerEmail": "boss@contoso.com"})
    without_email = new_schedule(scope, {**payload, "userEmail": None})

    assert (without_manager.notify_manager, without_manager.notify_user) == (False, True)
    assert (with_manager.notify_manager, with_manager.notify_user) == (True, True)
    assert (without_email.notify_manager, without_email.notify_user) == (False, False)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"notifyManager": True}, "managerEmail"),
        ({"notifyUser": True, "userEmail": None}, "userEmail"),
    ],
)
def test_new_schedule_rejects_notification_without_recipient(scope, overrides, message):
    with pytest.raises(ValidationError, match=message):
        new_schedule(scope, make_payload(**overrides))


def test_patch_cannot_drop_manager_while_notifying(scope):
    record = new_schedule(scope, make_payload(notifyManager=True, managerEmail="boss@contoso.com"))

    with pytest.raises(ValidationError, match="managerEmail"):
        apply_patch(record, {"managerEmail": ""})
    assert apply_patch(record, {"managerEmail": "", "notifyManager": False}).manager_email is None


def test_storage_round_trip_preserves_record(scope):
    record = new_schedule(
        scope,
        make_payload(useCustomActions=True, customActions={"disableAccount": True}, managerEmail="boss@contoso.com"),
    )

    restored = ScheduledOffboarding.from_dict(record.to_dict())

    assert restored == record


def test_patch_time_shifts_instant(scope):
    record = new_schedule(scope, make_payload())

    patched = apply_patch(record, {"scheduledTime": "18:30"})

    assert patched.scheduled_at - record.scheduled_at == timedelta(hours=1, minutes=30)
    assert patched.scheduled_date == record.scheduled_date
    assert record.scheduled_time == "17:00"


def test_patch_timezone_recomputes_instant(scope):
    record = new_schedule(scope, make_payload(timezone="UTC"))

    patched = apply_patch(record, {"timezone": "America/New_York"})

    # New York is UTC-4 in March 2030 after the US change on the 10th.
    assert patched.scheduled_at - record.scheduled_at == timedelta(hours=4)


def test_patch_switches_between_template_and_custom_actions(scope):
    record = new_schedule(scope, make_payload())

    custom = apply_patch(record, {"useCustomActions": True, "customActions": {"revokeAccess": True}})
    back = apply_patch(custom, {"template": "security"})

    assert custom.actions == CustomActions(enabled=("revokeAccess",))
    assert back.actions == TemplateActions("security")


def test_patch_actions_alias_replaces_custom_flags(scope):
    record = new_schedule(scope, make_payload(useCustomActions=True, customActions={"disableAccount": True}))

    patched = apply_patch(record, {"actions": {"removeDevices": True}})

    assert patched.actions == CustomActions(enabled=("removeDevices",))


def test_patch_without_known_fields_is_rejected(scope):
    record = new_schedule(scope, make_payload())

    with pytest.raises(ValidationError, match="No valid fields"):
        apply_patch(record, {"status": "completed"})


def test_patch_with_invalid_timezone_is_rejected(scope):
    record = new_schedule(scope, make_payload())

    with pytest.raises(ValidationError):
        apply_patch(record, {"timezone": "Nowhere/Special"})
