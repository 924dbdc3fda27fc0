"""Shared fixtures for the scheduled offboarding tests."""
from __future__ import annotations

from typing import Any, Dict
from unittest.mock import MagicMock

import pytest

from offboard_scheduler.adapters import Adapters
from offboard_scheduler.engine import OffboardingScheduler
from offboard_scheduler.history import OffboardingHistory
from offboard_scheduler.models import Scope
from offboard_scheduler.schedule_store import ScheduledOffboardingStore


@pytest.fixture
def scope() -> Scope:
    return Scope(tenant_id="tenant-a", session_id="session-1", owner_id="admin@contoso.com")


@pytest.fixture
def other_scope() -> Scope:
    return Scope(tenant_id="tenant-b", session_id="session-2", owner_id="admin@fabrikam.com")


@pytest.fixture
def store(tmp_path) -> ScheduledOffboardingStore:
    return ScheduledOffboardingStore(tmp_path / "scheduled_offboardings.json")


@pytest.fixture
def history(tmp_path) -> OffboardingHistory:
    return OffboardingHistory(tmp_path / "offboarding_history.json")


def make_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "userId": "3f2a9c1e-0000-4000-8000-000000000001",
        "userDisplayName": "Jane Doe",
        "userEmail": "jane.doe@contoso.com",
        "scheduledDate": "2030-03-14",
        "scheduledTime": "17:00",
        "timezone": "Europe/Berlin",
        "template": "standard",
        "notifyManager": False,
        "notifyUser": False,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def payload() -> Dict[str, Any]:
    return make_payload()


def make_adapters() -> Adapters:
    directory = MagicMock(name="directory")
    directory.ensure_subject.return_value = None
    directory.disable_account.return_value = "Account disabled"
    directory.revoke_sessions.return_value = "User sessions revoked"
    directory.remove_from_all_groups.return_value = "Removed from 4 groups"
    directory.remove_devices.return_value = "Retired 1 managed devices"
    mailbox = MagicMock(name="mailbox")
    mailbox.convert_to_shared_mailbox.return_value = "Mailbox converted to shared"
    mailbox.backup_mailbox_data.return_value = "Litigation hold enabled; mailbox data preserved"
    notifier = MagicMock(name="notifier")
    notifier.notify.side_effect = lambda recipient, context: f"Notification sent to {recipient}"
    return Adapters(directory=directory, mailbox=mailbox, notifier=notifier)


@pytest.fixture
def adapters() -> Adapters:
    return make_adapters()


@pytest.fixture
def scheduler(store, adapters, history) -> OffboardingScheduler:
    return OffboardingScheduler(store, lambda scope: adapters, step_timeout=5, history=history)
