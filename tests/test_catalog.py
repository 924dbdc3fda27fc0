from __future__ import annotations

import pytest

from offboard_scheduler.catalog import (
    CustomActions,
    TemplateActions,
    action_config_from_dict,
    expand,
    list_templates,
)
from offboard_scheduler.errors import UnknownTemplate, ValidationError


def _labels(steps):
    return [step.label for step in steps]


def test_standard_template_expansion():
    steps = expand(TemplateActions("standard"))

    assert _labels(steps) == [
        "Disable Account",
        "Revoke Sessions",
        "Group Membership",
        "Backup Data",
        "Remove Devices",
    ]


def test_executive_template_converts_mailbox_instead_of_removing_groups():
    keys = [step.key for step in expand(TemplateActions("executive"))]

    assert "convertToSharedMailbox" in keys
    assert "removeFromGroups" not in keys


def test_contractor_template_removes_devices_but_keeps_mailbox():
    keys = [step.key for step in expand(TemplateActions("contractor"))]

    assert keys == ["disableAccount", "revokeAccess", "removeFromGroups", "removeDevices"]


def test_notifications_run_last_manager_first():
    steps = expand(TemplateActions("contractor"), notify_manager=True, notify_user=True)

    assert _labels(steps)[-2:] == ["Notify Manager", "Notify User"]


def test_custom_actions_follow_catalog_order_not_input_order():
    actions = CustomActions.from_flags({"removeDevices": True, "backupData": True, "disableAccount": True})

    assert _labels(expand(actions)) == ["Disable Account", "Backup Data", "Remove Devices"]


def test_custom_actions_ignore_unknown_and_false_flags():
    actions = CustomActions.from_flags({"disableAccount": True, "revokeAccess": False, "wipeLaptop": True})

    assert actions.enabled == ("disableAccount",)
    assert actions.flags()["revokeAccess"] is False


def test_action_config_from_request_and_storage_keys():
    from_request = action_config_from_dict({"useCustomActions": True, "customActions": {"revokeAccess": True}})
    from_storage = action_config_from_dict({"use_custom_actions": True, "custom_actions": {"revokeAccess": True}})

    assert from_request == from_storage == CustomActions(enabled=("revokeAccess",))
    assert action_config_from_dict({"template": "security"}) == TemplateActions("security")


def test_unknown_template():
    with pytest.raises(UnknownTemplate) as excinfo:
        action_config_from_dict({"template": "intern"})

    assert excinfo.value.template_id == "intern"


def test_action_config_requires_template_or_custom_actions():
    with pytest.raises(ValidationError):
        action_config_from_dict({})
    with pytest.raises(ValidationError):
        action_config_from_dict({"useCustomActions": True, "customActions": "all"})


def test_list_templates():
    templates = {entry["id"]: entry for entry in list_templates()}

    assert set(templates) == {"standard", "executive", "contractor", "security"}
    assert templates["security"]["steps"] == [
        "Disable Account",
        "Revoke Sessions",
        "Group Membership",
        "Remove Devices",
    ]
