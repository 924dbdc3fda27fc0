"""Static catalog of offboarding steps and the templates that select them."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

from .errors import UnknownTemplate, ValidationError

CAPABILITY_ACCOUNT = "account"
CAPABILITY_GROUPS = "groups"
CAPABILITY_MAILBOX = "mailbox"
CAPABILITY_DEVICES = "devices"
CAPABILITY_NOTIFICATION = "notification"


@dataclass(frozen=True)
class Step:
    """One independently-failable unit of work within an execution."""

    key: str
    label: str
    capability: str


# Fixed execution order: account, groups, mailbox, devices, notification.
STEPS: Tuple[Step, ...] = (
    Step("disableAccount", "Disable Account", CAPABILITY_ACCOUNT),
    Step("revokeAccess", "Revoke Sessions", CAPABILITY_ACCOUNT),
    Step("removeFromGroups", "Group Membership", CAPABILITY_GROUPS),
    Step("convertToSharedMailbox", "Convert Mailbox", CAPABILITY_MAILBOX),
    Step("backupData", "Backup Data", CAPABILITY_MAILBOX),
    Step("removeDevices", "Remove Devices", CAPABILITY_DEVICES),
    Step("notifyManager", "Notify Manager", CAPABILITY_NOTIFICATION),
    Step("notifyUser", "Notify User", CAPABILITY_NOTIFICATION),
)
STEPS_BY_KEY: Dict[str, Step] = {step.key: step for step in STEPS}

CUSTOM_ACTION_FLAGS: Tuple[str, ...] = (
    "disableAccount",
    "revokeAccess",
    "removeFromGroups",
    "convertToSharedMailbox",
    "backupData",
    "removeDevices",
)


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    description: str
    steps: Tuple[str, ...]


TEMPLATES: Dict[str, Template] = {
    template.id: template
    for template in (
        Template(
            "standard",
            "Standard Offboarding",
            "Basic offboarding for most employees",
            ("disableAccount", "revokeAccess", "removeFromGroups", "backupData", "removeDevices"),
        ),
        Template(
            "executive",
            "Executive Offboarding",
            "Enhanced offboarding for executives with data preservation",
            ("disableAccount", "revokeAccess", "convertToSharedMailbox", "backupData", "removeDevices"),
        ),
        Template(
            "contractor",
            "Contractor Offboarding",
            "Quick offboarding for temporary contractors",
            ("disableAccount", "revokeAccess", "removeFromGroups", "removeDevices"),
        ),
        Template(
            "security",
            "Security Critical Offboarding",
            "Immediate offboarding for security concerns",
            ("disableAccount", "revokeAccess", "removeFromGroups", "removeDevices"),
        ),
    )
}


@dataclass(frozen=True)
class TemplateActions:
    """Steps chosen by naming a catalog template."""

    template_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"template": self.template_id, "use_custom_actions": False, "custom_actions": None}


@dataclass(frozen=True)
class CustomActions:
    """Steps chosen individually through boolean flags."""

    enabled: Tuple[str, ...] = ()

    @classmethod
    def from_flags(cls, flags: Mapping[str, Any]) -> "CustomActions":
        return cls(enabled=tuple(key for key in CUSTOM_ACTION_FLAGS if _truthy(flags.get(key))))

    def flags(self) -> Dict[str, bool]:
        return {key: key in self.enabled for key in CUSTOM_ACTION_FLAGS}

    def to_dict(self) -> Dict[str, Any]:
        return {"template": None, "use_custom_actions": True, "custom_actions": self.flags()}


ActionConfig = Union[TemplateActions, CustomActions]


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def action_config_from_dict(data: Mapping[str, Any]) -> ActionConfig:
    """Build the action configuration from request or storage data.

    Accepts both the API's camelCase keys and the stored snake_case keys.
    """

    use_custom = data.get("useCustomActions", data.get("use_custom_actions"))
    if _truthy(use_custom):
        flags = data.get("customActions", data.get("custom_actions", data.get("actions")))
        if not isinstance(flags, Mapping):
            raise ValidationError("customActions must be an object when useCustomActions is set.")
        return CustomActions.from_flags(flags)

    template_id = str(data.get("template") or "").strip()
    if not template_id:
        raise ValidationError("Either template or customActions is required.")
    get_template(template_id)
    return TemplateActions(template_id=template_id)


def get_template(template_id: str) -> Template:
    try:
        return TEMPLATES[template_id]
    except KeyError:
        raise UnknownTemplate(template_id) from None


def expand(
    actions: ActionConfig,
    notify_manager: bool = False,
    notify_user: bool = False,
) -> List[Step]:
    """Return the ordered steps an action configuration implies."""

    if isinstance(actions, TemplateActions):
        selected = set(get_template(actions.template_id).steps)
    else:
        selected = set(actions.enabled)
    if notify_manager:
        selected.add("notifyManager")
    if notify_user:
        selected.add("notifyUser")
    return [step for step in STEPS if step.key in selected]


def list_templates() -> List[Dict[str, Any]]:
    return [
        {
            "id": template.id,
            "name": template.name,
            "description": template.description,
            "steps": [STEPS_BY_KEY[key].label for key in _ordered(template.steps)],
        }
        for template in TEMPLATES.values()
    ]


def _ordered(keys: Iterable[str]) -> List[str]:
    wanted = set(keys)
    return [step.key for step in STEPS if step.key in wanted]


__all__ = [
    "ActionConfig",
    "CAPABILITY_ACCOUNT",
    "CAPABILITY_DEVICES",
    "CAPABILITY_GROUPS",
    "CAPABILITY_MAILBOX",
    "CAPABILITY_NOTIFICATION",
    "CUSTOM_ACTION_FLAGS",
    "CustomActions",
    "STEPS",
    "Step",
    "TEMPLATES",
    "Template",
    "TemplateActions",
    "action_config_from_dict",
    "expand",
    "get_template",
    "list_templates",
]
