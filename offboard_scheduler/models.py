"""Data models for scheduled offboarding records."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .catalog import ActionConfig, CustomActions, TemplateActions, action_config_from_dict
from .errors import ValidationError
from .timeutils import (
    compute_instant,
    format_datetime,
    normalize_local_time,
    parse_datetime,
    utc_now,
)

STATUS_SCHEDULED = "scheduled"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUSES = (STATUS_SCHEDULED, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

STEP_SUCCESS = "success"
STEP_ERROR = "error"

_PATCHABLE_KEYS = (
    "scheduledDate",
    "scheduledTime",
    "timezone",
    "template",
    "useCustomActions",
    "customActions",
    "actions",
    "notifyManager",
    "notifyUser",
    "managerEmail",
    "customMessage",
)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class Scope:
    """Tenant/session identity every store operation is isolated by."""

    tenant_id: str
    session_id: str
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class Subject:
    """Snapshot of the person being offboarded, taken at schedule time."""

    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_request(cls, data: Mapping[str, Any]) -> "Subject":
        user = data.get("user") if isinstance(data.get("user"), Mapping) else {}
        user_id = _optional_str(data.get("userId") or user.get("id"))
        if not user_id:
            raise ValidationError("userId is required.")
        return cls(
            user_id=user_id,
            display_name=_optional_str(
                data.get("userDisplayName") or data.get("userName") or user.get("displayName")
            ),
            email=_optional_str(
                data.get("userEmail") or user.get("mail") or user.get("email") or user.get("userPrincipalName")
            ),
        )

    @property
    def lookup(self) -> str:
        return self.email or self.user_id


@dataclass
class StepResult:
    """Outcome of one step of one execution."""

    action: str
    status: str
    message: str

    @property
    def ok(self) -> bool:
        return self.status == STEP_SUCCESS

    def to_dict(self) -> Dict[str, str]:
        return {"action": self.action, "status": self.status, "message": self.message}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepResult":
        return cls(
            action=str(data.get("action") or ""),
            status=str(data.get("status") or STEP_ERROR),
            message=str(data.get("message") or ""),
        )


@dataclass
class ScheduledOffboarding:
    """A persisted request to offboard one user at a future instant."""

    id: str
    subject: Subject
    scheduled_date: str
    scheduled_time: str
    timezone: str
    scheduled_at: datetime
    actions: ActionConfig
    tenant_id: str
    session_id: str
    created_by: Optional[str] = None
    status: str = STATUS_SCHEDULED
    notify_manager: bool = False
    notify_user: bool = False
    manager_email: Optional[str] = None
    custom_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    results: List[StepResult] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def owned_by(self, scope: Scope) -> bool:
        return self.tenant_id == scope.tenant_id

    @property
    def template(self) -> Optional[str]:
        return self.actions.template_id if isinstance(self.actions, TemplateActions) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.subject.user_id,
            "user_display_name": self.subject.display_name,
            "user_email": self.subject.email,
            "scheduled_date": self.scheduled_date,
            "scheduled_time": self.scheduled_time,
            "scheduled_date_time": self.scheduled_at.isoformat(),
            "timezone": self.timezone,
            **self.actions.to_dict(),
            "status": self.status,
            "notify_manager": self.notify_manager,
            "notify_user": self.notify_user,
            "manager_email": self.manager_email,
            "custom_message": self.custom_message,
            "tenant_id": self.tenant_id,
            "session_id": self.session_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "executed_at": format_datetime(self.executed_at),
            "executed_by": self.executed_by,
            "finished_at": format_datetime(self.finished_at),
            "error": self.error,
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScheduledOffboarding":
        scheduled_at = parse_datetime(data.get("scheduled_date_time"))
        if scheduled_at is None:
            scheduled_at = compute_instant(data["scheduled_date"], data["scheduled_time"], data["timezone"])
        return cls(
            id=str(data["id"]),
            subject=Subject(
                user_id=str(data["user_id"]),
                display_name=data.get("user_display_name"),
                email=data.get("user_email"),
            ),
            scheduled_date=str(data["scheduled_date"]),
            scheduled_time=str(data["scheduled_time"]),
            timezone=str(data["timezone"]),
            scheduled_at=scheduled_at,
            actions=action_config_from_dict(data),
            tenant_id=str(data["tenant_id"]),
            session_id=str(data.get("session_id") or ""),
            created_by=data.get("created_by"),
            status=str(data.get("status") or STATUS_SCHEDULED),
            notify_manager=bool(data.get("notify_manager", False)),
            notify_user=bool(data.get("notify_user", False)),
            manager_email=data.get("manager_email"),
            custom_message=data.get("custom_message"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            executed_at=parse_datetime(data.get("executed_at")),
            executed_by=data.get("executed_by"),
            finished_at=parse_datetime(data.get("finished_at")),
            error=data.get("error"),
            results=[StepResult.from_dict(entry) for entry in data.get("results") or []],
        )


def _validated_schedule(
    data: Mapping[str, Any], fallback: Optional[ScheduledOffboarding] = None
) -> Tuple[str, str, str, datetime]:
    def pick(key: str, current: Optional[str]) -> str:
        value = data.get(key, current)
        if value is None or not str(value).strip():
            raise ValidationError(f"{key} is required.")
        return str(value).strip()

    scheduled_date = pick("scheduledDate", fallback.scheduled_date if fallback else None)
    scheduled_time = pick("scheduledTime", fallback.scheduled_time if fallback else None)
    timezone_name = pick("timezone", fallback.timezone if fallback else None)
    scheduled_time = normalize_local_time(scheduled_time)
    instant = compute_instant(scheduled_date, scheduled_time, timezone_name)
    return scheduled_date, scheduled_time, timezone_name, instant


def new_schedule(scope: Scope, data: Mapping[str, Any], now: Optional[datetime] = None) -> ScheduledOffboarding:
    """Validate a create request and build a fresh ``scheduled`` record."""

    if not isinstance(data, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    subject = Subject.from_request(data)
    scheduled_date, scheduled_time, timezone_name, instant = _validated_schedule(data)
    actions = action_config_from_dict(data)
    manager_email = _optional_str(data.get("managerEmail"))
    # Notifications default on only when there is someone to send them to.
    record = ScheduledOffboarding(
        id=uuid.uuid4().hex,
        subject=subject,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        timezone=timezone_name,
        scheduled_at=instant,
        actions=actions,
        tenant_id=scope.tenant_id,
        session_id=scope.session_id,
        created_by=scope.owner_id,
        notify_manager=_to_bool(data.get("notifyManager"), manager_email is not None),
        notify_user=_to_bool(data.get("notifyUser"), subject.email is not None),
        manager_email=manager_email,
        custom_message=_optional_str(data.get("customMessage")),
        created_at=now or utc_now(),
    )
    _check_recipients(record)
    return record


def _check_recipients(record: ScheduledOffboarding) -> None:
    if record.notify_manager and not record.manager_email:
        raise ValidationError("managerEmail is required when notifyManager is set.")
    if record.notify_user and not record.subject.email:
        raise ValidationError("userEmail is required when notifyUser is set.")


def apply_patch(record: ScheduledOffboarding, patch: Mapping[str, Any]) -> ScheduledOffboarding:
    """Return a copy of ``record`` with ``patch`` applied, or raise before changing anything.

    Date, time and timezone are validated together and the instant is always
    recomputed from the resulting triple.
    """

    if not isinstance(patch, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    if not any(key in patch for key in _PATCHABLE_KEYS):
        raise ValidationError("No valid fields to update.")

    scheduled_date, scheduled_time, timezone_name, instant = _validated_schedule(patch, record)

    actions = record.actions
    if any(key in patch for key in ("template", "useCustomActions", "customActions", "actions")):
        merged: Dict[str, Any] = {}
        if isinstance(record.actions, CustomActions):
            merged.update({"useCustomActions": True, "customActions": record.actions.flags()})
        else:
            merged["template"] = record.actions.template_id
        if "template" in patch and "useCustomActions" not in patch:
            merged["useCustomActions"] = False
        merged.update({key: patch[key] for key in ("template", "useCustomActions", "customActions") if key in patch})
        if "actions" in patch and "customActions" not in patch:
            merged["customActions"] = patch["actions"]
        actions = action_config_from_dict(merged)

    patched = replace(
        record,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        timezone=timezone_name,
        scheduled_at=instant,
        actions=actions,
        notify_manager=_to_bool(patch.get("notifyManager"), record.notify_manager),
        notify_user=_to_bool(patch.get("notifyUser"), record.notify_user),
        manager_email=_optional_str(patch["managerEmail"]) if "managerEmail" in patch else record.manager_email,
        custom_message=_optional_str(patch["customMessage"]) if "customMessage" in patch else record.custom_message,
    )
    _check_recipients(patched)
    return patched


__all__ = [
    "STATUSES",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_IN_PROGRESS",
    "STATUS_SCHEDULED",
    "STEP_ERROR",
    "STEP_SUCCESS",
    "ScheduledOffboarding",
    "Scope",
    "StepResult",
    "Subject",
    "TERMINAL_STATUSES",
    "apply_patch",
    "new_schedule",
]
