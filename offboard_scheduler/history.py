"""Append-only execution log and audit trail for scheduled offboardings."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import StoreError
from .models import STEP_ERROR, STEP_SUCCESS, ScheduledOffboarding, Scope, StepResult
from .schedule_store import lock_for_path
from .timeutils import format_datetime, parse_datetime, utc_now

AUDIT_SCHEDULE = "schedule_offboarding"
AUDIT_UPDATE = "update_offboarding"
AUDIT_DELETE = "delete_offboarding"
AUDIT_EXECUTE = "execute_offboarding"


@dataclass
class ExecutionLogEntry:
    """One finished run of one scheduled offboarding.

    Entries outlive the record they describe, so deleting a record keeps its
    run history.
    """

    id: str
    schedule_id: str
    tenant_id: str
    user_id: str
    user_display_name: Optional[str]
    user_email: Optional[str]
    executed_by: Optional[str]
    started_at: Optional[datetime]
    finished_at: datetime
    status: str
    results: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_steps(self) -> int:
        return len(self.results)

    @property
    def successful_steps(self) -> int:
        return sum(1 for result in self.results if result.status == STEP_SUCCESS)

    @property
    def failed_steps(self) -> int:
        return sum(1 for result in self.results if result.status == STEP_ERROR)

    @classmethod
    def for_run(cls, record: ScheduledOffboarding, results: List[StepResult]) -> "ExecutionLogEntry":
        return cls(
            id=uuid.uuid4().hex,
            schedule_id=record.id,
            tenant_id=record.tenant_id,
            user_id=record.subject.user_id,
            user_display_name=record.subject.display_name,
            user_email=record.subject.email,
            executed_by=record.executed_by,
            started_at=record.executed_at,
            finished_at=record.finished_at or utc_now(),
            status=record.status,
            results=list(results),
            error=record.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "user_display_name": self.user_display_name,
            "user_email": self.user_email,
            "executed_by": self.executed_by,
            "started_at": format_datetime(self.started_at),
            "finished_at": format_datetime(self.finished_at),
            "status": self.status,
            "total_steps": self.total_steps,
            "successful_steps": self.successful_steps,
            "failed_steps": self.failed_steps,
            "results": [result.to_dict() for result in self.results],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionLogEntry":
        return cls(
            id=str(data["id"]),
            schedule_id=str(data["schedule_id"]),
            tenant_id=str(data["tenant_id"]),
            user_id=str(data.get("user_id") or ""),
            user_display_name=data.get("user_display_name"),
            user_email=data.get("user_email"),
            executed_by=data.get("executed_by"),
            started_at=parse_datetime(data.get("started_at")),
            finished_at=parse_datetime(data.get("finished_at")) or utc_now(),
            status=str(data.get("status") or ""),
            results=[StepResult.from_dict(entry) for entry in data.get("results") or []],
            error=data.get("error"),
        )


@dataclass
class AuditEntry:
    """Who did what to which record, and when."""

    id: str
    tenant_id: str
    session_id: str
    actor: Optional[str]
    action: str
    schedule_id: str
    details: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "session_id": self.session_id,
            "actor": self.actor,
            "action": self.action,
            "schedule_id": self.schedule_id,
            "details": self.details,
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEntry":
        return cls(
            id=str(data["id"]),
            tenant_id=str(data["tenant_id"]),
            session_id=str(data.get("session_id") or ""),
            actor=data.get("actor"),
            action=str(data.get("action") or ""),
            schedule_id=str(data.get("schedule_id") or ""),
            details=str(data.get("details") or ""),
            timestamp=parse_datetime(data.get("timestamp")) or utc_now(),
        )


class OffboardingHistory:
    """JSON file holding the execution log and the audit trail.

    Both lists only ever grow; every read is filtered to the caller's tenant.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = lock_for_path(self.path)

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {"executions": [], "audit": []}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle) or {}
        except (OSError, ValueError) as exc:
            raise StoreError(f"Unable to read offboarding history from '{self.path}': {exc}") from exc
        return {
            "executions": list(payload.get("executions") or []),
            "audit": list(payload.get("audit") or []),
        }

    def _write(self, payload: Mapping[str, List[Dict[str, Any]]]) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StoreError(f"Unable to write offboarding history to '{self.path}': {exc}") from exc

    def _append(self, section: str, entry: Dict[str, Any]) -> None:
        with self._lock:
            payload = self._read()
            payload[section].append(entry)
            self._write(payload)

    def log_execution(self, record: ScheduledOffboarding, results: List[StepResult]) -> ExecutionLogEntry:
        entry = ExecutionLogEntry.for_run(record, results)
        self._append("executions", entry.to_dict())
        return entry

    def audit(
        self,
        scope: Scope,
        action: str,
        schedule_id: str,
        details: str,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=uuid.uuid4().hex,
            tenant_id=scope.tenant_id,
            session_id=scope.session_id,
            actor=scope.owner_id,
            action=action,
            schedule_id=schedule_id,
            details=details,
            timestamp=now or utc_now(),
        )
        self._append("audit", entry.to_dict())
        return entry

    def executions(
        self,
        scope: Scope,
        schedule_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionLogEntry]:
        """Runs visible to ``scope``, most recent first."""

        with self._lock:
            raw = self._read()["executions"]
        entries = [
            ExecutionLogEntry.from_dict(item)
            for item in raw
            if item.get("tenant_id") == scope.tenant_id
            and (schedule_id is None or item.get("schedule_id") == schedule_id)
            and (user_id is None or item.get("user_id") == user_id)
        ]
        # Newest first; ties keep reverse append order.
        entries.reverse()
        entries.sort(key=lambda entry: entry.finished_at, reverse=True)
        return entries[:limit] if limit else entries

    def audit_trail(
        self,
        scope: Scope,
        schedule_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        with self._lock:
            raw = self._read()["audit"]
        entries = [
            AuditEntry.from_dict(item)
            for item in raw
            if item.get("tenant_id") == scope.tenant_id
            and (schedule_id is None or item.get("schedule_id") == schedule_id)
        ]
        entries.reverse()
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return entries[:limit] if limit else entries


__all__ = [
    "AUDIT_DELETE",
    "AUDIT_EXECUTE",
    "AUDIT_SCHEDULE",
    "AUDIT_UPDATE",
    "AuditEntry",
    "ExecutionLogEntry",
    "OffboardingHistory",
]
