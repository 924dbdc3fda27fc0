"""Persistence for scheduled offboarding records."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import InvalidState, NotFound, StoreError, ValidationError
from .models import (
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_SCHEDULED,
    STATUSES,
    TERMINAL_STATUSES,
    ScheduledOffboarding,
    Scope,
    StepResult,
    apply_patch,
    new_schedule,
)
from .timeutils import utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Execution was interrupted before it reported a result."

_PATH_LOCKS: Dict[Path, threading.Lock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def lock_for_path(path: Path) -> threading.Lock:
    key = path.resolve()
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = _PATH_LOCKS[key] = threading.Lock()
        return lock


class ScheduledOffboardingStore:
    """Thread-safe JSON file store for scheduled offboardings.

    Every operation re-reads the file while holding a lock shared by all store
    instances pointing at the same path, so status checks and the writes that
    depend on them happen as one atomic step and no record state is cached
    between calls.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = lock_for_path(self.path)

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #
    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle) or {}
        except (OSError, ValueError) as exc:
            raise StoreError(f"Unable to read scheduled offboardings from '{self.path}': {exc}") from exc
        entries = payload.get("offboardings") or []
        return {str(entry["id"]): entry for entry in entries if isinstance(entry, dict) and entry.get("id")}

    def _write(self, entries: Mapping[str, Dict[str, Any]]) -> None:
        payload = {"offboardings": list(entries.values())}
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StoreError(f"Unable to write scheduled offboardings to '{self.path}': {exc}") from exc

    @staticmethod
    def _parse(entries: Iterable[Dict[str, Any]]) -> List[ScheduledOffboarding]:
        records: List[ScheduledOffboarding] = []
        for entry in entries:
            try:
                records.append(ScheduledOffboarding.from_dict(entry))
            except Exception as exc:
                logger.warning("Skipping unreadable scheduled offboarding %s: %s", entry.get("id"), exc)
        return records

    def _owned(self, entries: Mapping[str, Dict[str, Any]], schedule_id: str, scope: Scope) -> ScheduledOffboarding:
        entry = entries.get(str(schedule_id))
        if entry is None or entry.get("tenant_id") != scope.tenant_id:
            raise NotFound(schedule_id)
        return ScheduledOffboarding.from_dict(entry)

    # ------------------------------------------------------------------ #
    # Scoped operations                                                  #
    # ------------------------------------------------------------------ #
    def create(self, scope: Scope, payload: Mapping[str, Any]) -> ScheduledOffboarding:
        record = new_schedule(scope, payload)
        with self._lock:
            entries = self._read()
            entries[record.id] = record.to_dict()
            self._write(entries)
        logger.info(
            "Scheduled offboarding %s for %s at %s (%s).",
            record.id,
            record.subject.lookup,
            record.scheduled_at.isoformat(),
            record.timezone,
        )
        return record

    def list(self, scope: Scope, status: Optional[str] = None) -> List[ScheduledOffboarding]:
        if status is not None and status not in STATUSES:
            raise ValidationError(f"Unknown status '{status}'. Choose from {', '.join(STATUSES)}.")
        with self._lock:
            entries = self._read()
        owned = [entry for entry in entries.values() if entry.get("tenant_id") == scope.tenant_id]
        records = self._parse(owned)
        if status is not None:
            records = [record for record in records if record.status == status]
        records.sort(key=lambda record: record.scheduled_at)
        return records

    def get(self, schedule_id: str, scope: Scope) -> ScheduledOffboarding:
        with self._lock:
            entries = self._read()
        return self._owned(entries, schedule_id, scope)

    def update(self, schedule_id: str, scope: Scope, patch: Mapping[str, Any]) -> ScheduledOffboarding:
        with self._lock:
            entries = self._read()
            record = self._owned(entries, schedule_id, scope)
            if record.status != STATUS_SCHEDULED:
                raise InvalidState(record.id, record.status, "update")
            updated = apply_patch(record, patch)
            entries[updated.id] = updated.to_dict()
            self._write(entries)
        logger.info("Updated scheduled offboarding %s; now due at %s.", updated.id, updated.scheduled_at.isoformat())
        return updated

    def remove(self, schedule_id: str, scope: Scope) -> bool:
        with self._lock:
            entries = self._read()
            entry = entries.get(str(schedule_id))
            if entry is None or entry.get("tenant_id") != scope.tenant_id:
                return False
            entries.pop(str(schedule_id))
            self._write(entries)
        logger.info("Deleted scheduled offboarding %s.", schedule_id)
        return True

    # ------------------------------------------------------------------ #
    # Execution bookkeeping                                              #
    # ------------------------------------------------------------------ #
    def claim(
        self,
        schedule_id: str,
        scope: Scope,
        executed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledOffboarding:
        """Atomically move a record from ``scheduled`` to ``in-progress``.

        Exactly one caller wins; every other caller gets :class:`InvalidState`.
        """

        with self._lock:
            entries = self._read()
            record = self._owned(entries, schedule_id, scope)
            if record.status != STATUS_SCHEDULED:
                raise InvalidState(record.id, record.status, "execute")
            claimed = replace(
                record,
                status=STATUS_IN_PROGRESS,
                executed_at=now or utc_now(),
                executed_by=executed_by or scope.owner_id,
            )
            entries[claimed.id] = claimed.to_dict()
            self._write(entries)
        return claimed

    def record_result(
        self,
        schedule_id: str,
        status: str,
        results: Iterable[StepResult],
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledOffboarding:
        """Finish a claimed record.

        A record that :meth:`recover_interrupted` failed while its run was
        still going is overwritten too, so the real step results win.
        """

        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Result status must be terminal, got '{status}'.")
        with self._lock:
            entries = self._read()
            entry = entries.get(str(schedule_id))
            if entry is None:
                raise NotFound(schedule_id)
            record = ScheduledOffboarding.from_dict(entry)
            recovered = record.status == STATUS_FAILED and record.error == INTERRUPTED_ERROR
            if record.status != STATUS_IN_PROGRESS and not recovered:
                raise InvalidState(record.id, record.status, "record results for")
            if recovered:
                logger.warning("Offboarding %s reported back after it was marked interrupted.", record.id)
            finished = replace(
                record,
                status=status,
                finished_at=now or utc_now(),
                error=error,
                results=list(results),
            )
            entries[finished.id] = finished.to_dict()
            self._write(entries)
        return finished

    def due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[ScheduledOffboarding]:
        """Scheduled records whose instant has passed, soonest first, across all tenants."""

        cutoff = now or utc_now()
        with self._lock:
            entries = self._read()
        pending = [entry for entry in entries.values() if entry.get("status") == STATUS_SCHEDULED]
        records = [record for record in self._parse(pending) if record.scheduled_at <= cutoff]
        records.sort(key=lambda record: record.scheduled_at)
        return records[:limit] if limit else records

    def recover_interrupted(self, older_than: timedelta, now: Optional[datetime] = None) -> List[str]:
        """Fail records left ``in-progress`` by a run that never reported back."""

        cutoff = (now or utc_now()) - older_than
        recovered: List[str] = []
        with self._lock:
            entries = self._read()
            for record in self._parse(
                entry for entry in entries.values() if entry.get("status") == STATUS_IN_PROGRESS
            ):
                if record.executed_at and record.executed_at > cutoff:
                    continue
                failed = replace(
                    record,
                    status=STATUS_FAILED,
                    finished_at=now or utc_now(),
                    error=INTERRUPTED_ERROR,
                )
                entries[failed.id] = failed.to_dict()
                recovered.append(failed.id)
            if recovered:
                self._write(entries)
        for schedule_id in recovered:
            logger.warning("Marked interrupted offboarding %s as failed.", schedule_id)
        return recovered


__all__ = ["INTERRUPTED_ERROR", "ScheduledOffboardingStore", "lock_for_path"]
