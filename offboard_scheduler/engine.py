"""Trigger logic for scheduled offboardings: manual execution and the due-check."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from .adapters import AdapterFactory, build_adapters
from .config import AppConfig
from .errors import InvalidState, NotFound, OffboardingError, UnrecoverableError
from .executor import StepExecutor, aggregate_status, summarize_failures
from .history import (
    AUDIT_DELETE,
    AUDIT_EXECUTE,
    AUDIT_SCHEDULE,
    AUDIT_UPDATE,
    AuditEntry,
    ExecutionLogEntry,
    OffboardingHistory,
)
from .models import STATUS_FAILED, ScheduledOffboarding, Scope, StepResult
from .schedule_store import ScheduledOffboardingStore
from .timeutils import utc_now

logger = logging.getLogger(__name__)

SYSTEM_EXECUTOR = "system-cron"


@dataclass
class ExecutionOutcome:
    schedule: ScheduledOffboarding
    results: List[StepResult]


class OffboardingScheduler:
    """Front door for scheduled offboarding operations.

    Record CRUD is delegated to the store; execution always goes through the
    store's atomic claim so a record runs at most once no matter how many
    callers (API, CLI or the due-check) race for it. When a history store is
    attached, every change is audited and every run is logged.
    """

    def __init__(
        self,
        store: ScheduledOffboardingStore,
        adapter_factory: AdapterFactory,
        step_timeout: float = 180,
        history: Optional[OffboardingHistory] = None,
    ) -> None:
        self.store = store
        self.adapter_factory = adapter_factory
        self.step_timeout = step_timeout
        self.history = history

    # Record management ---------------------------------------------------
    def create(self, scope: Scope, payload: Mapping[str, Any]) -> ScheduledOffboarding:
        record = self.store.create(scope, payload)
        self._audit(
            scope,
            AUDIT_SCHEDULE,
            record.id,
            f"Scheduled offboarding for {record.subject.lookup} at {record.scheduled_at.isoformat()}",
        )
        return record

    def list(self, scope: Scope, status: Optional[str] = None) -> List[ScheduledOffboarding]:
        return self.store.list(scope, status=status)

    def get(self, schedule_id: str, scope: Scope) -> ScheduledOffboarding:
        return self.store.get(schedule_id, scope)

    def update(self, schedule_id: str, scope: Scope, patch: Mapping[str, Any]) -> ScheduledOffboarding:
        record = self.store.update(schedule_id, scope, patch)
        self._audit(
            scope,
            AUDIT_UPDATE,
            record.id,
            f"Updated fields: {', '.join(sorted(patch))}; due at {record.scheduled_at.isoformat()}",
        )
        return record

    def remove(self, schedule_id: str, scope: Scope) -> bool:
        removed = self.store.remove(schedule_id, scope)
        if removed:
            self._audit(scope, AUDIT_DELETE, schedule_id, "Deleted scheduled offboarding")
        return removed

    # History -------------------------------------------------------------
    def executions(
        self,
        scope: Scope,
        schedule_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionLogEntry]:
        if self.history is None:
            return []
        return self.history.executions(scope, schedule_id=schedule_id, user_id=user_id, limit=limit)

    def audit_trail(
        self, scope: Scope, schedule_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[AuditEntry]:
        if self.history is None:
            return []
        return self.history.audit_trail(scope, schedule_id=schedule_id, limit=limit)

    def _audit(self, scope: Scope, action: str, schedule_id: str, details: str) -> None:
        if self.history is not None:
            self.history.audit(scope, action, schedule_id, details)

    # Execution -----------------------------------------------------------
    def execute(self, schedule_id: str, scope: Scope, executed_by: Optional[str] = None) -> ExecutionOutcome:
        """Claim and run one record.

        Raises :class:`NotFound` or :class:`InvalidState` before any side
        effect; once claimed, always returns the per-step results.
        """

        claimed = self.store.claim(schedule_id, scope, executed_by=executed_by)
        logger.info(
            "Executing offboarding %s for %s (executed_by=%s).",
            claimed.id,
            claimed.subject.lookup,
            claimed.executed_by,
        )
        results: List[StepResult] = []
        try:
            adapters = self.adapter_factory(scope)
            try:
                adapters.directory.ensure_subject(claimed.subject)
            except UnrecoverableError:
                raise
            except Exception as exc:
                raise UnrecoverableError(f"Unable to verify {claimed.subject.lookup}: {exc}") from exc
            results = StepExecutor(adapters, step_timeout=self.step_timeout).execute(claimed)
        except UnrecoverableError as exc:
            logger.error("Offboarding %s aborted before any step ran: %s", claimed.id, exc)
            return self._finish(scope, claimed, STATUS_FAILED, [], str(exc))
        except Exception as exc:
            logger.exception("Offboarding %s failed unexpectedly: %s", claimed.id, exc)
            return self._finish(scope, claimed, STATUS_FAILED, results, str(exc))

        outcome = self._finish(scope, claimed, aggregate_status(results), results, summarize_failures(results))
        logger.info("Offboarding %s finished with status %s.", outcome.schedule.id, outcome.schedule.status)
        return outcome

    def _finish(
        self,
        scope: Scope,
        claimed: ScheduledOffboarding,
        status: str,
        results: List[StepResult],
        error: Optional[str],
    ) -> ExecutionOutcome:
        try:
            finished = self.store.record_result(claimed.id, status, results, error=error)
        except (InvalidState, NotFound) as exc:
            # Side effects already happened; report them even if the record moved on.
            logger.error("Could not store results of offboarding %s: %s", claimed.id, exc)
            finished = replace(claimed, status=status, finished_at=utc_now(), error=error, results=list(results))
        if self.history is not None:
            try:
                entry = self.history.log_execution(finished, results)
                self._audit(
                    scope,
                    AUDIT_EXECUTE,
                    finished.id,
                    f"{finished.status}: {entry.successful_steps}/{entry.total_steps} steps succeeded",
                )
            except OffboardingError as exc:
                logger.error("Could not log execution of offboarding %s: %s", finished.id, exc)
        return ExecutionOutcome(schedule=finished, results=results)

    def run_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, str]:
        """Execute every due record once, soonest first; returns ``{id: status}``."""

        processed: Dict[str, str] = {}
        for record in self.store.due(now=now or utc_now(), limit=limit):
            scope = Scope(tenant_id=record.tenant_id, session_id=record.session_id, owner_id=SYSTEM_EXECUTOR)
            try:
                outcome = self.execute(record.id, scope, executed_by=SYSTEM_EXECUTOR)
            except (InvalidState, NotFound) as exc:
                logger.info("Skipping due offboarding %s: %s", record.id, exc)
                continue
            processed[record.id] = outcome.schedule.status
        return processed

    def recover_interrupted(self, older_than: timedelta) -> List[str]:
        return self.store.recover_interrupted(older_than)


def build_scheduler(config: AppConfig, adapter_factory: Optional[AdapterFactory] = None) -> OffboardingScheduler:
    """Wire the JSON stores and configured adapters into a scheduler."""

    store = ScheduledOffboardingStore(config.storage.scheduled_offboardings_file)
    history = OffboardingHistory(config.storage.history_file)
    factory = adapter_factory or (lambda scope: build_adapters(config))
    return OffboardingScheduler(
        store,
        factory,
        step_timeout=config.scheduler.step_timeout_seconds,
        history=history,
    )


__all__ = ["ExecutionOutcome", "OffboardingScheduler", "SYSTEM_EXECUTOR", "build_scheduler"]
