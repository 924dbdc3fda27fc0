"""Sequential step execution and result aggregation for one offboarding."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Iterable, List, Optional

from .adapters import Adapters
from .catalog import Step, expand
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STEP_ERROR,
    STEP_SUCCESS,
    ScheduledOffboarding,
    StepResult,
)
from .timeutils import utc_now

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "timeout"


def aggregate_status(results: Iterable[StepResult]) -> str:
    """``completed`` when no step errored, otherwise ``failed``."""

    return STATUS_FAILED if any(result.status == STEP_ERROR for result in results) else STATUS_COMPLETED


def summarize_failures(results: Iterable[StepResult]) -> Optional[str]:
    failed = [result.action for result in results if result.status == STEP_ERROR]
    if not failed:
        return None
    return f"{len(failed)} step(s) failed: {', '.join(failed)}"


def _call_with_timeout(func: Callable[[], str], timeout: float) -> str:
    # One worker per call; a hung adapter thread is abandoned, never joined.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="offboarding-step")
    try:
        future = pool.submit(func)
        return future.result(timeout=timeout)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


class StepExecutor:
    """Runs the catalog steps for a record against the adapters.

    Never raises for step failures: every configured step is attempted once
    and produces exactly one :class:`StepResult`.
    """

    def __init__(self, adapters: Adapters, step_timeout: float = 180) -> None:
        self.adapters = adapters
        self.step_timeout = step_timeout

    def execute(self, record: ScheduledOffboarding) -> List[StepResult]:
        steps = expand(record.actions, notify_manager=record.notify_manager, notify_user=record.notify_user)
        results: List[StepResult] = []
        for step in steps:
            result = self._run_step(step, record, results)
            results.append(result)
            log = logger.info if result.ok else logger.warning
            log("Offboarding %s step '%s': %s - %s", record.id, step.label, result.status, result.message)
        return results

    def _run_step(self, step: Step, record: ScheduledOffboarding, previous: List[StepResult]) -> StepResult:
        try:
            action = self._resolve(step, record, previous)
            message = _call_with_timeout(action, self.step_timeout)
        except FutureTimeout:
            return StepResult(step.label, STEP_ERROR, TIMEOUT_MESSAGE)
        except Exception as exc:
            return StepResult(step.label, STEP_ERROR, str(exc) or exc.__class__.__name__)
        return StepResult(step.label, STEP_SUCCESS, message or "Done")

    def _resolve(self, step: Step, record: ScheduledOffboarding, previous: List[StepResult]) -> Callable[[], str]:
        subject = record.subject
        directory = self.adapters.directory
        mailbox = self.adapters.mailbox
        handlers: Dict[str, Callable[[], str]] = {
            "disableAccount": lambda: directory.disable_account(subject),
            "revokeAccess": lambda: directory.revoke_sessions(subject),
            "removeFromGroups": lambda: directory.remove_from_all_groups(subject),
            "convertToSharedMailbox": lambda: mailbox.convert_to_shared_mailbox(
                subject, forward_to=record.manager_email
            ),
            "backupData": lambda: mailbox.backup_mailbox_data(subject),
            "removeDevices": lambda: directory.remove_devices(subject),
            "notifyManager": lambda: self._notify(record.manager_email, "manager", record, previous),
            "notifyUser": lambda: self._notify(subject.email, "user", record, previous),
        }
        return handlers[step.key]

    def _notify(
        self,
        recipient: Optional[str],
        audience: str,
        record: ScheduledOffboarding,
        previous: List[StepResult],
    ) -> str:
        if not recipient:
            raise ValueError(f"No {audience} email address on record.")
        context: Dict[str, Any] = {
            "audience": audience,
            "user": record.subject.lookup,
            "display_name": record.subject.display_name,
            "executed_at": (record.executed_at or utc_now()).isoformat(),
            "results": [result.to_dict() for result in previous],
            "custom_message": record.custom_message,
        }
        return self.adapters.notifier.notify(recipient, context)


__all__ = ["StepExecutor", "TIMEOUT_MESSAGE", "aggregate_status", "summarize_failures"]
