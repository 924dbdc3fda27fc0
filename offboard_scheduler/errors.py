"""Exception hierarchy for scheduled offboarding operations."""
from __future__ import annotations


class OffboardingError(RuntimeError):
    """Base exception for the scheduled offboarding engine."""


class ValidationError(OffboardingError):
    """Raised when create/update input is malformed."""


class UnknownTemplate(ValidationError):
    """Raised when a template id is not part of the action catalog."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Unknown offboarding template '{template_id}'.")
        self.template_id = template_id


class NotFound(OffboardingError):
    """Raised when a record is absent or owned by another scope."""

    def __init__(self, schedule_id: str) -> None:
        super().__init__("Not found or access denied")
        self.schedule_id = schedule_id


class InvalidState(OffboardingError):
    """Raised when an operation is not legal for the record's current status."""

    def __init__(self, schedule_id: str, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} offboarding {schedule_id} while it is '{status}'.")
        self.schedule_id = schedule_id
        self.status = status
        self.operation = operation


class StepExecutionError(OffboardingError):
    """Raised by adapters when a single offboarding step fails."""


class UnrecoverableError(OffboardingError):
    """Raised when an execution cannot start at all (e.g. the subject is gone)."""


class StoreError(OffboardingError):
    """Raised when the record store cannot be read or written."""


__all__ = [
    "InvalidState",
    "NotFound",
    "OffboardingError",
    "StepExecutionError",
    "StoreError",
    "UnknownTemplate",
    "UnrecoverableError",
    "ValidationError",
]
