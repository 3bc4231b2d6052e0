"""
Error taxonomy for SyncLedger.

Record-level errors (TransformationError, ValidationError, TargetWriteError)
are caught per record by the reconciler and written to the contract log.
Run-level errors (ConfigurationError, OriginReadError) abort the run.
Delivery errors are routed to the message state machine and never abort a
retry sweep.
"""

from __future__ import annotations

from typing import Any


class SyncLedgerError(Exception):
    """Base exception for all SyncLedger errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class TransformationError(SyncLedgerError):
    """Mapping or script execution failed for a record."""


class ValidationError(SyncLedgerError):
    """A record (or input map) failed a schema check."""


class FieldValidationError(ValidationError):
    """Raised by ``from_map`` constructors with one entry per bad field."""

    def __init__(self, entity: str, problems: dict[str, str]) -> None:
        detail = "; ".join(f"{field}: {problem}" for field, problem in sorted(problems.items()))
        super().__init__(f"Invalid {entity}: {detail}", code="invalid_fields")
        self.entity = entity
        self.problems = problems


class TargetWriteError(SyncLedgerError):
    """The target system rejected or failed a write."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.response = response


class RuleAbort(Exception):
    """A ``before`` rule vetoed the action. Control flow, not a failure."""

    def __init__(self, rule_id: str, action: str) -> None:
        super().__init__(f"Skipped by rule {rule_id} for action {action}")
        self.rule_id = rule_id
        self.action = action


class ConcurrentWriteError(SyncLedgerError):
    """An optimistic contract write lost against another writer."""


class DeliveryError(SyncLedgerError):
    """Base exception for push delivery failures."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class DeliveryTransientError(DeliveryError):
    """Network error, timeout or 5xx. Retried with backoff."""


class DeliveryTerminalError(DeliveryError):
    """The subscriber rejected the message for good (e.g. 410 Gone)."""


class ConfigurationError(SyncLedgerError):
    """A synchronization, subscription or collaborator is missing or invalid."""


class OriginReadError(SyncLedgerError):
    """Origin enumeration failed part-way; the run is aborted."""
