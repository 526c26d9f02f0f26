"""Error taxonomy for the commitment ledger.

Every failure is synchronous and carries enough detail for the caller to
decide what to do next. Nothing here is retried internally; a caller has
to change its inputs (or wait for time to pass) before trying again.

Each class has a stable machine ``code`` so that the service facade can
report failures without leaking Python class names to collaborators.
"""

from __future__ import annotations

from typing import Any, Optional


class ProtocolError(Exception):
    """Base class for every protocol-level failure."""

    code = "PROTOCOL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class InvalidState(ProtocolError):
    """The record is in the wrong lifecycle stage for the operation."""

    code = "INVALID_STATE"

    def __init__(self, expected: Any, actual: Any, subject: str = "") -> None:
        self.expected = expected
        self.actual = actual
        prefix = f"{subject}: " if subject else ""
        super().__init__(
            f"{prefix}invalid state: expected {_label(expected)}, got {_label(actual)}",
            {"expected": _label(expected), "actual": _label(actual)},
        )


class Unauthorized(ProtocolError):
    """The caller does not hold the role (or tenant) the operation needs."""

    code = "UNAUTHORIZED"

    def __init__(self, caller: str, required: str) -> None:
        self.caller = caller
        self.required = required
        super().__init__(
            f"Caller {caller!r} is not authorized (requires {required})",
            {"caller": caller, "required": required},
        )


class InsufficientBalance(ProtocolError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: Any, available: Any, account: str = "") -> None:
        self.required = required
        self.available = available
        where = f" for {account}" if account else ""
        super().__init__(
            f"Insufficient balance{where}: required {required}, available {available}",
            {"required": str(required), "available": str(available), "account": account},
        )


class InsufficientStake(ProtocolError):
    code = "INSUFFICIENT_STAKE"

    def __init__(self, required: Any, provided: Any) -> None:
        self.required = required
        self.provided = provided
        super().__init__(
            f"Insufficient dispute stake: required {required}, provided {provided}",
            {"required": str(required), "provided": str(provided)},
        )


class InvalidAddress(ProtocolError):
    code = "INVALID_ADDRESS"


class InvalidAmount(ProtocolError):
    code = "INVALID_AMOUNT"


class InvalidDeadline(ProtocolError):
    code = "INVALID_DEADLINE"


class WindowClosed(ProtocolError):
    """A time-based precondition is not met (too early or too late)."""

    code = "WINDOW_CLOSED"


class AlreadyRegistered(ProtocolError):
    code = "ALREADY_REGISTERED"


class UnregisteredTenant(ProtocolError):
    code = "UNREGISTERED_TENANT"


class NotFound(ProtocolError):
    code = "NOT_FOUND"


class ReentrantCall(ProtocolError):
    """A mutating entry point was re-entered before the outer call returned."""

    code = "REENTRANT_CALL"


class InvariantViolation(ProtocolError):
    """A tenant's counters no longer reconcile after a mutation."""

    code = "INVARIANT_VIOLATION"


class AuditTrailFailure(ProtocolError):
    """The change record could not be written; the mutation was undone."""

    code = "AUDIT_TRAIL_FAILURE"


def _label(value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        return "|".join(sorted(_label(v) for v in value))
    return getattr(value, "value", value)