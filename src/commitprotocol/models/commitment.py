"""Commitment and dispute models.

All monetary values use Decimal for exact arithmetic.

State machine:
    FUNDED → SUBMITTED            (contributor delivers)
    SUBMITTED → SETTLED           (dispute window elapsed, paid out)
    SUBMITTED → DISPUTED          (staked dispute opened within the window)
    DISPUTED → SETTLED            (arbitrator favours contributor)
    DISPUTED → REFUNDED           (arbitrator favours tenant)

SETTLED and REFUNDED are terminal. There is no cancellation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from commitprotocol.errors import InvalidDeadline, InvalidState


class CommitmentState(str, enum.Enum):
    """Lifecycle state of a commitment."""
    FUNDED = "FUNDED"
    SUBMITTED = "SUBMITTED"
    DISPUTED = "DISPUTED"
    SETTLED = "SETTLED"
    REFUNDED = "REFUNDED"


# Valid commitment state transitions
COMMITMENT_TRANSITIONS: Dict[CommitmentState, frozenset] = {
    CommitmentState.FUNDED: frozenset({CommitmentState.SUBMITTED}),
    CommitmentState.SUBMITTED: frozenset({
        CommitmentState.SETTLED,
        CommitmentState.DISPUTED,
    }),
    CommitmentState.DISPUTED: frozenset({
        CommitmentState.SETTLED,
        CommitmentState.REFUNDED,
    }),
    CommitmentState.SETTLED: frozenset(),
    CommitmentState.REFUNDED: frozenset(),
}

TERMINAL_STATES = frozenset({CommitmentState.SETTLED, CommitmentState.REFUNDED})


def require_aware(value: Any, name: str = "now") -> datetime:
    """Return ``value`` if it is a timezone-aware datetime, else raise InvalidDeadline."""
    if not isinstance(value, datetime) or value.utcoffset() is None:
        raise InvalidDeadline(
            f"{name} must be a timezone-aware datetime, got {value!r}", {name: repr(value)},
        )
    return value


@dataclass
class CommitmentRecord:
    """One escrowed work agreement.

    ``amount`` is fixed at creation and ``evidence_ref`` is write-once.
    Transitions are validated against COMMITMENT_TRANSITIONS.
    """
    commit_id: str
    tenant_id: str
    creator_id: str
    contributor: str
    token: str
    amount: Decimal
    deadline_utc: datetime
    dispute_window: timedelta
    spec_ref: str
    state: CommitmentState = CommitmentState.FUNDED
    evidence_ref: Optional[str] = None
    created_utc: Optional[datetime] = None
    submitted_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None

    @property
    def release_after_utc(self) -> Optional[datetime]:
        """Instant the dispute window closes; None until submission."""
        if self.submitted_utc is None:
            return None
        return self.submitted_utc + self.dispute_window

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_settleable(self, now: datetime) -> bool:
        """SUBMITTED and the dispute window has fully elapsed."""
        release_after = self.release_after_utc
        return (
            self.state == CommitmentState.SUBMITTED
            and release_after is not None
            and now >= release_after
        )

    def transition_to(self, new_state: CommitmentState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = COMMITMENT_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            expected = [s for s, targets in COMMITMENT_TRANSITIONS.items() if new_state in targets]
            raise InvalidState(expected, self.state, subject=self.commit_id)
        self.state = new_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "tenant_id": self.tenant_id,
            "creator_id": self.creator_id,
            "contributor": self.contributor,
            "token": self.token,
            "amount": str(self.amount),
            "deadline_utc": self.deadline_utc.isoformat(),
            "dispute_window_seconds": int(self.dispute_window.total_seconds()),
            "spec_ref": self.spec_ref,
            "evidence_ref": self.evidence_ref,
            "state": self.state.value,
            "created_utc": self.created_utc.isoformat() if self.created_utc else None,
            "submitted_utc": self.submitted_utc.isoformat() if self.submitted_utc else None,
        }


@dataclass
class DisputeRecord:
    """A staked challenge to a submitted commitment.

    At most one per commitment. Immutable once ``resolved`` is set.
    """
    commit_id: str
    disputer_id: str
    stake: Decimal
    created_utc: datetime
    reason: Optional[str] = None
    resolved: bool = False
    favor_contributor: Optional[bool] = None
    resolved_utc: Optional[datetime] = None

    def resolve(self, favor_contributor: bool, now: datetime) -> None:
        if self.resolved:
            raise InvalidState("unresolved", "resolved", subject=f"dispute {self.commit_id}")
        self.resolved = True
        self.favor_contributor = favor_contributor
        self.resolved_utc = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "disputer_id": self.disputer_id,
            "stake": str(self.stake),
            "reason": self.reason,
            "created_utc": self.created_utc.isoformat(),
            "resolved": self.resolved,
            "favor_contributor": self.favor_contributor,
            "resolved_utc": self.resolved_utc.isoformat() if self.resolved_utc else None,
        }
