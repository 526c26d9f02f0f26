"""Commitment state machine — create, submit, settle.

Transitions are fail-closed: anything not in COMMITMENT_TRANSITIONS is
rejected with InvalidState. Every precondition is re-checked on every
call; nothing observed by an earlier call is trusted.

The delivery ``deadline`` is informational. Settlement is gated only by
the dispute window measured from submission, so a late delivery never
shortens the period in which the tenant may dispute.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from commitprotocol.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidDeadline,
    InvalidState,
    Unauthorized,
    WindowClosed,
)
from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.commitment import CommitmentRecord, CommitmentState, require_aware
from commitprotocol.persistence.store import LedgerStore


class CommitmentStateMachine:
    """Lifecycle of escrowed commitments.

    Usage:
        machine = CommitmentStateMachine(store, ledger, vault)
        record = machine.create("guild-1", "relayer", "bob", "MNEE",
                                Decimal("1000"), deadline, timedelta(days=3), "ipfs://spec")
        record = machine.submit("guild-1", record.commit_id, "ipfs://evidence")
        record = machine.settle(record.commit_id)
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: BalanceLedger,
        vault: TokenVault,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._vault = vault

    def create(
        self,
        tenant_id: str,
        creator_id: str,
        contributor: str,
        token: str,
        amount: Decimal,
        deadline: datetime,
        dispute_window: timedelta,
        spec_ref: str,
        now: Optional[datetime] = None,
    ) -> CommitmentRecord:
        """Open a commitment in FUNDED, debiting the tenant's balance."""
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        self._ledger.require_active(tenant_id)
        self._ledger.require_party(contributor, "Contributor")
        if token != self._ledger.token:
            raise InvalidAddress(
                f"Unsupported payment token: {token!r}",
                {"token": token, "supported": self._ledger.token},
            )
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= 0:
            raise InvalidAmount("Commitment amount must be positive", {"amount": str(amount)})
        require_aware(deadline, "deadline")
        if deadline <= now:
            raise InvalidDeadline(
                "Deadline must be in the future",
                {"deadline": deadline.isoformat(), "now": now.isoformat()},
            )
        if not isinstance(dispute_window, timedelta) or dispute_window < timedelta(0):
            raise InvalidDeadline(
                "Dispute window must be a non-negative timedelta",
                {"dispute_window": repr(dispute_window)},
            )

        tenant = self._ledger.require(tenant_id)
        if amount > tenant.available_balance:
            raise InsufficientBalance(amount, tenant.available_balance, account=tenant_id)

        commit_id = self._store.next_commit_id()
        record = CommitmentRecord(
            commit_id=commit_id,
            tenant_id=tenant_id,
            creator_id=creator_id,
            contributor=contributor,
            token=token,
            amount=amount,
            deadline_utc=deadline,
            dispute_window=dispute_window,
            spec_ref=spec_ref,
            state=CommitmentState.FUNDED,
            created_utc=now,
        )
        self._ledger.debit(tenant_id, amount)
        self._store.commitments[commit_id] = record
        return record

    def submit(
        self,
        tenant_id: str,
        commit_id: str,
        evidence_ref: str,
        now: Optional[datetime] = None,
    ) -> CommitmentRecord:
        """Record delivery. Transitions: FUNDED → SUBMITTED."""
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        record = self._store.require_commitment(commit_id)
        _require_tenant(record, tenant_id)
        if record.state != CommitmentState.FUNDED:
            raise InvalidState(CommitmentState.FUNDED, record.state, subject=commit_id)
        if record.evidence_ref is not None:
            raise InvalidState("no evidence", "evidence recorded", subject=commit_id)

        record.transition_to(CommitmentState.SUBMITTED)
        record.evidence_ref = evidence_ref
        record.submitted_utc = now
        return record

    def settle(self, commit_id: str, now: Optional[datetime] = None) -> CommitmentRecord:
        """Pay the contributor. Transitions: SUBMITTED → SETTLED.

        Checks, then effects, then the outbound transfer. A failed transfer
        restores the record so the call has no effect.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        record = self._store.require_commitment(commit_id)
        self.require_settleable(record, now)

        record.transition_to(CommitmentState.SETTLED)
        record.closed_utc = now
        try:
            self.pay_contributor(record)
        except Exception:
            record.state = CommitmentState.SUBMITTED
            record.closed_utc = None
            raise
        return record

    def pay_contributor(self, record: CommitmentRecord) -> None:
        self._vault.transfer(
            record.token, self._ledger.escrow_account, record.contributor, record.amount,
        )

    def can_settle(self, commit_id: str, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        record = self._store.commitment(commit_id)
        return record is not None and record.is_settleable(now)

    @staticmethod
    def require_settleable(record: CommitmentRecord, now: datetime) -> None:
        if record.state != CommitmentState.SUBMITTED:
            raise InvalidState(CommitmentState.SUBMITTED, record.state, subject=record.commit_id)
        release_after = record.release_after_utc
        if release_after is None or now < release_after:
            raise WindowClosed(
                f"{record.commit_id}: dispute window still open",
                {
                    "commit_id": record.commit_id,
                    "release_after": release_after.isoformat() if release_after else None,
                    "now": now.isoformat(),
                },
            )


def _require_tenant(record: CommitmentRecord, tenant_id: str) -> None:
    if record.tenant_id != tenant_id:
        raise Unauthorized(tenant_id, f"tenant {record.tenant_id}")
