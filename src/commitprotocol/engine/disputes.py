"""Dispute engine — staked challenges and arbitrated resolution.

A dispute can only be opened on a SUBMITTED commitment, by its own
tenant, while the dispute window is open, with a stake covering the
enforced baseline. One dispute per commitment, ever.

Resolution is arbitrator-only (the service checks the role) and final:
    favor_contributor=True   DISPUTED → SETTLED    contributor paid, stake returned
    favor_contributor=False  DISPUTED → REFUNDED   amount back to tenant, stake returned

The posted stake moves from the disputer's wallet into the escrow
account on opening and back to the disputer on resolution.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from commitprotocol.config import ProtocolParams
from commitprotocol.engine.stake import enforce_baseline_stake
from commitprotocol.engine.state_machine import CommitmentStateMachine
from commitprotocol.errors import InvalidState, NotFound, Unauthorized, WindowClosed
from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.commitment import (
    CommitmentRecord,
    CommitmentState,
    DisputeRecord,
    require_aware,
)
from commitprotocol.persistence.store import LedgerStore


class DisputeEngine:
    """Opens and resolves disputes on top of the commitment state machine.

    Usage:
        engine = DisputeEngine(store, ledger, vault, machine, params)
        dispute = engine.open_dispute("guild-1", "C-00000001", Decimal("2"), "relayer")
        record = engine.resolve_dispute("C-00000001", favor_contributor=False)
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: BalanceLedger,
        vault: TokenVault,
        machine: CommitmentStateMachine,
        params: ProtocolParams,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._vault = vault
        self._machine = machine
        self.params = params

    def open_dispute(
        self,
        tenant_id: str,
        commit_id: str,
        posted_stake: Decimal,
        disputer_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DisputeRecord:
        """Open the one dispute a commitment may have.

        Transitions: SUBMITTED → DISPUTED
        """
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        record = self._store.require_commitment(commit_id)
        if record.tenant_id != tenant_id:
            raise Unauthorized(tenant_id, f"tenant {record.tenant_id}")
        self._ledger.require_party(disputer_id, "Disputer")
        if commit_id in self._store.disputes:
            raise InvalidState(CommitmentState.SUBMITTED, record.state, subject=commit_id)
        if record.state != CommitmentState.SUBMITTED:
            raise InvalidState(CommitmentState.SUBMITTED, record.state, subject=commit_id)
        self.require_window_open(record, now)
        enforce_baseline_stake(posted_stake, self.params)

        if posted_stake > 0:
            self._vault.transfer(
                record.token, disputer_id, self._ledger.escrow_account, posted_stake,
            )

        dispute = DisputeRecord(
            commit_id=commit_id,
            disputer_id=disputer_id,
            stake=posted_stake,
            created_utc=now,
            reason=reason,
        )
        record.transition_to(CommitmentState.DISPUTED)
        self._store.disputes[commit_id] = dispute
        return dispute

    def resolve_dispute(
        self,
        commit_id: str,
        favor_contributor: bool,
        now: Optional[datetime] = None,
    ) -> CommitmentRecord:
        """Apply the arbitrator's decision.

        Transitions: DISPUTED → SETTLED or DISPUTED → REFUNDED
        """
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        record = self._store.require_commitment(commit_id)
        if record.state != CommitmentState.DISPUTED:
            raise InvalidState(CommitmentState.DISPUTED, record.state, subject=commit_id)
        dispute = self._store.dispute(commit_id)
        if dispute is None:
            raise NotFound(f"No dispute recorded for {commit_id}", {"commit_id": commit_id})

        target = CommitmentState.SETTLED if favor_contributor else CommitmentState.REFUNDED
        undo: list = []
        try:
            dispute.resolve(favor_contributor, now)
            undo.append(lambda: _unresolve(dispute))

            record.transition_to(target)
            record.closed_utc = now
            undo.append(lambda: _reopen(record))

            if favor_contributor:
                self._machine.pay_contributor(record)
                undo.append(lambda: self._vault.transfer(
                    record.token, record.contributor, self._ledger.escrow_account, record.amount,
                ))
            else:
                self._ledger.credit(record.tenant_id, record.amount)
                undo.append(lambda: self._ledger.debit(record.tenant_id, record.amount))

            if dispute.stake > 0:
                self._vault.transfer(
                    record.token, self._ledger.escrow_account, dispute.disputer_id, dispute.stake,
                )
        except Exception:
            for step in reversed(undo):
                step()
            raise
        return record

    @staticmethod
    def require_window_open(record: CommitmentRecord, now: datetime) -> None:
        """submitted_at <= now <= submitted_at + dispute_window."""
        submitted = record.submitted_utc
        release_after = record.release_after_utc
        if submitted is None or release_after is None or not (submitted <= now <= release_after):
            raise WindowClosed(
                f"{record.commit_id}: dispute window is not open",
                {
                    "commit_id": record.commit_id,
                    "opens": submitted.isoformat() if submitted else None,
                    "closes": release_after.isoformat() if release_after else None,
                    "now": now.isoformat(),
                },
            )


def _unresolve(dispute: DisputeRecord) -> None:
    dispute.resolved = False
    dispute.favor_contributor = None
    dispute.resolved_utc = None


def _reopen(record: CommitmentRecord) -> None:
    record.state = CommitmentState.DISPUTED
    record.closed_utc = None
