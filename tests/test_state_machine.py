"""Tests for the commitment state machine — create, submit, settle."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from commitprotocol.config import ProtocolParams
from commitprotocol.engine.state_machine import CommitmentStateMachine
from commitprotocol.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidDeadline,
    InvalidState,
    NotFound,
    Unauthorized,
    UnregisteredTenant,
    WindowClosed,
)
from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.commitment import (
    COMMITMENT_TRANSITIONS,
    TERMINAL_STATES,
    CommitmentState,
)
from commitprotocol.persistence.store import LedgerStore


def _now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


WINDOW = timedelta(days=3)


class _Harness:
    def __init__(self) -> None:
        self.vault = TokenVault()
        self.vault.mint("MNEE", "admin-1", Decimal("20000"))
        self.store = LedgerStore()
        self.ledger = BalanceLedger(self.store, self.vault, ProtocolParams())
        self.machine = CommitmentStateMachine(self.store, self.ledger, self.vault)
        self.ledger.register("guild-1", "admin-1", payer="admin-1", now=_now())
        self.ledger.deposit("guild-1", Decimal("10000"), payer="admin-1")

    def create(self, amount: str = "1000", window: timedelta = WINDOW, **kwargs):
        args = dict(
            tenant_id="guild-1",
            creator_id="relayer",
            contributor="alice",
            token="MNEE",
            amount=Decimal(amount),
            deadline=_now() + timedelta(days=7),
            dispute_window=window,
            spec_ref="ipfs://spec",
            now=_now(),
        )
        args.update(kwargs)
        return self.machine.create(**args)


@pytest.fixture
def h() -> _Harness:
    return _Harness()


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self) -> None:
        for state in TERMINAL_STATES:
            assert COMMITMENT_TRANSITIONS[state] == frozenset()

    def test_no_cancellation_path(self) -> None:
        assert CommitmentState.REFUNDED not in COMMITMENT_TRANSITIONS[CommitmentState.FUNDED]
        assert CommitmentState.REFUNDED not in COMMITMENT_TRANSITIONS[CommitmentState.SUBMITTED]

    def test_illegal_transition_raises(self, h) -> None:
        record = h.create()
        with pytest.raises(InvalidState) as exc:
            record.transition_to(CommitmentState.SETTLED)
        assert exc.value.actual == CommitmentState.FUNDED
        assert record.state == CommitmentState.FUNDED


class TestCreate:
    def test_create_reserves_funds(self, h) -> None:
        record = h.create()
        assert record.commit_id == "C-00000001"
        assert record.state == CommitmentState.FUNDED
        assert record.created_utc == _now()
        tenant = h.ledger.get("guild-1")
        assert tenant.available_balance == Decimal("9000")
        assert tenant.total_committed == Decimal("1000")

    def test_ids_are_sequential(self, h) -> None:
        ids = [h.create(amount="10").commit_id for _ in range(3)]
        assert ids == ["C-00000001", "C-00000002", "C-00000003"]

    def test_stored_id_is_not_released(self, h) -> None:
        first = h.create(amount="10")
        h.store.release_commit_id(first.commit_id)
        assert h.create(amount="10").commit_id == "C-00000002"

    def test_exact_balance_is_allowed(self, h) -> None:
        h.create(amount="10000")
        assert h.ledger.get("guild-1").available_balance == Decimal("0")

    def test_overdraft_rejected_without_debit(self, h) -> None:
        with pytest.raises(InsufficientBalance):
            h.create(amount="10000.000001")
        assert h.ledger.get("guild-1").available_balance == Decimal("10000")
        assert h.store.commitment_count == 0

    def test_unsupported_token(self, h) -> None:
        with pytest.raises(InvalidAddress, match="Unsupported payment token"):
            h.create(token="USDC")

    def test_empty_contributor(self, h) -> None:
        with pytest.raises(InvalidAddress):
            h.create(contributor="")

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_non_positive_amount(self, h, amount) -> None:
        with pytest.raises(InvalidAmount):
            h.create(amount=amount)

    def test_deadline_must_be_future(self, h) -> None:
        with pytest.raises(InvalidDeadline):
            h.create(deadline=_now())

    def test_negative_window_rejected(self, h) -> None:
        with pytest.raises(InvalidDeadline):
            h.create(window=timedelta(seconds=-1))

    def test_window_must_be_timedelta(self, h) -> None:
        with pytest.raises(InvalidDeadline):
            h.create(window=3)
        assert h.store.commitment_count == 0

    def test_naive_deadline_rejected(self, h) -> None:
        with pytest.raises(InvalidDeadline, match="deadline"):
            h.create(deadline=datetime(2026, 3, 9, 12, 0, 0))
        assert h.ledger.get("guild-1").available_balance == Decimal("10000")

    def test_naive_now_rejected(self, h) -> None:
        with pytest.raises(InvalidDeadline):
            h.create(now=datetime(2026, 3, 2, 12, 0, 0))
        assert h.store.commitment_count == 0

    def test_escrow_account_as_contributor(self, h) -> None:
        with pytest.raises(InvalidAddress, match="escrow account"):
            h.create(contributor="escrow")
        assert h.ledger.get("guild-1").total_committed == Decimal("0")

    def test_inactive_tenant(self, h) -> None:
        h.ledger.set_active("guild-1", False)
        with pytest.raises(UnregisteredTenant):
            h.create()

    def test_unknown_tenant(self, h) -> None:
        with pytest.raises(UnregisteredTenant):
            h.create(tenant_id="ghost")


class TestSubmit:
    def test_submit_records_evidence(self, h) -> None:
        record = h.create()
        at = _now() + timedelta(days=1)
        h.machine.submit("guild-1", record.commit_id, "ipfs://evidence", now=at)
        assert record.state == CommitmentState.SUBMITTED
        assert record.evidence_ref == "ipfs://evidence"
        assert record.release_after_utc == at + WINDOW

    def test_submit_after_deadline_is_accepted(self, h) -> None:
        record = h.create()
        late = record.deadline_utc + timedelta(days=2)
        h.machine.submit("guild-1", record.commit_id, "ipfs://late", now=late)
        assert record.state == CommitmentState.SUBMITTED
        assert record.release_after_utc == late + WINDOW

    def test_submit_twice_rejected(self, h) -> None:
        record = h.create()
        h.machine.submit("guild-1", record.commit_id, "ipfs://evidence", now=_now())
        with pytest.raises(InvalidState) as exc:
            h.machine.submit("guild-1", record.commit_id, "ipfs://other", now=_now())
        assert exc.value.expected == CommitmentState.FUNDED
        assert exc.value.actual == CommitmentState.SUBMITTED
        assert record.evidence_ref == "ipfs://evidence"

    def test_submit_wrong_tenant(self, h) -> None:
        record = h.create()
        with pytest.raises(Unauthorized):
            h.machine.submit("guild-2", record.commit_id, "ipfs://evidence", now=_now())

    def test_submit_unknown(self, h) -> None:
        with pytest.raises(NotFound):
            h.machine.submit("guild-1", "C-99999999", "ipfs://evidence", now=_now())

    def test_naive_submission_time_rejected(self, h) -> None:
        record = h.create()
        naive = datetime(2026, 3, 3, 12, 0, 0)
        with pytest.raises(InvalidDeadline):
            h.machine.submit("guild-1", record.commit_id, "ipfs://evidence", now=naive)
        assert record.state == CommitmentState.FUNDED
        assert record.evidence_ref is None


class TestSettle:
    def _submitted(self, h, window: timedelta = WINDOW):
        record = h.create(window=window)
        h.machine.submit("guild-1", record.commit_id, "ipfs://evidence", now=_now())
        return record

    def test_settle_before_window_closes(self, h) -> None:
        record = self._submitted(h)
        with pytest.raises(WindowClosed):
            h.machine.settle(record.commit_id, now=_now() + WINDOW - timedelta(seconds=1))
        assert record.state == CommitmentState.SUBMITTED

    def test_settle_at_release_instant(self, h) -> None:
        record = self._submitted(h)
        h.machine.settle(record.commit_id, now=_now() + WINDOW)
        assert record.state == CommitmentState.SETTLED
        assert record.closed_utc == _now() + WINDOW
        assert h.vault.balance_of("MNEE", "alice") == Decimal("1000")

    def test_zero_window_settles_immediately(self, h) -> None:
        record = self._submitted(h, window=timedelta(0))
        assert h.machine.can_settle(record.commit_id, now=_now())
        h.machine.settle(record.commit_id, now=_now())
        assert record.state == CommitmentState.SETTLED

    def test_settle_funded_rejected(self, h) -> None:
        record = h.create()
        with pytest.raises(InvalidState):
            h.machine.settle(record.commit_id, now=_now() + timedelta(days=30))

    def test_settle_twice_rejected(self, h) -> None:
        record = self._submitted(h)
        h.machine.settle(record.commit_id, now=_now() + WINDOW)
        with pytest.raises(InvalidState):
            h.machine.settle(record.commit_id, now=_now() + WINDOW)
        assert h.vault.balance_of("MNEE", "alice") == Decimal("1000")

    def test_failed_payout_restores_record(self, h) -> None:
        record = self._submitted(h)

        def _reject(token, sender, recipient, amount) -> None:
            raise RuntimeError("wallet offline")

        h.vault.add_receive_hook("alice", _reject)
        with pytest.raises(RuntimeError):
            h.machine.settle(record.commit_id, now=_now() + WINDOW)
        assert record.state == CommitmentState.SUBMITTED
        assert record.closed_utc is None
        assert h.vault.balance_of("MNEE", "alice") == Decimal("0")

    def test_can_settle_unknown(self, h) -> None:
        assert not h.machine.can_settle("C-99999999", now=_now())

    def test_naive_settle_time_rejected(self, h) -> None:
        record = self._submitted(h)
        naive = datetime(2026, 3, 30, 12, 0, 0)
        with pytest.raises(InvalidDeadline):
            h.machine.settle(record.commit_id, now=naive)
        with pytest.raises(InvalidDeadline):
            h.machine.can_settle(record.commit_id, now=naive)
        assert record.state == CommitmentState.SUBMITTED
        assert h.vault.balance_of("MNEE", "alice") == Decimal("0")
