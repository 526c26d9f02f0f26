"""Property tests — random operation sequences against the ledger invariants.

Each run drives the service with a seeded random mix of deposits,
withdrawals, commitments, submissions, disputes, resolutions and batch
settlements while the clock moves forward, and re-checks after every step:

- every tenant satisfies the balance invariant;
- commitment states only move along legal transitions, terminal states stay put;
- each commitment pays its contributor at most once;
- the escrow account holds exactly what the ledger says it owes.
"""

import random

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.commitment import (
    COMMITMENT_TRANSITIONS,
    TERMINAL_STATES,
    CommitmentState,
)
from commitprotocol.models.roles import RoleConfig
from commitprotocol.service import EscrowService


def _now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


TENANTS = ("guild-1", "guild-2")
CONTRIBUTORS = ("alice", "bob", "carol")
STEPS = 250


class _Simulation:
    def __init__(self, seed: int) -> None:
        self.rng = random.Random(seed)
        self.clock = _now()
        self.vault = TokenVault()
        self.vault.mint("MNEE", "treasurer", Decimal("1000000"))
        self.vault.mint("MNEE", "bot", Decimal("1000"))
        self.service = EscrowService(
            RoleConfig(owner="dao", arbitrator="arb", relayer="bot", executor="keeper"),
            vault=self.vault,
        )
        self.supply = self.vault.total_supply("MNEE")
        self.states: dict = {}
        for tenant_id in TENANTS:
            assert self.service.register("treasurer", tenant_id, "treasurer", now=self.clock).success

    def _amount(self, low: int, high: int) -> Decimal:
        return Decimal(self.rng.randint(low, high)) / Decimal(100)

    def _pick(self, state=None):
        candidates = self.service.list_commitments(state=state)
        return self.rng.choice(candidates) if candidates else None

    def step(self) -> None:
        self.clock += timedelta(minutes=self.rng.randint(0, 36 * 60))
        now = self.clock
        op = self.rng.choice(
            ["deposit", "withdraw", "create", "create", "submit", "submit",
             "dispute", "resolve", "settle", "settle_one"],
        )
        tenant_id = self.rng.choice(TENANTS)
        if op == "deposit":
            self.service.deposit("treasurer", tenant_id, self._amount(1, 500000), now=now)
        elif op == "withdraw":
            self.service.withdraw("bot", tenant_id, "treasurer", self._amount(1, 200000), now=now)
        elif op == "create":
            self.service.create_commitment(
                "bot", tenant_id, self.rng.choice(CONTRIBUTORS), self._amount(1, 300000),
                now + timedelta(hours=self.rng.randint(1, 240)),
                timedelta(hours=self.rng.randint(0, 72)), "ipfs://spec", now=now,
            )
        elif op == "submit":
            record = self._pick(CommitmentState.FUNDED)
            if record is not None:
                self.service.submit("bot", record.tenant_id, record.commit_id, "ipfs://ev", now=now)
        elif op == "dispute":
            record = self._pick(CommitmentState.SUBMITTED)
            if record is not None:
                self.service.open_dispute(
                    "bot", record.tenant_id, record.commit_id, self._amount(50, 500), now=now,
                )
        elif op == "resolve":
            record = self._pick(CommitmentState.DISPUTED)
            if record is not None:
                self.service.resolve_dispute(
                    "arb", record.commit_id, favor_contributor=self.rng.random() < 0.5, now=now,
                )
        elif op == "settle":
            ready = self.service.check_settleable(now)
            # Another collaborator may act between check and execute.
            stale = self._pick(CommitmentState.SUBMITTED)
            if stale is not None and self.rng.random() < 0.3:
                self.service.open_dispute(
                    "bot", stale.tenant_id, stale.commit_id, Decimal("1"), now=now,
                )
            self.service.execute_settlement("keeper", ready + ready[:1], now=now)
        else:
            record = self._pick()
            if record is not None:
                self.service.settle("keeper", record.commit_id, now=now)

    def check(self) -> None:
        service = self.service
        for tenant_id in TENANTS:
            tenant = service.get_tenant(tenant_id)
            assert tenant.invariant_holds(), tenant.balances()

        for record in service.list_commitments():
            previous = self.states.get(record.commit_id)
            if previous is not None and previous != record.state:
                assert previous not in TERMINAL_STATES
                assert record.state in COMMITMENT_TRANSITIONS[previous]
            self.states[record.commit_id] = record.state

        for contributor in CONTRIBUTORS:
            paid = sum(
                (c.amount for c in service.list_commitments(contributor=contributor)
                 if c.state == CommitmentState.SETTLED),
                Decimal("0"),
            )
            assert self.vault.balance_of("MNEE", contributor) == paid

        owed = service.accrued_fees
        owed += sum((service.get_tenant(t).available_balance for t in TENANTS), Decimal("0"))
        for record in service.list_commitments():
            if not record.is_terminal:
                owed += record.amount
            dispute = service.get_dispute(record.commit_id)
            if dispute is not None and not dispute.resolved:
                owed += dispute.stake
        assert self.vault.balance_of("MNEE", "escrow") == owed
        assert self.vault.total_supply("MNEE") == self.supply


@pytest.mark.parametrize("seed", range(8))
def test_random_sequences_preserve_invariants(seed: int) -> None:
    sim = _Simulation(seed)
    for _ in range(STEPS):
        sim.step()
        sim.check()
    assert sim.service.event_log.count > len(TENANTS)


@pytest.mark.parametrize("seed", range(4))
def test_settlement_never_precedes_release(seed: int) -> None:
    sim = _Simulation(seed)
    for _ in range(STEPS):
        sim.step()
    for record in sim.service.list_commitments(state=CommitmentState.SETTLED):
        dispute = sim.service.get_dispute(record.commit_id)
        if dispute is None:
            assert record.closed_utc >= record.release_after_utc
        else:
            assert dispute.favor_contributor is True


@pytest.mark.parametrize("offset_seconds,expected", [
    (-1, True),
    (0, True),
    (1, False),
])
def test_dispute_window_boundaries(offset_seconds: int, expected: bool) -> None:
    sim = _Simulation(0)
    service = sim.service
    service.deposit("treasurer", "guild-1", Decimal("100"), now=_now())
    created = service.create_commitment(
        "bot", "guild-1", "alice", Decimal("10"), _now() + timedelta(days=1),
        timedelta(hours=6), "ipfs://spec", now=_now(),
    )
    commit_id = created.data["commit_id"]
    service.submit("bot", "guild-1", commit_id, "ipfs://ev", now=_now())
    at = _now() + timedelta(hours=6, seconds=offset_seconds)
    result = service.open_dispute("bot", "guild-1", commit_id, Decimal("1"), now=at)
    assert result.success is expected
    if not expected:
        assert service.can_settle(commit_id, now=at)
