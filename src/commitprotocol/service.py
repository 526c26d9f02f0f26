"""Escrow service — unified facade for the commitment ledger.

This is the primary interface for collaborators (bot, web front-end,
automation, indexers). It orchestrates all subsystems:
- Balance ledger (register, deposit, withdraw)
- Commitment state machine (create, submit, settle)
- Dispute engine (open, resolve)
- Settlement scheduler (check, execute)
- Access control (roles, rotation, parameter tuning)

Every mutating call passes the access-control check first, runs inside
the reentrancy guard, and emits a change record. All operations return a
typed ServiceResult; protocol errors never escape a write. A call either
fully applies or has no effect: if the change record cannot be written,
the mutation is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from commitprotocol.config import TUNABLE_PARAMETERS, ProtocolParams
from commitprotocol.engine.disputes import DisputeEngine
from commitprotocol.engine.scheduler import SettlementScheduler
from commitprotocol.engine.stake import ReputationAggregate, StakeQuote, quote_stake
from commitprotocol.engine.state_machine import CommitmentStateMachine
from commitprotocol.errors import AuditTrailFailure, InvalidAmount, ProtocolError
from commitprotocol.governance.access_control import AccessControl, ReentrancyGuard
from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.commitment import (
    CommitmentRecord,
    CommitmentState,
    DisputeRecord,
    require_aware,
)
from commitprotocol.models.roles import Role, RoleConfig
from commitprotocol.models.tenant import TenantRecord
from commitprotocol.persistence.event_log import EventKind, EventLog, EventRecord
from commitprotocol.persistence.store import LedgerStore

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


class EscrowService:
    """Optimistic escrow ledger facade.

    Usage:
        roles = RoleConfig(owner="dao", arbitrator="arb", relayer="bot", executor="keeper")
        service = EscrowService(roles)

        service.register("treasurer", "guild-1", admin_id="treasurer")
        service.deposit("treasurer", "guild-1", Decimal("10000"))
        result = service.create_commitment("bot", "guild-1", "alice", Decimal("1000"),
                                           deadline, timedelta(days=3), "ipfs://spec")
        service.submit("bot", "guild-1", result.data["commit_id"], "ipfs://evidence")

        # Automation
        ready = service.check_settleable()
        service.execute_settlement("keeper", ready)

    The token vault and event log are optional; fresh in-memory ones are
    created if absent. ``clock`` supplies the ledger's notion of now.
    """

    def __init__(
        self,
        roles: RoleConfig,
        params: Optional[ProtocolParams] = None,
        vault: Optional[TokenVault] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._params = params or ProtocolParams()
        self._access = AccessControl(roles)
        self._guard = ReentrancyGuard()
        self._store = LedgerStore()
        self._vault = vault if vault is not None else TokenVault()
        self._event_log = event_log if event_log is not None else EventLog()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._ledger = BalanceLedger(self._store, self._vault, self._params)
        self._machine = CommitmentStateMachine(self._store, self._ledger, self._vault)
        self._disputes = DisputeEngine(
            self._store, self._ledger, self._vault, self._machine, self._params,
        )
        self._scheduler = SettlementScheduler(
            self._store, self._machine, self._params.max_batch_size,
        )

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = self._event_log.count

        # Set when a batch settlement could not write a change record. The
        # transfers stand; the feed needs operator attention.
        self._audit_degraded: bool = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def params(self) -> ProtocolParams:
        return self._params

    @property
    def roles(self) -> RoleConfig:
        return self._access.roles

    @property
    def vault(self) -> TokenVault:
        return self._vault

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def audit_degraded(self) -> bool:
        return self._audit_degraded

    # ------------------------------------------------------------------
    # Balance ledger
    # ------------------------------------------------------------------

    def register(
        self,
        caller: str,
        tenant_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Register a tenant. The caller pays the registration fee."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            fee = self._params.registration_fee
            tenant = self._ledger.register(tenant_id, admin_id, payer=caller, now=now)

            def _rollback() -> None:
                self._store.tenants.pop(tenant_id, None)
                if fee > 0:
                    self._store.accrued_fees -= fee
                    self._vault.transfer(self._ledger.token, self._ledger.escrow_account, caller, fee)

            payload = {**tenant.balances(), "admin_id": admin_id, "fee": str(fee)}
            self._record(EventKind.TENANT_REGISTERED, caller, payload, now, _rollback)
            return {"tenant_id": tenant_id, "fee": str(fee)}

        return self._write("register", _op)

    def deposit(
        self,
        caller: str,
        tenant_id: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Move ``amount`` from the caller's wallet into the tenant's balance."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            tenant = self._ledger.deposit(tenant_id, amount, payer=caller)

            def _rollback() -> None:
                tenant.total_deposited -= amount
                tenant.available_balance -= amount
                self._vault.transfer(self._ledger.token, self._ledger.escrow_account, caller, amount)

            payload = {**tenant.balances(), "amount": str(amount), "payer": caller}
            self._record(EventKind.TENANT_DEPOSITED, caller, payload, now, _rollback)
            return tenant.balances()

        return self._write("deposit", _op)

    def withdraw(
        self,
        caller: str,
        tenant_id: str,
        to: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Relayer-only: pay available balance out to ``to``."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.RELAYER, caller)
            tenant = self._ledger.withdraw(tenant_id, to, amount)

            def _rollback() -> None:
                self._vault.transfer(self._ledger.token, to, self._ledger.escrow_account, amount)
                tenant.available_balance += amount
                tenant.total_withdrawn -= amount

            payload = {**tenant.balances(), "amount": str(amount), "to": to}
            self._record(EventKind.TENANT_WITHDREW, caller, payload, now, _rollback)
            return tenant.balances()

        return self._write("withdraw", _op)

    def deactivate_tenant(
        self, caller: str, tenant_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner-only. Blocks new deposits and commitments for the tenant."""
        return self._set_tenant_active(caller, tenant_id, False, now)

    def reactivate_tenant(
        self, caller: str, tenant_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._set_tenant_active(caller, tenant_id, True, now)

    def withdraw_fees(
        self, caller: str, to: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner-only: pay all accrued registration fees to ``to``."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.OWNER, caller)
            amount = self._ledger.withdraw_fees(to)

            def _rollback() -> None:
                self._vault.transfer(self._ledger.token, to, self._ledger.escrow_account, amount)
                self._store.accrued_fees += amount

            payload = {"to": to, "amount": str(amount)}
            self._record(EventKind.FEES_WITHDRAWN, caller, payload, now, _rollback)
            return payload

        return self._write("withdraw_fees", _op)

    # ------------------------------------------------------------------
    # Commitment lifecycle
    # ------------------------------------------------------------------

    def create_commitment(
        self,
        caller: str,
        tenant_id: str,
        contributor: str,
        amount: Decimal,
        deadline: datetime,
        dispute_window: timedelta,
        spec_ref: str,
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Relayer-only: open a FUNDED commitment, debiting the tenant."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.RELAYER, caller)
            record = self._machine.create(
                tenant_id=tenant_id,
                creator_id=caller,
                contributor=contributor,
                token=token or self._params.payment_token,
                amount=amount,
                deadline=deadline,
                dispute_window=dispute_window,
                spec_ref=spec_ref,
                now=now,
            )

            def _rollback() -> None:
                self._store.commitments.pop(record.commit_id, None)
                self._store.release_commit_id(record.commit_id)
                self._ledger.credit(tenant_id, record.amount)

            tenant = self._ledger.require(tenant_id)
            payload = {**record.to_dict(), "balances": tenant.balances()}
            self._record(EventKind.COMMITMENT_CREATED, caller, payload, now, _rollback)
            return {"commit_id": record.commit_id, "state": record.state.value}

        return self._write("create_commitment", _op)

    def submit(
        self,
        caller: str,
        tenant_id: str,
        commit_id: str,
        evidence_ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Relayer-only: record delivery. FUNDED → SUBMITTED."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.RELAYER, caller)
            record = self._machine.submit(tenant_id, commit_id, evidence_ref, now=now)

            def _rollback() -> None:
                record.state = CommitmentState.FUNDED
                record.evidence_ref = None
                record.submitted_utc = None

            payload = {
                "commit_id": commit_id,
                "tenant_id": tenant_id,
                "state": record.state.value,
                "evidence_ref": evidence_ref,
                "submitted_utc": now.isoformat(),
                "release_after_utc": record.release_after_utc.isoformat(),
            }
            self._record(EventKind.COMMITMENT_SUBMITTED, caller, payload, now, _rollback)
            return {"commit_id": commit_id, "state": record.state.value}

        return self._write("submit", _op)

    def settle(
        self, caller: str, commit_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Executor-only: pay out one commitment whose window has elapsed."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.EXECUTOR, caller)
            record = self._machine.settle(commit_id, now=now)

            def _rollback() -> None:
                self._vault.transfer(
                    record.token, record.contributor, self._ledger.escrow_account, record.amount,
                )
                record.state = CommitmentState.SUBMITTED
                record.closed_utc = None

            self._record(
                EventKind.COMMITMENT_SETTLED, caller, self._settled_payload(record), now, _rollback,
            )
            return {"commit_id": commit_id, "state": record.state.value}

        return self._write("settle", _op)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        caller: str,
        tenant_id: str,
        commit_id: str,
        posted_stake: Decimal,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Relayer-only, on the tenant's behalf. The caller funds the stake."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.RELAYER, caller)
            dispute = self._disputes.open_dispute(
                tenant_id, commit_id, posted_stake, disputer_id=caller, reason=reason, now=now,
            )
            record = self._store.require_commitment(commit_id)

            def _rollback() -> None:
                self._store.disputes.pop(commit_id, None)
                record.state = CommitmentState.SUBMITTED
                if dispute.stake > 0:
                    self._vault.transfer(
                        record.token, self._ledger.escrow_account, caller, dispute.stake,
                    )

            payload = {**dispute.to_dict(), "tenant_id": tenant_id, "state": record.state.value}
            self._record(EventKind.DISPUTE_OPENED, caller, payload, now, _rollback)
            return {"commit_id": commit_id, "state": record.state.value, "stake": str(dispute.stake)}

        return self._write("open_dispute", _op)

    def resolve_dispute(
        self,
        caller: str,
        commit_id: str,
        favor_contributor: bool,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Arbitrator-only. Final: SETTLED or REFUNDED."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.ARBITRATOR, caller)
            record = self._disputes.resolve_dispute(commit_id, favor_contributor, now=now)
            dispute = self._store.dispute(commit_id)

            def _rollback() -> None:
                if dispute.stake > 0:
                    self._vault.transfer(
                        record.token, dispute.disputer_id, self._ledger.escrow_account, dispute.stake,
                    )
                if favor_contributor:
                    self._vault.transfer(
                        record.token, record.contributor, self._ledger.escrow_account, record.amount,
                    )
                else:
                    self._ledger.debit(record.tenant_id, record.amount)
                record.state = CommitmentState.DISPUTED
                record.closed_utc = None
                dispute.resolved = False
                dispute.favor_contributor = None
                dispute.resolved_utc = None

            self._record(
                EventKind.DISPUTE_RESOLVED, caller,
                {**dispute.to_dict(), "state": record.state.value}, now, _rollback,
            )
            if favor_contributor:
                kind, payload = EventKind.COMMITMENT_SETTLED, self._settled_payload(record)
            else:
                tenant = self._ledger.require(record.tenant_id)
                kind = EventKind.COMMITMENT_REFUNDED
                payload = {
                    "commit_id": commit_id,
                    "tenant_id": record.tenant_id,
                    "state": record.state.value,
                    "amount": str(record.amount),
                    "balances": tenant.balances(),
                }
            self._record_follow_up(kind, caller, payload, now)
            return {
                "commit_id": commit_id,
                "state": record.state.value,
                "stake_returned_to": dispute.disputer_id,
            }

        return self._write("resolve_dispute", _op)

    def required_stake(
        self,
        commit_id: str,
        reputation: ReputationAggregate,
        ai_confidence: Decimal,
        now: Optional[datetime] = None,
    ) -> Optional[StakeQuote]:
        """Advisory stake for disputing ``commit_id`` right now.

        Time remaining is measured to the close of the dispute window (or
        from the deadline plus window if the work is not yet submitted).
        Not enforced: the ledger only checks the baseline.
        """
        now = now or self._clock()
        require_aware(now)
        record = self._store.commitment(commit_id)
        if record is None:
            return None
        closes = record.release_after_utc or (record.deadline_utc + record.dispute_window)
        remaining_days = Decimal(str((closes - now).total_seconds())) / _SECONDS_PER_DAY
        return quote_stake(max(remaining_days, Decimal("0")), reputation, ai_confidence, self._params)

    # ------------------------------------------------------------------
    # Settlement automation
    # ------------------------------------------------------------------

    def check_settleable(self, now: Optional[datetime] = None) -> list[str]:
        """Check phase: read-only, open to anyone."""
        return self._scheduler.check_settleable(now or self._clock())

    def execute_settlement(
        self,
        caller: str,
        commit_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Execute phase: executor-only. Stale ids are skipped, not errors."""
        now = now or self._clock()
        ids = list(commit_ids)

        def _on_settled(commit_id: str) -> None:
            record = self._store.require_commitment(commit_id)
            self._record_follow_up(
                EventKind.COMMITMENT_SETTLED, caller, self._settled_payload(record), now,
            )

        def _op() -> dict[str, Any]:
            self._access.require(Role.EXECUTOR, caller)
            outcome = self._scheduler.execute_settlement(ids, now=now, on_settled=_on_settled)
            self._record_follow_up(
                EventKind.BATCH_SETTLEMENT_EXECUTED,
                caller,
                {"requested": ids, "settled": outcome.settled, "skipped": outcome.skipped},
                now,
            )
            return {"settled": outcome.settled, "skipped": outcome.skipped}

        return self._write("execute_settlement", _op)

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def rotate_role(
        self,
        caller: str,
        role: Role,
        new_holder: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner-only. Effective for the very next call."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            before = self._access.roles
            previous = self._access.rotate(caller, role, new_holder)

            def _rollback() -> None:
                self._access.restore(before)

            payload = {"role": role.value, "previous": previous, "holder": new_holder}
            self._record(EventKind.ROLE_ROTATED, caller, payload, now, _rollback)
            return payload

        return self._write("rotate_role", _op)

    def update_parameter(
        self,
        caller: str,
        name: str,
        value: Any,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner-only tuning of registration_fee, baseline_stake, max_batch_size."""
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.OWNER, caller)
            if name not in TUNABLE_PARAMETERS:
                raise ProtocolError(
                    f"Parameter is not tunable at runtime: {name}",
                    {"name": name, "tunable": sorted(TUNABLE_PARAMETERS)},
                )
            try:
                updated = self._params.with_updates(**{name: value})
            except ValueError as e:
                raise InvalidAmount(str(e), {"name": name, "value": str(value)}) from e
            previous = self._params
            self._apply_params(updated)

            payload = {
                "name": name,
                "previous": str(getattr(previous, name)),
                "value": str(getattr(updated, name)),
            }
            self._record(
                EventKind.PARAMETER_UPDATED, caller, payload, now,
                lambda: self._apply_params(previous),
            )
            return payload

        return self._write("update_parameter", _op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        return self._store.tenant(tenant_id)

    def get_commitment(self, commit_id: str) -> Optional[CommitmentRecord]:
        return self._store.commitment(commit_id)

    def get_dispute(self, commit_id: str) -> Optional[DisputeRecord]:
        return self._store.dispute(commit_id)

    def can_settle(self, commit_id: str, now: Optional[datetime] = None) -> bool:
        return self._machine.can_settle(commit_id, now or self._clock())

    @property
    def commitment_count(self) -> int:
        return self._store.commitment_count

    @property
    def registration_fee(self) -> Decimal:
        return self._params.registration_fee

    @property
    def accrued_fees(self) -> Decimal:
        return self._store.accrued_fees

    def list_commitments(
        self,
        tenant_id: Optional[str] = None,
        contributor: Optional[str] = None,
        state: Optional[CommitmentState] = None,
    ) -> list[CommitmentRecord]:
        """Commitments in creation order, filtered by any given criteria."""
        return [
            c for c in self._store.iter_commitments()
            if (tenant_id is None or c.tenant_id == tenant_id)
            and (contributor is None or c.contributor == contributor)
            and (state is None or c.state == state)
        ]

    def list_disputed(self) -> list[CommitmentRecord]:
        return self.list_commitments(state=CommitmentState.DISPUTED)

    def status(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for c in self._store.iter_commitments():
            counts[c.state.value] = counts.get(c.state.value, 0) + 1
        return {
            "tenants": len(self._store.tenants),
            "commitments": self._store.commitment_count,
            "commitments_by_state": counts,
            "accrued_fees": str(self._store.accrued_fees),
            "events": self._event_log.count,
            "roles": self.roles.to_dict(),
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_tenant_active(
        self, caller: str, tenant_id: str, active: bool, now: Optional[datetime],
    ) -> ServiceResult:
        now = now or self._clock()

        def _op() -> dict[str, Any]:
            self._access.require(Role.OWNER, caller)
            tenant = self._ledger.require(tenant_id)
            previous = tenant.active
            self._ledger.set_active(tenant_id, active)
            kind = EventKind.TENANT_REACTIVATED if active else EventKind.TENANT_DEACTIVATED
            self._record(
                kind, caller, {"tenant_id": tenant_id, "active": active}, now,
                lambda: self._ledger.set_active(tenant_id, previous),
            )
            return {"tenant_id": tenant_id, "active": active}

        operation = "reactivate_tenant" if active else "deactivate_tenant"
        return self._write(operation, _op)

    def _apply_params(self, params: ProtocolParams) -> None:
        self._params = params
        self._ledger.params = params
        self._disputes.params = params
        self._scheduler.max_batch_size = params.max_batch_size

    def _settled_payload(self, record: CommitmentRecord) -> dict[str, Any]:
        return {
            "commit_id": record.commit_id,
            "tenant_id": record.tenant_id,
            "state": record.state.value,
            "contributor": record.contributor,
            "token": record.token,
            "amount": str(record.amount),
        }

    def _write(self, operation: str, op: Callable[[], dict[str, Any]]) -> ServiceResult:
        """Run a mutating operation under the guard, translating failures."""
        try:
            with self._guard.enter(operation):
                data = op()
        except ProtocolError as e:
            logger.debug("%s rejected: %s", operation, e)
            return ServiceResult(
                success=False, errors=[str(e)], data=dict(e.details), error_code=e.code,
            )
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _append(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any], now: datetime,
    ) -> None:
        event = EventRecord.create(
            event_id=self._next_event_id(),
            event_kind=kind,
            actor_id=actor_id,
            payload=payload,
            timestamp_utc=now,
        )
        self._event_log.append(event)

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
        on_rollback: Callable[[], None],
    ) -> None:
        """Append the change record for a mutation, or undo the mutation.

        Fail-closed: a mutation without a change record does not stand.
        """
        try:
            self._append(kind, actor_id, payload, now)
        except (ValueError, OSError) as e:
            on_rollback()
            raise AuditTrailFailure(f"Event log failure: {e}", {"event_kind": kind.value}) from e

    def _record_follow_up(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any], now: datetime,
    ) -> None:
        """Append a record after the primary record has already committed.

        MUST NOT roll back: the primary change is already on the feed.
        Sets the degraded flag for operator awareness instead.
        """
        try:
            self._append(kind, actor_id, payload, now)
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("Change record %s could not be written: %s", kind.value, e)
