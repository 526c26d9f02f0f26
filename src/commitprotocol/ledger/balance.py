"""Balance ledger — per-tenant deposit/spend/withdraw accounting.

The ledger owns the balance invariant:
    available_balance == total_deposited - total_committed - total_withdrawn
    0 <= available_balance <= total_deposited

Every operation validates completely before touching any counter, so a
failing call leaves no partial debit behind. ``debit``/``credit`` are the
internal primitives the state machine uses to reserve and release funds;
the service never exposes them.

Token movements (registration fee, deposit pull, withdrawal payout) go
through the TokenVault between the caller's wallet and the escrow account.
Event logging is handled by the service layer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from commitprotocol.config import ProtocolParams
from commitprotocol.errors import (
    AlreadyRegistered,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvariantViolation,
    NotFound,
    UnregisteredTenant,
)
from commitprotocol.ledger.token import TokenVault
from commitprotocol.models.tenant import TenantRecord
from commitprotocol.persistence.store import LedgerStore


class BalanceLedger:
    """Tenant balance accounting on top of a LedgerStore.

    Usage:
        ledger = BalanceLedger(store, vault, params)
        ledger.register("guild-1", "admin-1", payer="admin-1")
        ledger.deposit("guild-1", Decimal("10000"), payer="admin-1")
        ledger.debit("guild-1", Decimal("1000"))
    """

    def __init__(
        self,
        store: LedgerStore,
        vault: TokenVault,
        params: ProtocolParams,
    ) -> None:
        self._store = store
        self._vault = vault
        self.params = params

    @property
    def token(self) -> str:
        return self.params.payment_token

    @property
    def escrow_account(self) -> str:
        return self.params.escrow_account

    def register(
        self,
        tenant_id: str,
        admin_id: str,
        payer: str,
        now: Optional[datetime] = None,
    ) -> TenantRecord:
        """Register a tenant, charging the registration fee from ``payer``."""
        if not tenant_id or not tenant_id.strip():
            raise InvalidAddress("Tenant id must be non-empty")
        if not admin_id or not admin_id.strip():
            raise InvalidAddress("Tenant admin id must be non-empty")
        if tenant_id in self._store.tenants:
            raise AlreadyRegistered(
                f"Tenant already registered: {tenant_id}", {"tenant_id": tenant_id},
            )
        self.require_party(payer, "Payer")
        if now is None:
            now = datetime.now(timezone.utc)

        fee = self.params.registration_fee
        if fee > 0:
            self._vault.transfer(self.token, payer, self.escrow_account, fee)
            self._store.accrued_fees += fee

        record = TenantRecord(tenant_id=tenant_id, admin_id=admin_id, registered_utc=now)
        self._store.tenants[tenant_id] = record
        return record

    def deposit(self, tenant_id: str, amount: Decimal, payer: str) -> TenantRecord:
        """Pull ``amount`` from the payer's wallet into the tenant's balance."""
        tenant = self.require_active(tenant_id)
        _require_positive(amount)
        self.require_party(payer, "Payer")
        self._vault.transfer(self.token, payer, self.escrow_account, amount)
        tenant.total_deposited += amount
        tenant.available_balance += amount
        self._check(tenant)
        return tenant

    def withdraw(self, tenant_id: str, to: str, amount: Decimal) -> TenantRecord:
        """Pay ``amount`` of available balance out to ``to``."""
        tenant = self.require(tenant_id)
        _require_positive(amount)
        self.require_party(to, "Withdrawal recipient")
        if amount > tenant.available_balance:
            raise InsufficientBalance(amount, tenant.available_balance, account=tenant_id)

        tenant.available_balance -= amount
        tenant.total_withdrawn += amount
        try:
            self._vault.transfer(self.token, self.escrow_account, to, amount)
        except Exception:
            tenant.available_balance += amount
            tenant.total_withdrawn -= amount
            raise
        self._check(tenant)
        return tenant

    def debit(self, tenant_id: str, amount: Decimal) -> TenantRecord:
        """Reserve funds for a commitment. Internal primitive."""
        tenant = self.require(tenant_id)
        _require_positive(amount)
        if amount > tenant.available_balance:
            raise InsufficientBalance(amount, tenant.available_balance, account=tenant_id)
        tenant.available_balance -= amount
        tenant.total_committed += amount
        self._check(tenant)
        return tenant

    def credit(self, tenant_id: str, amount: Decimal) -> TenantRecord:
        """Release previously reserved funds back to available. Internal primitive."""
        tenant = self.require(tenant_id)
        _require_positive(amount)
        if amount > tenant.total_committed:
            raise InvalidAmount(
                f"Cannot release {amount}: only {tenant.total_committed} is reserved",
                {"amount": str(amount), "total_committed": str(tenant.total_committed)},
            )
        tenant.available_balance += amount
        tenant.total_committed -= amount
        self._check(tenant)
        return tenant

    def set_active(self, tenant_id: str, active: bool) -> TenantRecord:
        tenant = self.require(tenant_id)
        tenant.active = active
        return tenant

    def withdraw_fees(self, to: str) -> Decimal:
        """Pay all accrued registration fees to ``to``. Returns the amount."""
        self.require_party(to, "Fee recipient")
        amount = self._store.accrued_fees
        if amount <= 0:
            raise InvalidAmount("No accrued fees to withdraw")
        self._vault.transfer(self.token, self.escrow_account, to, amount)
        self._store.accrued_fees = Decimal("0")
        return amount

    def get(self, tenant_id: str) -> Optional[TenantRecord]:
        return self._store.tenant(tenant_id)

    def require(self, tenant_id: str) -> TenantRecord:
        tenant = self._store.tenant(tenant_id)
        if tenant is None:
            raise NotFound(f"Unknown tenant: {tenant_id}", {"tenant_id": tenant_id})
        return tenant

    def require_party(self, account: str, label: str) -> None:
        """Reject an empty id or the escrow account as the other side of a transfer."""
        if not account or not account.strip():
            raise InvalidAddress(f"{label} must be non-empty")
        if account == self.escrow_account:
            raise InvalidAddress(
                f"{label} cannot be the escrow account", {"account": account},
            )

    def require_active(self, tenant_id: str) -> TenantRecord:
        tenant = self._store.tenant(tenant_id)
        if tenant is None or not tenant.active:
            raise UnregisteredTenant(
                f"Tenant not registered or inactive: {tenant_id}", {"tenant_id": tenant_id},
            )
        return tenant

    @staticmethod
    def _check(tenant: TenantRecord) -> None:
        if not tenant.invariant_holds():
            raise InvariantViolation(
                f"Balance invariant violated for {tenant.tenant_id}", tenant.balances(),
            )


def _require_positive(amount: Decimal) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be a positive Decimal", {"amount": str(amount)})
