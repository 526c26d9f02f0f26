"""Tests for the balance ledger — proves the per-tenant balance invariant holds."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from commitprotocol.config import ProtocolParams
from commitprotocol.errors import (
    AlreadyRegistered,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvariantViolation,
    NotFound,
    ProtocolError,
    UnregisteredTenant,
)
from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault
from commitprotocol.persistence.store import LedgerStore


def _now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def vault() -> TokenVault:
    v = TokenVault()
    v.mint("MNEE", "admin-1", Decimal("20000"))
    return v


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def ledger(store: LedgerStore, vault: TokenVault) -> BalanceLedger:
    return BalanceLedger(store, vault, ProtocolParams())


def _registered(ledger: BalanceLedger, deposit: str = "10000") -> BalanceLedger:
    ledger.register("guild-1", "admin-1", payer="admin-1", now=_now())
    if Decimal(deposit) > 0:
        ledger.deposit("guild-1", Decimal(deposit), payer="admin-1")
    return ledger


class TestRegistration:
    def test_register_charges_fee(self, ledger, vault, store) -> None:
        tenant = ledger.register("guild-1", "admin-1", payer="admin-1", now=_now())
        assert tenant.active
        assert tenant.available_balance == Decimal("0")
        assert tenant.registered_utc == _now()
        assert vault.balance_of("MNEE", "admin-1") == Decimal("19985")
        assert vault.balance_of("MNEE", "escrow") == Decimal("15")
        assert store.accrued_fees == Decimal("15")

    def test_register_twice_fails(self, ledger) -> None:
        ledger.register("guild-1", "admin-1", payer="admin-1", now=_now())
        with pytest.raises(AlreadyRegistered):
            ledger.register("guild-1", "admin-1", payer="admin-1", now=_now())

    def test_register_without_fee_funds_fails_cleanly(self, ledger, store) -> None:
        with pytest.raises(InsufficientBalance):
            ledger.register("guild-2", "broke", payer="broke", now=_now())
        assert store.tenant("guild-2") is None
        assert store.accrued_fees == Decimal("0")

    def test_register_blank_id_fails(self, ledger) -> None:
        with pytest.raises(InvalidAddress):
            ledger.register("  ", "admin-1", payer="admin-1", now=_now())

    def test_escrow_account_cannot_pay_fee(self, ledger, store) -> None:
        with pytest.raises(InvalidAddress, match="escrow account"):
            ledger.register("guild-1", "admin-1", payer="escrow", now=_now())
        assert store.tenant("guild-1") is None
        assert store.accrued_fees == Decimal("0")

    def test_zero_fee_charges_nothing(self, store, vault) -> None:
        ledger = BalanceLedger(store, vault, ProtocolParams(registration_fee=Decimal("0")))
        ledger.register("guild-1", "admin-1", payer="nobody", now=_now())
        assert store.accrued_fees == Decimal("0")


class TestDeposit:
    def test_deposit_updates_counters(self, ledger, vault) -> None:
        _registered(ledger)
        tenant = ledger.get("guild-1")
        assert tenant.total_deposited == Decimal("10000")
        assert tenant.available_balance == Decimal("10000")
        assert tenant.invariant_holds()
        assert vault.balance_of("MNEE", "escrow") == Decimal("10015")

    def test_deposit_unregistered_fails(self, ledger) -> None:
        with pytest.raises(UnregisteredTenant):
            ledger.deposit("ghost", Decimal("1"), payer="admin-1")

    def test_deposit_inactive_fails(self, ledger) -> None:
        _registered(ledger)
        ledger.set_active("guild-1", False)
        with pytest.raises(UnregisteredTenant):
            ledger.deposit("guild-1", Decimal("1"), payer="admin-1")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_deposit_rejects_non_positive(self, ledger, amount) -> None:
        _registered(ledger, deposit="0")
        with pytest.raises(InvalidAmount):
            ledger.deposit("guild-1", Decimal(amount), payer="admin-1")

    def test_escrow_account_cannot_deposit(self, ledger, vault) -> None:
        _registered(ledger)
        with pytest.raises(InvalidAddress):
            ledger.deposit("guild-1", Decimal("900"), payer="escrow")
        tenant = ledger.get("guild-1")
        assert tenant.total_deposited == Decimal("10000")
        assert tenant.available_balance == Decimal("10000")
        assert vault.balance_of("MNEE", "escrow") == Decimal("10015")

    def test_deposit_beyond_wallet_leaves_no_trace(self, ledger) -> None:
        _registered(ledger)
        with pytest.raises(InsufficientBalance):
            ledger.deposit("guild-1", Decimal("999999"), payer="admin-1")
        tenant = ledger.get("guild-1")
        assert tenant.total_deposited == Decimal("10000")
        assert tenant.invariant_holds()


class TestWithdraw:
    def test_withdraw_pays_out(self, ledger, vault) -> None:
        _registered(ledger)
        tenant = ledger.withdraw("guild-1", "treasury", Decimal("2500"))
        assert tenant.available_balance == Decimal("7500")
        assert tenant.total_withdrawn == Decimal("2500")
        assert tenant.invariant_holds()
        assert vault.balance_of("MNEE", "treasury") == Decimal("2500")

    def test_withdraw_overdraft_fails(self, ledger) -> None:
        _registered(ledger)
        with pytest.raises(InsufficientBalance) as exc:
            ledger.withdraw("guild-1", "treasury", Decimal("10000.01"))
        assert exc.value.required == Decimal("10000.01")
        assert exc.value.available == Decimal("10000")
        assert ledger.get("guild-1").available_balance == Decimal("10000")

    @pytest.mark.parametrize("to", ["", "  ", "escrow"])
    def test_withdraw_bad_recipient(self, ledger, vault, to) -> None:
        _registered(ledger)
        with pytest.raises(InvalidAddress):
            ledger.withdraw("guild-1", to, Decimal("100"))
        tenant = ledger.get("guild-1")
        assert tenant.available_balance == Decimal("10000")
        assert tenant.total_withdrawn == Decimal("0")
        assert vault.balance_of("MNEE", "escrow") == Decimal("10015")

    def test_withdraw_unknown_tenant(self, ledger) -> None:
        with pytest.raises(NotFound):
            ledger.withdraw("ghost", "treasury", Decimal("1"))


class TestDebitCredit:
    def test_debit_reserves(self, ledger) -> None:
        _registered(ledger)
        tenant = ledger.debit("guild-1", Decimal("1000"))
        assert tenant.available_balance == Decimal("9000")
        assert tenant.total_committed == Decimal("1000")
        assert tenant.invariant_holds()

    def test_debit_overdraft_is_all_or_nothing(self, ledger) -> None:
        _registered(ledger)
        with pytest.raises(InsufficientBalance):
            ledger.debit("guild-1", Decimal("10001"))
        tenant = ledger.get("guild-1")
        assert tenant.available_balance == Decimal("10000")
        assert tenant.total_committed == Decimal("0")

    def test_credit_releases(self, ledger) -> None:
        _registered(ledger)
        ledger.debit("guild-1", Decimal("1000"))
        tenant = ledger.credit("guild-1", Decimal("1000"))
        assert tenant.available_balance == Decimal("10000")
        assert tenant.total_committed == Decimal("0")
        assert tenant.invariant_holds()

    def test_credit_cannot_exceed_reserved(self, ledger) -> None:
        _registered(ledger)
        ledger.debit("guild-1", Decimal("100"))
        with pytest.raises(InvalidAmount):
            ledger.credit("guild-1", Decimal("101"))
        assert ledger.get("guild-1").available_balance <= ledger.get("guild-1").total_deposited


class TestFees:
    def test_withdraw_fees(self, ledger, vault, store) -> None:
        _registered(ledger)
        assert ledger.withdraw_fees("dao") == Decimal("15")
        assert store.accrued_fees == Decimal("0")
        assert vault.balance_of("MNEE", "dao") == Decimal("15")

    def test_withdraw_fees_when_none(self, ledger) -> None:
        with pytest.raises(InvalidAmount):
            ledger.withdraw_fees("dao")

    def test_withdraw_fees_to_escrow_rejected(self, ledger, store) -> None:
        _registered(ledger)
        with pytest.raises(InvalidAddress):
            ledger.withdraw_fees("escrow")
        assert store.accrued_fees == Decimal("15")


class TestInvariantCheck:
    def test_corrupted_counters_raise_protocol_error(self, ledger) -> None:
        _registered(ledger)
        ledger.get("guild-1").total_deposited += Decimal("1")
        with pytest.raises(InvariantViolation) as exc:
            ledger.debit("guild-1", Decimal("1"))
        assert isinstance(exc.value, ProtocolError)
        assert exc.value.code == "INVARIANT_VIOLATION"
        assert exc.value.details["tenant_id"] == "guild-1"
