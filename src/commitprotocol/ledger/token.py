"""Token vault — fungible-token balances the ledger pulls from and pays to.

Models the external token the protocol settles in. The escrow account
(``ProtocolParams.escrow_account``) holds deposits, registration fees and
posted stakes; everything else is a participant's wallet.

Receive hooks model tokens that call back into the recipient on
transfer. A hook runs after the balances have moved; if it raises, the
transfer is reversed and the error propagates.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Dict, List, Tuple

from commitprotocol.errors import InsufficientBalance, InvalidAddress, InvalidAmount


ReceiveHook = Callable[[str, str, str, Decimal], None]  # token, sender, recipient, amount


class TokenVault:
    """In-memory balances keyed by (token, account).

    Usage:
        vault = TokenVault()
        vault.mint("MNEE", "alice", Decimal("100"))
        vault.transfer("MNEE", "alice", "escrow", Decimal("15"))
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], Decimal] = {}
        self._hooks: Dict[str, List[ReceiveHook]] = {}

    def balance_of(self, token: str, account: str) -> Decimal:
        return self._balances.get((token, account), Decimal("0"))

    def mint(self, token: str, account: str, amount: Decimal) -> Decimal:
        """Credit new units to an account. Returns the new balance."""
        _require_account(account)
        if amount <= 0:
            raise InvalidAmount("Mint amount must be positive", {"amount": str(amount)})
        key = (token, account)
        self._balances[key] = self.balance_of(token, account) + amount
        return self._balances[key]

    def total_supply(self, token: str) -> Decimal:
        return sum(
            (v for (t, _), v in self._balances.items() if t == token),
            Decimal("0"),
        )

    def add_receive_hook(self, account: str, hook: ReceiveHook) -> None:
        """Register a callback fired whenever ``account`` receives tokens."""
        self._hooks.setdefault(account, []).append(hook)

    def transfer(self, token: str, sender: str, recipient: str, amount: Decimal) -> None:
        """Move ``amount`` from sender to recipient, all or nothing."""
        _require_account(sender)
        _require_account(recipient)
        if amount <= 0:
            raise InvalidAmount("Transfer amount must be positive", {"amount": str(amount)})
        available = self.balance_of(token, sender)
        if amount > available:
            raise InsufficientBalance(amount, available, account=sender)

        self._move(token, sender, recipient, amount)
        try:
            for hook in list(self._hooks.get(recipient, [])):
                hook(token, sender, recipient, amount)
        except Exception:
            self._move(token, recipient, sender, amount)
            raise

    def _move(self, token: str, sender: str, recipient: str, amount: Decimal) -> None:
        self._balances[(token, sender)] = self.balance_of(token, sender) - amount
        self._balances[(token, recipient)] = self.balance_of(token, recipient) + amount


def _require_account(account: str) -> None:
    if not account or not account.strip():
        raise InvalidAddress("Account identifier must be non-empty")
