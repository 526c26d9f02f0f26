"""Balance accounting — tenant ledger and the token vault it settles through."""

from commitprotocol.ledger.balance import BalanceLedger
from commitprotocol.ledger.token import TokenVault

__all__ = [
    "BalanceLedger",
    "TokenVault",
]
