"""Tenant model — one funding treasury with a prepaid balance.

Balance invariant, owned by the BalanceLedger:
    available_balance == total_deposited - total_committed - total_withdrawn
    0 <= available_balance <= total_deposited

total_committed is what open and settled commitments hold; a refund lowers it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


@dataclass
class TenantRecord:
    """Balance counters for a single tenant.

    Mutable only through the BalanceLedger. Never deleted; deactivation
    flips ``active``.
    """
    tenant_id: str
    admin_id: str
    active: bool = True
    total_deposited: Decimal = Decimal("0")
    total_committed: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    available_balance: Decimal = Decimal("0")
    registered_utc: Optional[datetime] = None

    def invariant_holds(self) -> bool:
        expected = self.total_deposited - self.total_committed - self.total_withdrawn
        return (
            self.available_balance == expected
            and Decimal("0") <= self.available_balance <= self.total_deposited
        )

    def balances(self) -> dict[str, Any]:
        """Serializable balance snapshot, as carried on change records."""
        return {
            "tenant_id": self.tenant_id,
            "total_deposited": str(self.total_deposited),
            "total_committed": str(self.total_committed),
            "total_withdrawn": str(self.total_withdrawn),
            "available_balance": str(self.available_balance),
        }
