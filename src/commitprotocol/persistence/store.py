"""Ledger store — the single sequentially-consistent state of the protocol.

Holds the shared mutable state: tenant counters, commitment and dispute
records, accrued registration fees, and the id sequence. Subsystems are
handed the same store; only their entry points mutate it.

Lifetime is process start to shutdown. Nothing here is a module-level
singleton: create one store per ledger instance.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterator, Optional

from commitprotocol.errors import NotFound
from commitprotocol.models.commitment import CommitmentRecord, DisputeRecord
from commitprotocol.models.tenant import TenantRecord


class LedgerStore:
    """In-memory record store with ordered commitment ids."""

    def __init__(self) -> None:
        self.tenants: Dict[str, TenantRecord] = {}
        self.commitments: Dict[str, CommitmentRecord] = {}
        self.disputes: Dict[str, DisputeRecord] = {}
        self.accrued_fees: Decimal = Decimal("0")
        self._commit_counter = 0

    def next_commit_id(self) -> str:
        """Allocate the next commitment id.

        Ids of stored commitments are never reused; an id given back by
        ``release_commit_id`` is handed out again.
        """
        self._commit_counter += 1
        return f"C-{self._commit_counter:08d}"

    def release_commit_id(self, commit_id: str) -> None:
        """Give back the most recently allocated id after a failed create."""
        if commit_id == f"C-{self._commit_counter:08d}" and commit_id not in self.commitments:
            self._commit_counter -= 1

    @property
    def commitment_count(self) -> int:
        return len(self.commitments)

    def tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        return self.tenants.get(tenant_id)

    def commitment(self, commit_id: str) -> Optional[CommitmentRecord]:
        return self.commitments.get(commit_id)

    def dispute(self, commit_id: str) -> Optional[DisputeRecord]:
        return self.disputes.get(commit_id)

    def require_commitment(self, commit_id: str) -> CommitmentRecord:
        record = self.commitments.get(commit_id)
        if record is None:
            raise NotFound(f"Unknown commitment: {commit_id}", {"commit_id": commit_id})
        return record

    def iter_commitments(self) -> Iterator[CommitmentRecord]:
        """Commitments in creation order."""
        return iter(list(self.commitments.values()))
