"""Optimistic escrow ledger for community-funded work commitments.

Tenants prepay a balance, commitments escrow part of it for a contributor,
and payment settles automatically once the dispute window after delivery
has passed, unless a staked dispute sends it to the arbitrator.
"""

from commitprotocol.config import ProtocolParams
from commitprotocol.models.commitment import CommitmentState
from commitprotocol.models.roles import Role, RoleConfig
from commitprotocol.service import EscrowService, ServiceResult

__all__ = [
    "CommitmentState",
    "EscrowService",
    "ProtocolParams",
    "Role",
    "RoleConfig",
    "ServiceResult",
]

__version__ = "0.1.0"
