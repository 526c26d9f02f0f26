"""Data models: tenants, commitments, disputes, roles."""

from commitprotocol.models.commitment import (
    COMMITMENT_TRANSITIONS,
    TERMINAL_STATES,
    CommitmentRecord,
    CommitmentState,
    DisputeRecord,
)
from commitprotocol.models.roles import Role, RoleConfig
from commitprotocol.models.tenant import TenantRecord

__all__ = [
    "COMMITMENT_TRANSITIONS",
    "TERMINAL_STATES",
    "CommitmentRecord",
    "CommitmentState",
    "DisputeRecord",
    "Role",
    "RoleConfig",
    "TenantRecord",
]
