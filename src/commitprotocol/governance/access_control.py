"""Access control and the invariant guard for mutating entry points.

AccessControl holds the RoleConfig and answers "may this caller do that".
Rotation is owner-only and applies to the very next call.

ReentrancyGuard serialises mutating calls. Calls from different threads
queue behind a lock, which gives the ledger a single total order. A call
that re-enters from the same thread (for example a token receive hook
calling back into the service mid-transfer) is rejected with
ReentrantCall instead of deadlocking.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from commitprotocol.errors import InvalidAddress, ReentrantCall, Unauthorized
from commitprotocol.models.roles import Role, RoleConfig


class AccessControl:
    """Single-holder roles.

    Usage:
        acl = AccessControl(RoleConfig(owner="dao", arbitrator="arb",
                                       relayer="bot", executor="keeper"))
        acl.require(Role.RELAYER, caller)
        acl.rotate("dao", Role.ARBITRATOR, "arb-2")
    """

    def __init__(self, roles: RoleConfig) -> None:
        for role in Role:
            _require_identity(roles.holder(role), role)
        self._roles = roles

    @property
    def roles(self) -> RoleConfig:
        return self._roles

    def has_role(self, role: Role, caller: str) -> bool:
        return bool(caller) and self._roles.holder(role) == caller

    def require(self, role: Role, caller: str) -> None:
        if not self.has_role(role, caller):
            raise Unauthorized(caller, role.value)

    def rotate(self, caller: str, role: Role, new_holder: str) -> str:
        """Hand ``role`` to ``new_holder``. Returns the previous holder."""
        self.require(Role.OWNER, caller)
        _require_identity(new_holder, role)
        previous = self._roles.holder(role)
        self._roles = self._roles.rotated(role, new_holder)
        return previous

    def restore(self, roles: RoleConfig) -> None:
        """Reinstate a previous configuration (rollback of a failed rotation)."""
        self._roles = roles


class ReentrancyGuard:
    """Non-reentrant critical section for mutating calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owner: Optional[int] = None

    @property
    def entered(self) -> bool:
        return self._owner == threading.get_ident()

    @contextmanager
    def enter(self, operation: str) -> Iterator[None]:
        if self.entered:
            raise ReentrantCall(
                f"Re-entrant call to {operation} rejected", {"operation": operation},
            )
        with self._lock:
            self._owner = threading.get_ident()
            try:
                yield
            finally:
                self._owner = None


def _require_identity(identity: str, role: Role) -> None:
    if not identity or not identity.strip():
        raise InvalidAddress(f"Holder for role {role.value} must be non-empty")
