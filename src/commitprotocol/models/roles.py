"""Role configuration — one identity per role, rotated only by the owner."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace


class Role(str, enum.Enum):
    OWNER = "owner"
    ARBITRATOR = "arbitrator"
    RELAYER = "relayer"
    EXECUTOR = "executor"


@dataclass(frozen=True)
class RoleConfig:
    """Current holder of each role.

    Frozen: rotation produces a new config so a half-applied update is
    never observable.
    """
    owner: str
    arbitrator: str
    relayer: str
    executor: str

    def holder(self, role: Role) -> str:
        return getattr(self, role.value)

    def rotated(self, role: Role, new_holder: str) -> RoleConfig:
        return replace(self, **{role.value: new_holder})

    def to_dict(self) -> dict[str, str]:
        return {r.value: self.holder(r) for r in Role}
