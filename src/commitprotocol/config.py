"""Protocol parameters — the tunable numbers of the ledger.

Sources, highest precedence first:
1. Explicit keyword overrides passed to ``ProtocolParams.load``.
2. Environment variables (``COMMIT_*``), after ``.env`` is loaded.
3. ``config/protocol_params.json``.
4. Built-in defaults.

The stake-formula constants are fixed for the process lifetime. The
registration fee, baseline stake and batch size can be tuned at runtime
by the owner through the service.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
PARAMS_FILENAME = "protocol_params.json"

# Parameters the owner may change after start-up.
TUNABLE_PARAMETERS = frozenset({"registration_fee", "baseline_stake", "max_batch_size"})

_ENV_KEYS = {
    "registration_fee": "COMMIT_REGISTRATION_FEE",
    "baseline_stake": "COMMIT_BASELINE_STAKE",
    "max_batch_size": "COMMIT_MAX_BATCH_SIZE",
    "reputation_scaling": "COMMIT_REPUTATION_SCALING",
    "payment_token": "COMMIT_PAYMENT_TOKEN",
    "escrow_account": "COMMIT_ESCROW_ACCOUNT",
}


@dataclass(frozen=True)
class ProtocolParams:
    """Effective protocol configuration."""
    registration_fee: Decimal = Decimal("15")
    baseline_stake: Decimal = Decimal("1")
    max_batch_size: int = 50
    stake_lambda: Decimal = Decimal("0.5")
    reputation_scaling: Decimal = Decimal("10000")
    ai_high_confidence: Decimal = Decimal("0.95")
    ai_medium_confidence: Decimal = Decimal("0.80")
    ai_high_multiplier: Decimal = Decimal("2.0")
    ai_medium_multiplier: Decimal = Decimal("1.5")
    stake_quantum: Decimal = Decimal("0.000001")
    payment_token: str = "MNEE"
    escrow_account: str = "escrow"

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValueError("Invalid protocol parameters: " + "; ".join(errors))

    def validate(self) -> list[str]:
        errors: list[str] = []
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal) and not value.is_finite():
                errors.append(f"{f.name} must be finite")
        if errors:
            return errors
        if self.registration_fee < 0:
            errors.append("registration_fee must be >= 0")
        if self.baseline_stake < 0:
            errors.append("baseline_stake must be >= 0")
        if self.max_batch_size < 1:
            errors.append("max_batch_size must be >= 1")
        if self.stake_lambda < 0:
            errors.append("stake_lambda must be >= 0")
        if self.reputation_scaling <= 0:
            errors.append("reputation_scaling must be > 0")
        if not (0 < self.ai_medium_confidence <= self.ai_high_confidence <= 1):
            errors.append("require 0 < ai_medium_confidence <= ai_high_confidence <= 1")
        if self.ai_medium_multiplier < 1 or self.ai_high_multiplier < self.ai_medium_multiplier:
            errors.append("require 1 <= ai_medium_multiplier <= ai_high_multiplier")
        if self.stake_quantum <= 0:
            errors.append("stake_quantum must be > 0")
        if not self.payment_token:
            errors.append("payment_token must be set")
        if not self.escrow_account:
            errors.append("escrow_account must be set")
        return errors

    def with_updates(self, **changes: Any) -> ProtocolParams:
        """Return a copy with coerced, re-validated changes."""
        return replace(self, **{k: _coerce(k, v) for k, v in changes.items()})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Decimal) else value
        return result

    @classmethod
    def from_config_dir(cls, config_dir: Path = DEFAULT_CONFIG_DIR) -> ProtocolParams:
        """Load from protocol_params.json; missing file means defaults."""
        path = config_dir / PARAMS_FILENAME
        if not path.exists():
            return cls()
        raw = json.loads(path.read_text(encoding="utf-8"))
        return cls().with_updates(**_known(raw))

    @classmethod
    def load(
        cls,
        config_dir: Path = DEFAULT_CONFIG_DIR,
        env_file: Optional[Path] = None,
        **overrides: Any,
    ) -> ProtocolParams:
        """Resolve parameters from file, environment and overrides."""
        load_dotenv(env_file)
        params = cls.from_config_dir(config_dir)
        from_env = {
            name: os.environ[key]
            for name, key in _ENV_KEYS.items()
            if os.environ.get(key)
        }
        if from_env:
            params = params.with_updates(**from_env)
        if overrides:
            params = params.with_updates(**overrides)
        return params


def _known(raw: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(ProtocolParams)}
    unknown = set(raw) - names
    if unknown:
        raise ValueError(f"Unknown protocol parameters: {', '.join(sorted(unknown))}")
    return raw


def _coerce(name: str, value: Any) -> Any:
    names = {f.name: f for f in fields(ProtocolParams)}
    if name not in names:
        raise ValueError(f"Unknown protocol parameter: {name}")
    if name in ("payment_token", "escrow_account"):
        return str(value)
    if name == "max_batch_size":
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            raise ValueError(f"{name} must be an integer, got {value!r}") from None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name} must be numeric, got {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result
