"""Dispute stake pricing.

Two deliberately separate pieces:

``required_stake`` is the full advisory formula. It depends on inputs
computed outside the ledger (contributor reputation, AI confidence), so
the ledger cannot verify them and never enforces it. Callers use it to
decide how much to post.

    S_req = S_base × M_time × M_rep × M_AI
    M_time = 1 + 0.5 · e^(−λ · t)             t = days until the window closes
    M_rep  = 1 + ln(V_settled + 1) / K
    M_AI   = 2.0 if c ≥ 0.95, 1.5 if 0.80 ≤ c < 0.95, else 1.0

``enforce_baseline_stake`` is what the ledger actually checks: the posted
stake must cover the configured baseline. Nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional, Union

from commitprotocol.config import ProtocolParams
from commitprotocol.errors import InsufficientStake, InvalidAmount

Number = Union[Decimal, int, float, str]

_ONE = Decimal("1")
_HALF = Decimal("0.5")


@dataclass(frozen=True)
class ReputationAggregate:
    """Contributor reputation as reported by an external collaborator."""
    total_value_settled: Decimal = Decimal("0")


@dataclass(frozen=True)
class StakeQuote:
    """Advisory stake with its multipliers, for display and audit."""
    base: Decimal
    time_multiplier: Decimal
    reputation_multiplier: Decimal
    ai_multiplier: Decimal
    required: Decimal


def time_multiplier(time_remaining_days: Number, params: ProtocolParams) -> Decimal:
    t = max(_to_decimal(time_remaining_days, "time_remaining_days"), Decimal("0"))
    return _ONE + _HALF * (-params.stake_lambda * t).exp()


def reputation_multiplier(reputation: ReputationAggregate, params: ProtocolParams) -> Decimal:
    value = _to_decimal(reputation.total_value_settled, "total_value_settled")
    if value < 0:
        raise InvalidAmount("Reputation value must be non-negative", {"value": str(value)})
    return _ONE + (value + _ONE).ln() / params.reputation_scaling


def ai_multiplier(ai_confidence: Number, params: ProtocolParams) -> Decimal:
    confidence = _to_decimal(ai_confidence, "ai_confidence")
    if confidence >= params.ai_high_confidence:
        return params.ai_high_multiplier
    if confidence >= params.ai_medium_confidence:
        return params.ai_medium_multiplier
    return _ONE


def quote_stake(
    time_remaining_days: Number,
    reputation: ReputationAggregate,
    ai_confidence: Number,
    params: ProtocolParams,
    base: Optional[Decimal] = None,
) -> StakeQuote:
    """Evaluate the advisory formula and return every factor."""
    s_base = params.baseline_stake if base is None else base
    m_time = time_multiplier(time_remaining_days, params)
    m_rep = reputation_multiplier(reputation, params)
    m_ai = ai_multiplier(ai_confidence, params)
    required = (s_base * m_time * m_rep * m_ai).quantize(
        params.stake_quantum, rounding=ROUND_DOWN,
    )
    return StakeQuote(
        base=s_base,
        time_multiplier=m_time,
        reputation_multiplier=m_rep,
        ai_multiplier=m_ai,
        required=required,
    )


def required_stake(
    time_remaining_days: Number,
    reputation: ReputationAggregate,
    ai_confidence: Number,
    params: ProtocolParams,
    base: Optional[Decimal] = None,
) -> Decimal:
    """Advisory required stake. Pure; never consulted by the ledger."""
    return quote_stake(time_remaining_days, reputation, ai_confidence, params, base).required


def enforce_baseline_stake(posted: Decimal, params: ProtocolParams) -> None:
    """The only stake rule the ledger enforces."""
    if not isinstance(posted, Decimal) or not posted.is_finite() or posted < 0:
        raise InvalidAmount("Posted stake must be a non-negative Decimal", {"posted": str(posted)})
    if posted < params.baseline_stake:
        raise InsufficientStake(params.baseline_stake, posted)


def _to_decimal(value: Number, name: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        result = Decimal(value)
    if not result.is_finite():
        raise InvalidAmount(f"{name} must be finite", {name: str(value)})
    return result
