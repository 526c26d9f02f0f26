"""Commitment engine — state machine, dispute stakes, settlement scheduling."""

from commitprotocol.engine.disputes import DisputeEngine
from commitprotocol.engine.scheduler import BatchOutcome, SettlementKeeper, SettlementScheduler
from commitprotocol.engine.stake import (
    ReputationAggregate,
    StakeQuote,
    enforce_baseline_stake,
    required_stake,
)
from commitprotocol.engine.state_machine import CommitmentStateMachine

__all__ = [
    "BatchOutcome",
    "CommitmentStateMachine",
    "DisputeEngine",
    "ReputationAggregate",
    "SettlementKeeper",
    "SettlementScheduler",
    "StakeQuote",
    "enforce_baseline_stake",
    "required_stake",
]
