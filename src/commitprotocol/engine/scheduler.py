"""Settlement scheduler — check/execute batch automation.

Check phase: read-only, callable by anyone. Scans commitments in creation
order and returns at most ``max_batch_size`` ids that are SUBMITTED with
an elapsed dispute window.

Execute phase: executor-only (the service checks the role). Re-validates
every id before acting, because a dispute may have been opened or the
commitment settled between the two phases. Ids that no longer qualify
are skipped, never raised, so one stale id cannot block the others.

SettlementKeeper is the periodic process that drives both phases.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from commitprotocol.engine.state_machine import CommitmentStateMachine
from commitprotocol.errors import ProtocolError
from commitprotocol.models.commitment import require_aware
from commitprotocol.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    """What happened to each id in an executed batch."""
    settled: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # id -> reason

    @property
    def settled_count(self) -> int:
        return len(self.settled)


class SettlementScheduler:
    """Two independently callable phases over the state machine."""

    def __init__(
        self,
        store: LedgerStore,
        machine: CommitmentStateMachine,
        max_batch_size: int = 50,
    ) -> None:
        self._store = store
        self._machine = machine
        self.max_batch_size = max_batch_size

    def check_settleable(self, now: Optional[datetime] = None) -> list[str]:
        """Ids ready to settle, capped at max_batch_size. No side effects."""
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        ready: list[str] = []
        for record in self._store.iter_commitments():
            if len(ready) >= self.max_batch_size:
                break
            if record.is_settleable(now):
                ready.append(record.commit_id)
        return ready

    def execute_settlement(
        self,
        commit_ids: Iterable[str],
        now: Optional[datetime] = None,
        on_settled: Optional[Callable[[str], None]] = None,
    ) -> BatchOutcome:
        """Settle each still-qualifying id; skip the rest."""
        if now is None:
            now = datetime.now(timezone.utc)
        require_aware(now)
        outcome = BatchOutcome()
        seen: set[str] = set()
        candidates = list(commit_ids)
        for commit_id in candidates[self.max_batch_size :]:
            outcome.skipped.setdefault(commit_id, "over batch limit")
        for commit_id in candidates[: self.max_batch_size]:
            if commit_id in seen:
                outcome.skipped[commit_id] = "duplicate id in batch"
                continue
            seen.add(commit_id)

            record = self._store.commitment(commit_id)
            if record is None:
                outcome.skipped[commit_id] = "unknown commitment"
                continue
            if not record.is_settleable(now):
                outcome.skipped[commit_id] = f"not settleable (state {record.state.value})"
                continue
            try:
                self._machine.settle(commit_id, now=now)
            except ProtocolError as e:
                outcome.skipped[commit_id] = str(e)
                continue
            except Exception as e:
                logger.warning("Settlement of %s failed: %s", commit_id, e)
                outcome.skipped[commit_id] = f"settlement failed: {e}"
                continue
            outcome.settled.append(commit_id)
            if on_settled is not None:
                on_settled(commit_id)

        if outcome.skipped:
            logger.info(
                "Batch settlement skipped %d id(s): %s",
                len(outcome.skipped), ", ".join(sorted(outcome.skipped)),
            )
        return outcome


class SettlementKeeper:
    """Periodically runs check → execute.

    ``check`` and ``execute`` are callables so the keeper can drive either
    the scheduler directly or the service facade (which adds role checks
    and change notifications). A failing iteration is logged and the loop
    keeps going.

    Usage:
        keeper = SettlementKeeper(service.check_settleable,
                                  lambda ids: service.execute_settlement("executor", ids))
        keeper.start(interval_seconds=60)
        ...
        keeper.stop()
    """

    def __init__(
        self,
        check: Callable[[], list[str]],
        execute: Callable[[list[str]], object],
    ) -> None:
        self._check = check
        self._execute = execute
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> list[str]:
        """One check/execute cycle. Returns the ids handed to execute."""
        self.runs += 1
        ready = self._check()
        if not ready:
            return []
        logger.info("Found %d commitment(s) ready for settlement", len(ready))
        self._execute(ready)
        return ready

    def start(self, interval_seconds: float = 60.0) -> None:
        if self.running:
            logger.warning("Settlement keeper already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval_seconds,), name="settlement-keeper", daemon=True,
        )
        self._thread.start()
        logger.info("Settlement keeper started (interval %.1fs)", interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Settlement keeper stopped")

    def _loop(self, interval_seconds: float) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Settlement keeper iteration failed")
            self._stop.wait(interval_seconds)
