"""Change feed — one immutable record per successful ledger mutation.

Records are hashed at creation (SHA-256 over canonical JSON) and only ever
appended. The feed doubles as:
- the push channel for external indexers (``subscribe``);
- the audit trail a third party can re-verify offline (``commitprotocol verify-log``);
- a JSONL file that is re-verified record by record when reopened.

Payloads carry ids, the new state and amounts, so an indexer never has to
query the ledger back.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_FIELDS = ("event_id", "event_kind", "timestamp_utc", "actor_id", "payload", "event_hash")


class EventKind(str, enum.Enum):
    """What changed."""
    # Tenant balances
    TENANT_REGISTERED = "tenant_registered"
    TENANT_DEPOSITED = "tenant_deposited"
    TENANT_WITHDREW = "tenant_withdrew"
    TENANT_DEACTIVATED = "tenant_deactivated"
    TENANT_REACTIVATED = "tenant_reactivated"
    # Commitment lifecycle
    COMMITMENT_CREATED = "commitment_created"
    COMMITMENT_SUBMITTED = "commitment_submitted"
    COMMITMENT_SETTLED = "commitment_settled"
    COMMITMENT_REFUNDED = "commitment_refunded"
    # Disputes
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    # Automation
    BATCH_SETTLEMENT_EXECUTED = "batch_settlement_executed"
    # Governance
    ROLE_ROTATED = "role_rotated"
    PARAMETER_UPDATED = "parameter_updated"
    FEES_WITHDRAWN = "fees_withdrawn"


Subscriber = Callable[["EventRecord"], None]


def _digest(event_id: str, kind: str, stamp: str, actor_id: str, payload: dict[str, Any]) -> str:
    body = {
        "event_id": event_id,
        "event_kind": kind,
        "timestamp_utc": stamp,
        "actor_id": actor_id,
        "payload": payload,
    }
    canonical = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return "sha256:" + hashlib.sha256(canonical).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    """A single change record; ``event_hash`` seals every other field."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @classmethod
    def create(
        cls,
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        when = (timestamp_utc or datetime.now(timezone.utc)).astimezone(timezone.utc)
        stamp = when.strftime(_TIMESTAMP_FORMAT)
        return cls(
            event_id, event_kind, stamp, actor_id, payload,
            _digest(event_id, event_kind.value, stamp, actor_id, payload),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record. Raises ValueError if it does not verify."""
        missing = [name for name in _FIELDS if name not in data]
        if missing:
            raise ValueError(f"Event record missing fields: {', '.join(missing)}")
        record = cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )
        computed = record.computed_hash()
        if computed != record.event_hash:
            raise ValueError(
                f"event {record.event_id}: stored hash {record.event_hash} != computed {computed}"
            )
        return record

    def computed_hash(self) -> str:
        return _digest(
            self.event_id, self.event_kind.value, self.timestamp_utc, self.actor_id, self.payload,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only sequence of EventRecords, optionally mirrored to JSONL.

    With a ``storage_path`` every record is written to the file before it
    becomes visible in memory, so an OSError leaves the log unchanged.
    Subscribers run after the record is stored; a subscriber that raises
    is logged and ignored.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._records: list[EventRecord] = []
        self._ids: set[str] = set()
        self._subscribers: list[Subscriber] = []
        if self._path is not None and self._path.exists():
            for line_num, record in self._read(self._path):
                if record.event_id in self._ids:
                    raise ValueError(f"Duplicate event ID on recovery (line {line_num}): {record.event_id}")
                self._remember(record)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for every future record. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def append(self, event: EventRecord) -> None:
        """Store ``event``. A reused event_id raises ValueError."""
        if event.event_id in self._ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._path is not None:
            line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        self._remember(event)
        self._notify(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return [e for e in self._records if kind is None or e.event_kind == kind]

    def events_since(self, since_utc: str, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Records stamped at or after ``since_utc`` (``YYYY-MM-DDTHH:MM:SSZ``)."""
        return [e for e in self.events(kind) if e.timestamp_utc >= since_utc]

    def kind_counts(self) -> dict[str, int]:
        return dict(Counter(e.event_kind.value for e in self._records))

    @property
    def count(self) -> int:
        return len(self._records)

    @property
    def last_event(self) -> Optional[EventRecord]:
        if not self._records:
            return None
        return self._records[-1]

    def _remember(self, record: EventRecord) -> None:
        self._records.append(record)
        self._ids.add(record.event_id)

    def _notify(self, record: EventRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception:
                logger.exception("Event subscriber failed on %s", record.event_id)

    @staticmethod
    def _read(path: Path) -> Iterator[tuple[int, EventRecord]]:
        """Yield verified records from a JSONL file, fail-closed on any bad line."""
        with path.open("r", encoding="utf-8") as fh:
            for line_num, raw in enumerate(fh, 1):
                if not raw.strip():
                    continue
                try:
                    record = EventRecord.from_dict(json.loads(raw))
                except ValueError as e:
                    raise ValueError(f"Integrity check failed (line {line_num}): {e}") from e
                yield line_num, record
