"""Append-only event log — the audit trail of every marketplace action.

Every committed state change (claims, fee proposals, escrow funding,
payouts, wallet requests, chat purges) produces an event record that is
appended here. Events are immutable once written. The log serves as:
1. The audit trail an admin consults when a payment is disputed.
2. Evidence that destructive side effects (chat purges) were intended.
3. A replayable history for reconciling wallets against the finance book.

Records are chained: each one hashes the previous record's hash, so a
record edited or dropped from the middle of the JSONL file is detected
when the log is recovered.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

CHAIN_ROOT = "sha256:" + "0" * 64


class EventKind(str, enum.Enum):
    """Classification of marketplace events."""
    # Users
    USER_REGISTERED = "user_registered"
    USER_STATUS_CHANGED = "user_status_changed"
    USER_REMOVED = "user_removed"
    REFERRAL_CREDITED = "referral_credited"
    # Assignment lifecycle
    ASSIGNMENT_POSTED = "assignment_posted"
    ASSIGNMENT_TRANSITION = "assignment_transition"
    ASSIGNMENT_EDITED = "assignment_edited"
    ASSIGNMENT_DELETED = "assignment_deleted"
    CANCELLATION_REPORTED = "cancellation_reported"
    # Fee negotiation and bidding
    FEE_PROPOSED = "fee_proposed"
    STAGE_PROPOSED = "stage_proposed"
    BID_SUBMITTED = "bid_submitted"
    BID_EDITED = "bid_edited"
    BID_WITHDRAWN = "bid_withdrawn"
    WRITER_SELECTED = "writer_selected"
    # Escrow and payout
    ESCROW_FUNDED = "escrow_funded"
    WORK_SUBMITTED = "work_submitted"
    STAGE_SUBMITTED = "stage_submitted"
    STAGE_COMPLETED = "stage_completed"
    PAYOUT_RELEASED = "payout_released"
    COMMISSION_RECORDED = "commission_recorded"
    # Wallet and finance administration
    WALLET_ADJUSTED = "wallet_adjusted"
    DEPOSIT_REQUESTED = "deposit_requested"
    DEPOSIT_RESOLVED = "deposit_resolved"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_RESOLVED = "withdrawal_resolved"
    PROFIT_ADJUSTED = "profit_adjusted"
    FINANCE_TRANSACTION_DELETED = "finance_transaction_deleted"
    # Destructive side effects
    CHAT_PURGED = "chat_purged"


def _digest(fields: dict[str, Any]) -> str:
    body = json.dumps(fields, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return f"sha256:{hashlib.sha256(body).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """One audit entry.

    event_hash covers every other field, previous_hash included. A
    record built by create() hangs off CHAIN_ROOT; EventLog.append
    relinks it to the tail of the log and recomputes the hash.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str
    previous_hash: str = CHAIN_ROOT

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        record = EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts,
            actor_id=actor_id,
            payload=payload,
            event_hash="",
        )
        return record.linked_to(CHAIN_ROOT)

    def hashed_fields(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
        }

    def linked_to(self, previous_hash: str) -> EventRecord:
        unhashed = replace(self, previous_hash=previous_hash, event_hash="")
        return replace(unhashed, event_hash=_digest(unhashed.hashed_fields()))

    def to_json(self) -> str:
        return json.dumps(
            {**self.hashed_fields(), "event_hash": self.event_hash},
            sort_keys=True,
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, line: str) -> EventRecord:
        data = json.loads(line)
        return cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
            previous_hash=data["previous_hash"],
        )


class EventLog:
    """Append-only, hash-chained event log with optional JSONL persistence.

    Usage:
        log = EventLog(Path("data/events.jsonl"))
        log.append(EventRecord.create("EVT-00000001", EventKind.ESCROW_FUNDED,
                                      "s1", {"assignment_id": "A-1"}))
        history = log.events_for_assignment("A-1")
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path

        if storage_path is not None and storage_path.exists():
            self._recover(storage_path)

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def head_hash(self) -> str:
        return self._events[-1].event_hash if self._events else CHAIN_ROOT

    def append(self, event: EventRecord) -> EventRecord:
        """Link event to the current head and append it.

        Raises ValueError on a duplicate event_id, OSError if the file
        write fails. Returns the linked record as stored.
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        linked = event.linked_to(self.head_hash)

        if self._storage_path is not None:
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(linked.to_json() + "\n")

        self._events.append(linked)
        self._event_ids.add(linked.event_id)
        return linked

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_assignment(self, assignment_id: str) -> list[EventRecord]:
        """The audit history of one assignment, oldest first."""
        return [
            e for e in self._events
            if e.payload.get("assignment_id") == assignment_id
        ]

    def _recover(self, path: Path) -> None:
        """Reload and verify the chain. Fails closed on any mismatch."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                stored = EventRecord.from_json(line)
                if stored.event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): "
                        f"{stored.event_id}"
                    )
                if stored.previous_hash != self.head_hash:
                    raise ValueError(
                        f"Chain broken (line {line_num}): event {stored.event_id} "
                        f"does not follow {self.head_hash}"
                    )
                expected = stored.linked_to(stored.previous_hash).event_hash
                if stored.event_hash != expected:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event "
                        f"{stored.event_id} stored hash {stored.event_hash} "
                        f"!= computed {expected}"
                    )
                self._events.append(stored)
                self._event_ids.add(stored.event_id)
