"""Audit receipts for coordination decisions.

Sinks raise on failure; the core only ever talks to them through
``BestEffortAudit``, which logs the failure and carries on so that a full
disk or a broken sink never reverses a committed state change.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Protocol

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import AuditSinkFailure
from cielo.engine.ids import DefaultIdGenerator, IdGenerator
from cielo.logging import get_logger

logger = get_logger("audit")

AUDIT_KINDS = ("lease", "task", "queue", "worker", "policy", "board", "system")


@dataclass(frozen=True, slots=True)
class AuditEvent:
    receipt_id: str
    ts: datetime
    kind: str
    event: str
    actor: str
    subsystem: str
    correlation_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "ts": format_timestamp(self.ts),
            "kind": self.kind,
            "event": self.event,
            "actor": self.actor,
            "subsystem": self.subsystem,
            "correlation_id": self.correlation_id,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AuditEvent:
        return cls(
            receipt_id=str(raw["receipt_id"]),
            ts=parse_timestamp(raw["ts"]),
            kind=str(raw["kind"]),
            event=str(raw["event"]),
            actor=str(raw.get("actor", "")),
            subsystem=str(raw.get("subsystem", "")),
            correlation_id=raw.get("correlation_id"),
            data=dict(raw.get("data") or {}),
        )


def newest_first(events: Iterable[AuditEvent]) -> list[AuditEvent]:
    # later appends win ties
    return list(reversed(sorted(events, key=lambda event: event.ts)))


def oldest_first(events: Iterable[AuditEvent]) -> list[AuditEvent]:
    return sorted(events, key=lambda event: event.ts)


def filter_events(
    events: Iterable[AuditEvent],
    *,
    kind: str | None = None,
    actor: str | None = None,
    correlation_id: str | None = None,
    day: date | None = None,
) -> list[AuditEvent]:
    """Events matching every given filter; ``day`` compares the UTC date."""
    return [
        event
        for event in events
        if (kind is None or event.kind == kind)
        and (actor is None or event.actor == actor)
        and (correlation_id is None or event.correlation_id == correlation_id)
        and (day is None or event.ts.astimezone(UTC).date() == day)
    ]


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class NullAuditSink:
    def record(self, event: AuditEvent) -> None:
        return None


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [f"{event.kind}.{event.event}" for event in self.events]


class JsonlAuditSink:
    """Appends one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def record(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            raise AuditSinkFailure(f"Failed to append audit event to {self.path}: {exc}") from exc

    def read(self) -> list[AuditEvent]:
        if not self.path.exists():
            return []
        events: list[AuditEvent] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(AuditEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.debug("Skipping unreadable audit line in %s", self.path)
        return events

    def list_receipts(self, kind: str | None = None, day: date | None = None) -> list[AuditEvent]:
        return newest_first(filter_events(self.read(), kind=kind, day=day))

    def get_receipt(self, receipt_id: str) -> AuditEvent | None:
        for event in self.read():
            if event.receipt_id == receipt_id:
                return event
        return None

    def find_by_correlation(self, correlation_id: str) -> list[AuditEvent]:
        """Every receipt of one traced operation, in the order it happened."""
        return oldest_first(filter_events(self.read(), correlation_id=correlation_id))

    def find_by_actor(self, actor: str, kind: str | None = None) -> list[AuditEvent]:
        return newest_first(filter_events(self.read(), actor=actor, kind=kind))


class BestEffortAudit:
    """Stamps events with a receipt id and time, and never raises."""

    def __init__(
        self,
        sink: AuditSink | None = None,
        *,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
    ) -> None:
        self.sink: AuditSink = sink if sink is not None else NullAuditSink()
        self.clock = clock or SystemClock()
        self.ids = ids or DefaultIdGenerator()

    def emit(
        self,
        kind: str,
        event: str,
        *,
        actor: str,
        subsystem: str,
        data: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> AuditEvent | None:
        try:
            record = AuditEvent(
                receipt_id=self.ids.receipt_id(),
                ts=self.clock.now(),
                kind=kind,
                event=event,
                actor=actor,
                subsystem=subsystem,
                correlation_id=correlation_id,
                data=dict(data or {}),
            )
            self.sink.record(record)
        except Exception as exc:
            logger.warning("Audit sink failed for %s.%s: %s", kind, event, exc)
            return None
        return record
