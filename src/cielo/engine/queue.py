"""Integration queue with dependency gating.

Items wait as ``queued`` (or ``approved`` once a reviewer signs off) and are
picked up for review in FIFO order. Approved items always go first, and an
item whose dependencies are not all ``merged`` is never picked by
``dequeue``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import InvalidState, NotFound
from cielo.engine.ids import DefaultIdGenerator, IdGenerator
from cielo.engine.scope import normalize_path
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.state.store import StateStore

logger = get_logger("queue")

QUEUE_STATUSES = (
    "queued",
    "under_review",
    "approved",
    "changes_requested",
    "reviewing",
    "testing",
    "merged",
    "blocked",
    "reverted",
)
QUEUE_RISKS = ("low", "medium", "high")
QUEUE_GATES = ("fast", "full")
DEQUEUEABLE_STATUSES = ("queued", "approved")


@dataclass(frozen=True, slots=True)
class QueueItem:
    queue_id: str
    owner: str
    branch: str
    scope: tuple[str, ...]
    enqueued_at: datetime
    updated_at: datetime
    deps: tuple[str, ...] = ()
    risk: str = "low"
    gates: str = "fast"
    rollback: str = "git revert"
    status: str = "queued"
    notes: str = ""
    lease_id: str | None = None
    reviewed_by: str | None = None
    updated_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_id": self.queue_id,
            "owner": self.owner,
            "branch": self.branch,
            "scope": list(self.scope),
            "deps": list(self.deps),
            "risk": self.risk,
            "gates": self.gates,
            "rollback": self.rollback,
            "status": self.status,
            "notes": self.notes,
            "lease_id": self.lease_id,
            "reviewed_by": self.reviewed_by,
            "enqueued_at": format_timestamp(self.enqueued_at),
            "updated_at": format_timestamp(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueueItem:
        status = str(raw.get("status", "queued"))
        if status not in QUEUE_STATUSES:
            raise ValueError(f"Unknown queue status: {status}")
        enqueued_at = parse_timestamp(raw["enqueued_at"])
        return cls(
            queue_id=str(raw["queue_id"]),
            owner=str(raw.get("owner", "")),
            branch=str(raw.get("branch", "")),
            scope=tuple(str(item) for item in raw.get("scope", [])),
            deps=tuple(str(item) for item in raw.get("deps") or []),
            risk=str(raw.get("risk", "low")),
            gates=str(raw.get("gates", "fast")),
            rollback=str(raw.get("rollback", "git revert")),
            status=status,
            notes=str(raw.get("notes") or ""),
            lease_id=raw.get("lease_id"),
            reviewed_by=raw.get("reviewed_by"),
            enqueued_at=enqueued_at,
            updated_at=parse_timestamp(raw.get("updated_at")) or enqueued_at,
            updated_by=raw.get("updated_by"),
        )


def are_deps_resolved(deps: Iterable[str], items: Mapping[str, QueueItem]) -> bool:
    """Every dependency exists and is merged; no dependencies is trivially resolved."""
    for dep in deps:
        item = items.get(dep)
        if item is None or item.status != "merged":
            return False
    return True


def _fifo(items: Iterable[QueueItem]) -> list[QueueItem]:
    return sorted(items, key=lambda item: (item.enqueued_at, item.queue_id))


def select_for_dequeue(items: Mapping[str, QueueItem]) -> QueueItem | None:
    for status in ("approved", "queued"):
        candidates = [
            item
            for item in items.values()
            if item.status == status and are_deps_resolved(item.deps, items)
        ]
        if candidates:
            return _fifo(candidates)[0]
    return None


class QueueLifecycle:
    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        audit: BestEffortAudit | None = None,
        default_risk: str = "low",
        default_gates: str = "fast",
        default_rollback: str = "git revert",
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or DefaultIdGenerator()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=self.ids)
        self.default_risk = default_risk
        self.default_gates = default_gates
        self.default_rollback = default_rollback

    def _emit(self, event: str, item: QueueItem, actor: str, **data: Any) -> None:
        logger.debug("Queue item %s %s by %s", item.queue_id, event, actor)
        self.audit.emit(
            "queue",
            event,
            actor=actor,
            subsystem="queue",
            data={"queue_id": item.queue_id, "status": item.status, **data},
        )

    def enqueue(
        self,
        owner: str,
        branch: str,
        scope: Sequence[str],
        risk: str | None = None,
        gates: str | None = None,
        rollback: str | None = None,
        notes: str = "",
        deps: Sequence[str] = (),
        lease_id: str | None = None,
    ) -> QueueItem:
        risk = risk or self.default_risk
        gates = gates or self.default_gates
        if risk not in QUEUE_RISKS:
            raise ValueError(f"Unknown risk level: {risk}")
        if gates not in QUEUE_GATES:
            raise ValueError(f"Unknown gate profile: {gates}")
        created: dict[str, QueueItem] = {}

        def _enqueue(items: dict[str, QueueItem]) -> dict[str, QueueItem]:
            now = self.clock.now()
            item = QueueItem(
                queue_id=self.ids.queue_id(items.keys()),
                owner=owner,
                branch=branch,
                scope=tuple(normalize_path(pattern) for pattern in scope),
                deps=tuple(deps),
                risk=risk,
                gates=gates,
                rollback=rollback or self.default_rollback,
                notes=notes,
                lease_id=lease_id,
                enqueued_at=now,
                updated_at=now,
            )
            created["item"] = item
            return {**items, item.queue_id: item}

        self.store.transact("queue", _enqueue)
        item = created["item"]
        self._emit("enqueued", item, owner, branch=branch, deps=list(item.deps), risk=risk)
        return item

    def dequeue(self, actor: str) -> QueueItem | None:
        picked: dict[str, QueueItem] = {}

        def _dequeue(items: dict[str, QueueItem]) -> dict[str, QueueItem]:
            picked.clear()
            winner = select_for_dequeue(items)
            if winner is None:
                return items
            updated = replace(
                winner, status="reviewing", updated_at=self.clock.now(), updated_by=actor
            )
            picked["item"] = updated
            return {**items, updated.queue_id: updated}

        self.store.transact("queue", _dequeue)
        item = picked.get("item")
        if item is None:
            logger.debug("Nothing eligible to dequeue for %s", actor)
            return None
        self._emit("dequeued", item, actor)
        return item

    def dequeue_by_id(self, queue_id: str, actor: str) -> QueueItem:
        picked: dict[str, QueueItem] = {}

        def _pick(items: dict[str, QueueItem]) -> dict[str, QueueItem]:
            item = items.get(queue_id)
            if item is None:
                raise NotFound("queue item", queue_id)
            if item.status not in DEQUEUEABLE_STATUSES:
                raise InvalidState("queue item", queue_id, item.status, DEQUEUEABLE_STATUSES)
            if not are_deps_resolved(item.deps, items):
                raise InvalidState(
                    "queue item",
                    queue_id,
                    item.status,
                    DEQUEUEABLE_STATUSES,
                    detail=f"Queue item {queue_id} has unmerged dependencies: "
                    + ", ".join(item.deps),
                )
            updated = replace(
                item, status="reviewing", updated_at=self.clock.now(), updated_by=actor
            )
            picked["item"] = updated
            return {**items, queue_id: updated}

        self.store.transact("queue", _pick)
        item = picked["item"]
        self._emit("dequeued", item, actor)
        return item

    def _mutate(self, queue_id: str, change: Any) -> QueueItem:
        result: dict[str, QueueItem] = {}

        def _apply(items: dict[str, QueueItem]) -> dict[str, QueueItem]:
            item = items.get(queue_id)
            if item is None:
                raise NotFound("queue item", queue_id)
            updated = change(item, self.clock.now())
            result["item"] = updated
            return {**items, queue_id: updated}

        self.store.transact("queue", _apply)
        return result["item"]

    def are_deps_resolved(self, deps: Iterable[str]) -> bool:
        return are_deps_resolved(deps, self.store.load_queue())

    def update(
        self,
        queue_id: str,
        status: str | None = None,
        notes: str | None = None,
        reviewed_by: str | None = None,
        updated_by: str | None = None,
    ) -> QueueItem:
        if status is not None and status not in QUEUE_STATUSES:
            raise ValueError(f"Unknown queue status: {status}")

        def _update(item: QueueItem, now: datetime) -> QueueItem:
            return replace(
                item,
                status=status or item.status,
                notes=item.notes if notes is None else notes,
                reviewed_by=reviewed_by or item.reviewed_by,
                updated_by=updated_by or item.updated_by,
                updated_at=now,
            )

        item = self._mutate(queue_id, _update)
        self._emit("updated", item, updated_by or reviewed_by or "system", notes=item.notes)
        return item

    def approve(self, queue_id: str, reviewed_by: str, notes: str | None = None) -> QueueItem:
        return self.update(
            queue_id,
            status="approved",
            notes=notes,
            reviewed_by=reviewed_by,
            updated_by=reviewed_by,
        )

    def block(self, queue_id: str, updated_by: str, notes: str) -> QueueItem:
        logger.info("Queue item %s blocked by %s: %s", queue_id, updated_by, notes)
        return self.update(queue_id, status="blocked", notes=notes, updated_by=updated_by)

    def mark_merged(self, queue_id: str, updated_by: str, notes: str | None = None) -> QueueItem:
        return self.update(queue_id, status="merged", notes=notes, updated_by=updated_by)

    def request_changes(self, queue_id: str, reviewed_by: str, notes: str) -> QueueItem:
        return self.update(
            queue_id,
            status="changes_requested",
            notes=notes,
            reviewed_by=reviewed_by,
            updated_by=reviewed_by,
        )

    def mark_reverted(self, queue_id: str, updated_by: str, notes: str | None = None) -> QueueItem:
        return self.update(queue_id, status="reverted", notes=notes, updated_by=updated_by)

    def get(self, queue_id: str) -> QueueItem | None:
        return self.store.load_queue().get(queue_id)

    def all(self) -> list[QueueItem]:
        return _fifo(self.store.load_queue().values())

    def by_status(self, status: str) -> list[QueueItem]:
        return [item for item in self.all() if item.status == status]

    def depth(self) -> int:
        items = self.store.load_queue().values()
        return sum(1 for item in items if item.status in DEQUEUEABLE_STATUSES)

    def pending_review(self) -> list[QueueItem]:
        items = self.store.load_queue()
        return [
            item
            for item in _fifo(items.values())
            if item.status == "queued" and are_deps_resolved(item.deps, items)
        ]
