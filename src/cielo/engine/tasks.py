from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import InvalidTransition, NotFound
from cielo.engine.ids import DefaultIdGenerator, IdGenerator
from cielo.engine.scope import normalize_path
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.state.store import StateStore

logger = get_logger("tasks")

TASK_STATUSES = ("pending", "assigned", "in_progress", "completed", "blocked")
PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
DEFAULT_WORKER_STATUSES = ("assigned", "in_progress")


@dataclass(frozen=True, slots=True)
class Task:
    task_id: str
    title: str
    scope: tuple[str, ...]
    created_by: str
    created_at: datetime
    description: str = ""
    priority: str = "medium"
    status: str = "pending"
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    branch: str | None = None
    queue_id: str | None = None
    notes: str | None = None
    keywords: tuple[str, ...] = ()
    required_skills: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "scope": list(self.scope),
            "priority": self.priority,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": format_timestamp(self.created_at),
            "assigned_to": self.assigned_to,
            "assigned_at": format_timestamp(self.assigned_at),
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "branch": self.branch,
            "queue_id": self.queue_id,
            "notes": self.notes,
            "keywords": list(self.keywords),
            "required_skills": list(self.required_skills),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        status = str(raw.get("status", "pending"))
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        priority = str(raw.get("priority", "medium"))
        if priority not in PRIORITY_ORDER:
            raise ValueError(f"Unknown task priority: {priority}")
        return cls(
            task_id=str(raw["task_id"]),
            title=str(raw.get("title", "")),
            description=str(raw.get("description") or ""),
            scope=tuple(str(item) for item in raw.get("scope", [])),
            priority=priority,
            status=status,
            created_by=str(raw.get("created_by", "")),
            created_at=parse_timestamp(raw["created_at"]),
            assigned_to=raw.get("assigned_to"),
            assigned_at=parse_timestamp(raw.get("assigned_at")),
            started_at=parse_timestamp(raw.get("started_at")),
            completed_at=parse_timestamp(raw.get("completed_at")),
            branch=raw.get("branch"),
            queue_id=raw.get("queue_id"),
            notes=raw.get("notes"),
            keywords=tuple(str(item) for item in raw.get("keywords") or []),
            required_skills=tuple(str(item) for item in raw.get("required_skills") or []),
        )


def branch_name_for(title: str, prefix: str = "feat/", length: int = 30) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return f"{prefix}{slug[:length]}"


def generate_keywords(title: str, scope: Iterable[str]) -> tuple[str, ...]:
    """Title words longer than two characters plus literal scope path segments."""
    cleaned = re.sub(r"[^a-z0-9\s]", "", title.lower())
    words = [word for word in cleaned.split() if len(word) > 2]
    for pattern in scope:
        words.extend(
            part.lower() for part in normalize_path(pattern).split("/") if part and "*" not in part
        )
    return tuple(dict.fromkeys(words))


def pending_sorted(tasks: Iterable[Task]) -> list[Task]:
    pending = [task for task in tasks if task.status == "pending"]
    return sorted(
        pending,
        key=lambda task: (PRIORITY_ORDER[task.priority], task.created_at, task.task_id),
    )


class TaskLifecycle:
    """Task state machine: pending -> assigned -> in_progress -> completed.

    ``blocked`` is reachable from every state except ``completed``. Guards
    raise ``InvalidTransition``; unknown ids raise ``NotFound``.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        audit: BestEffortAudit | None = None,
        branch_prefix: str = "feat/",
        branch_slug_length: int = 30,
        default_priority: str = "medium",
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or DefaultIdGenerator()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=self.ids)
        self.branch_prefix = branch_prefix
        self.branch_slug_length = branch_slug_length
        self.default_priority = default_priority

    def _mutate(self, task_id: str, change: Any) -> Task:
        result: dict[str, Task] = {}

        def _apply(tasks: dict[str, Task]) -> dict[str, Task]:
            task = tasks.get(task_id)
            if task is None:
                raise NotFound("task", task_id)
            updated = change(task, self.clock.now())
            result["task"] = updated
            return {**tasks, task_id: updated}

        self.store.transact("tasks", _apply)
        return result["task"]

    def _emit(self, event: str, task: Task, actor: str, **data: Any) -> None:
        logger.debug("Task %s %s by %s", task.task_id, event, actor)
        self.audit.emit(
            "task",
            event,
            actor=actor,
            subsystem="tasks",
            data={"task_id": task.task_id, "status": task.status, **data},
        )

    def create(
        self,
        title: str,
        scope: Sequence[str],
        created_by: str,
        description: str = "",
        priority: str | None = None,
        keywords: Sequence[str] | None = None,
        required_skills: Sequence[str] | None = None,
    ) -> Task:
        priority = priority or self.default_priority
        if priority not in PRIORITY_ORDER:
            raise ValueError(f"Unknown task priority: {priority}")
        normalized = tuple(normalize_path(pattern) for pattern in scope)
        if keywords is None:
            keywords = generate_keywords(title, normalized)
        created: dict[str, Task] = {}

        def _create(tasks: dict[str, Task]) -> dict[str, Task]:
            task = Task(
                task_id=self.ids.task_id(tasks.keys()),
                title=title,
                description=description,
                scope=normalized,
                priority=priority,
                created_by=created_by,
                created_at=self.clock.now(),
                keywords=tuple(keywords),
                required_skills=tuple(required_skills or ()),
            )
            created["task"] = task
            return {**tasks, task.task_id: task}

        self.store.transact("tasks", _create)
        task = created["task"]
        self._emit("created", task, created_by, title=title, priority=priority)
        return task

    def assign(self, task_id: str, worker: str) -> Task:
        def _assign(task: Task, now: datetime) -> Task:
            if task.status != "pending":
                raise InvalidTransition("task", task_id, task.status, ("pending",))
            return replace(task, status="assigned", assigned_to=worker, assigned_at=now)

        task = self._mutate(task_id, _assign)
        self._emit("assigned", task, worker)
        return task

    def start(self, task_id: str, worker: str) -> Task:
        def _start(task: Task, now: datetime) -> Task:
            if task.status != "assigned":
                raise InvalidTransition("task", task_id, task.status, ("assigned",))
            if task.assigned_to != worker:
                raise InvalidTransition(
                    "task",
                    task_id,
                    task.status,
                    ("assigned",),
                    detail=f"Task {task_id} is assigned to '{task.assigned_to}', not '{worker}'",
                )
            branch = branch_name_for(task.title, self.branch_prefix, self.branch_slug_length)
            return replace(task, status="in_progress", started_at=now, branch=branch)

        task = self._mutate(task_id, _start)
        self._emit("started", task, worker, branch=task.branch)
        return task

    def complete(
        self,
        task_id: str,
        worker: str,
        queue_id: str | None = None,
        notes: str | None = None,
    ) -> Task:
        def _complete(task: Task, now: datetime) -> Task:
            if task.status not in ("assigned", "in_progress"):
                raise InvalidTransition("task", task_id, task.status, ("assigned", "in_progress"))
            return replace(
                task,
                status="completed",
                completed_at=now,
                queue_id=queue_id or task.queue_id,
                notes=notes or task.notes,
            )

        task = self._mutate(task_id, _complete)
        self._emit("completed", task, worker, queue_id=task.queue_id)
        return task

    def block(self, task_id: str, reason: str, actor: str = "system") -> Task:
        def _block(task: Task, now: datetime) -> Task:
            if task.status == "completed":
                raise InvalidTransition(
                    "task", task_id, task.status, ("pending", "assigned", "in_progress", "blocked")
                )
            return replace(task, status="blocked", notes=reason)

        task = self._mutate(task_id, _block)
        logger.info("Task %s blocked: %s", task_id, reason)
        self._emit("blocked", task, actor, reason=reason)
        return task

    def update_notes(self, task_id: str, notes: str) -> Task:
        return self._mutate(task_id, lambda task, now: replace(task, notes=notes))

    def get(self, task_id: str) -> Task | None:
        return self.store.load_tasks().get(task_id)

    def all(self) -> list[Task]:
        return sorted(self.store.load_tasks().values(), key=lambda task: task.task_id)

    def by_status(self, status: str) -> list[Task]:
        return [task for task in self.all() if task.status == status]

    def for_worker(
        self, worker: str, statuses: Sequence[str] = DEFAULT_WORKER_STATUSES
    ) -> list[Task]:
        return [
            task for task in self.all() if task.assigned_to == worker and task.status in statuses
        ]

    def pending_sorted(self) -> list[Task]:
        return pending_sorted(self.store.load_tasks().values())

    def next_pending(self) -> Task | None:
        ordered = self.pending_sorted()
        return ordered[0] if ordered else None
