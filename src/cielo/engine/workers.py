"""Worker registry and skill affinity matching.

Workers announce themselves with ``register`` and keep their registration
fresh with ``heartbeat``. Matching a task to a worker only considers
``available`` workers: anyone missing a required skill is excluded, and the
rest are ranked by how well their skills cover the task keywords.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import NotFound
from cielo.engine.ids import DefaultIdGenerator
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.engine.tasks import Task
    from cielo.state.store import StateStore

logger = get_logger("workers")

WORKER_STATUSES = ("available", "working", "offline")
EXACT_SKILL_SCORE = 10
PARTIAL_SKILL_SCORE = 3


@dataclass(frozen=True, slots=True)
class Worker:
    worker_id: str
    registered_at: datetime
    last_seen_at: datetime
    status: str = "available"
    current_task: str | None = None
    capabilities: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    strength: Mapping[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status,
            "current_task": self.current_task,
            "capabilities": list(self.capabilities),
            "skills": list(self.skills),
            "strength": dict(self.strength),
            "registered_at": format_timestamp(self.registered_at),
            "last_seen_at": format_timestamp(self.last_seen_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Worker:
        status = str(raw.get("status", "available"))
        if status not in WORKER_STATUSES:
            raise ValueError(f"Unknown worker status: {status}")
        registered_at = parse_timestamp(raw["registered_at"])
        return cls(
            worker_id=str(raw["worker_id"]),
            status=status,
            current_task=raw.get("current_task"),
            capabilities=tuple(str(item) for item in raw.get("capabilities") or []),
            skills=tuple(str(item) for item in raw.get("skills") or []),
            strength={str(key): float(value) for key, value in (raw.get("strength") or {}).items()},
            registered_at=registered_at,
            last_seen_at=parse_timestamp(raw.get("last_seen_at")) or registered_at,
        )


@dataclass(frozen=True, slots=True)
class SkillAffinity:
    score: int
    has_required: bool


def calculate_skill_affinity(
    worker_skills: Iterable[str],
    keywords: Iterable[str] | None = None,
    required_skills: Iterable[str] | None = None,
) -> SkillAffinity:
    """Score a worker against a task.

    Missing any required skill scores zero and marks the worker ineligible.
    Each keyword that is one of the worker's skills adds ``EXACT_SKILL_SCORE``;
    otherwise every skill that contains the keyword, or is contained by it,
    adds ``PARTIAL_SKILL_SCORE``.
    """
    skills = list(worker_skills)
    required = list(required_skills or ())
    if required and not all(skill in skills for skill in required):
        return SkillAffinity(score=0, has_required=False)

    score = 0
    for keyword in keywords or ():
        if keyword in skills:
            score += EXACT_SKILL_SCORE
            continue
        for skill in skills:
            if skill in keyword or keyword in skill:
                score += PARTIAL_SKILL_SCORE
    return SkillAffinity(score=score, has_required=True)


def rank_workers(
    workers: Iterable[Worker],
    keywords: Iterable[str] | None = None,
    required_skills: Iterable[str] | None = None,
) -> list[tuple[Worker, SkillAffinity]]:
    """Eligible workers, best score first; ties keep registration order."""
    keywords = list(keywords or ())
    required = list(required_skills or ())
    scored = [
        (worker, calculate_skill_affinity(worker.skills, keywords, required))
        for worker in _by_registration(workers)
    ]
    eligible = [entry for entry in scored if entry[1].has_required]
    return sorted(eligible, key=lambda entry: -entry[1].score)


def _by_registration(workers: Iterable[Worker]) -> list[Worker]:
    return sorted(workers, key=lambda worker: (worker.registered_at, worker.worker_id))


class WorkerRegistry:
    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock | None = None,
        audit: BestEffortAudit | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=DefaultIdGenerator())

    def _emit(self, event: str, worker: Worker, **data: Any) -> None:
        logger.debug("Worker %s %s", worker.worker_id, event)
        self.audit.emit(
            "worker",
            event,
            actor=worker.worker_id,
            subsystem="workers",
            data={"worker_id": worker.worker_id, "status": worker.status, **data},
        )

    def _mutate(self, worker_id: str, change: Any) -> Worker:
        result: dict[str, Worker] = {}

        def _apply(workers: dict[str, Worker]) -> dict[str, Worker]:
            worker = workers.get(worker_id)
            if worker is None:
                raise NotFound("worker", worker_id)
            updated = change(worker, self.clock.now())
            result["worker"] = updated
            return {**workers, worker_id: updated}

        self.store.transact("workers", _apply)
        return result["worker"]

    def register(
        self,
        worker_id: str,
        capabilities: Sequence[str] | None = None,
        skills: Sequence[str] | None = None,
    ) -> Worker:
        """Register a worker, or refresh an existing registration as available."""
        registered: dict[str, Worker] = {}

        def _register(workers: dict[str, Worker]) -> dict[str, Worker]:
            now = self.clock.now()
            existing = workers.get(worker_id)
            if existing is None:
                worker = Worker(
                    worker_id=worker_id,
                    registered_at=now,
                    last_seen_at=now,
                    capabilities=tuple(capabilities or ()),
                    skills=tuple(skills or ()),
                )
            else:
                worker = replace(
                    existing,
                    status="available",
                    last_seen_at=now,
                    current_task=None,
                    capabilities=(
                        existing.capabilities if capabilities is None else tuple(capabilities)
                    ),
                    skills=existing.skills if skills is None else tuple(skills),
                )
            registered["worker"] = worker
            return {**workers, worker_id: worker}

        self.store.transact("workers", _register)
        worker = registered["worker"]
        self._emit("registered", worker, skills=list(worker.skills))
        return worker

    def heartbeat(self, worker_id: str) -> Worker:
        worker = self._mutate(worker_id, lambda worker, now: replace(worker, last_seen_at=now))
        self._emit("heartbeat", worker)
        return worker

    def mark_offline(self, worker_id: str) -> Worker:
        worker = self._mutate(
            worker_id,
            lambda worker, now: replace(
                worker, status="offline", last_seen_at=now, current_task=None
            ),
        )
        logger.info("Worker %s marked offline", worker_id)
        self._emit("offline", worker)
        return worker

    def set_status(
        self, worker_id: str, status: str, current_task: str | None = None
    ) -> Worker:
        if status not in WORKER_STATUSES:
            raise ValueError(f"Unknown worker status: {status}")
        worker = self._mutate(
            worker_id,
            lambda worker, now: replace(
                worker, status=status, last_seen_at=now, current_task=current_task
            ),
        )
        self._emit("status_changed", worker, current_task=current_task)
        return worker

    def register_skills(
        self,
        worker_id: str,
        skills: Sequence[str],
        strength: Mapping[str, float] | None = None,
    ) -> Worker:
        def _skills(worker: Worker, now: datetime) -> Worker:
            return replace(
                worker,
                skills=tuple(skills),
                strength=worker.strength if strength is None else dict(strength),
            )

        worker = self._mutate(worker_id, _skills)
        self._emit("skills_registered", worker, skills=list(worker.skills))
        return worker

    def get(self, worker_id: str) -> Worker | None:
        return self.store.load_workers().get(worker_id)

    def all(self) -> list[Worker]:
        return _by_registration(self.store.load_workers().values())

    def by_status(self, status: str) -> list[Worker]:
        return [worker for worker in self.all() if worker.status == status]

    def available(self) -> list[Worker]:
        return self.by_status("available")

    def working(self) -> list[Worker]:
        return self.by_status("working")

    def skills_for(self, worker_id: str) -> tuple[str, ...]:
        worker = self.get(worker_id)
        return worker.skills if worker is not None else ()

    def query_by_skills(self, required: Sequence[str], match_all: bool = True) -> list[Worker]:
        """Workers holding all (or, with ``match_all=False``, any) of ``required``."""
        check = all if match_all else any
        return [
            worker for worker in self.all() if check(skill in worker.skills for skill in required)
        ]

    def find_best_worker(
        self,
        keywords: Sequence[str] | None = None,
        required_skills: Sequence[str] | None = None,
    ) -> Worker | None:
        ranked = rank_workers(self.available(), keywords, required_skills)
        return ranked[0][0] if ranked else None

    def find_best_worker_for_task(self, task: Task) -> Worker | None:
        return self.find_best_worker(task.keywords, task.required_skills)
