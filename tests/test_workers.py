from pathlib import Path

import pytest

from cielo.engine.clock import ManualClock
from cielo.engine.errors import NotFound
from cielo.engine.ids import CountingIdGenerator
from cielo.engine.tasks import TaskLifecycle
from cielo.engine.workers import SkillAffinity, WorkerRegistry, calculate_skill_affinity
from cielo.governance.audit import BestEffortAudit, MemoryAuditSink
from cielo.state.store import FileStateStore, MemoryStateStore, StateStore


def _registry(
    store: StateStore | None = None,
) -> tuple[WorkerRegistry, ManualClock, MemoryAuditSink]:
    clock = ManualClock()
    sink = MemoryAuditSink()
    registry = WorkerRegistry(
        store or MemoryStateStore(),
        clock=clock,
        audit=BestEffortAudit(sink, clock=clock, ids=CountingIdGenerator()),
    )
    return registry, clock, sink


@pytest.mark.parametrize(
    ("skills", "keywords", "required", "expected"),
    [
        (["python", "api", "testing"], ["api", "test", "docs"], None, SkillAffinity(13, True)),
        (["ui", "ui-kit"], ["ui-kit-button"], None, SkillAffinity(6, True)),
        (["python"], ["python"], ["python"], SkillAffinity(10, True)),
        (["python"], ["python"], ["python", "rust"], SkillAffinity(0, False)),
        (["python"], None, None, SkillAffinity(0, True)),
        ([], ["api"], [], SkillAffinity(0, True)),
    ],
)
def test_calculate_skill_affinity(
    skills: list[str],
    keywords: list[str] | None,
    required: list[str] | None,
    expected: SkillAffinity,
) -> None:
    assert calculate_skill_affinity(skills, keywords, required) == expected


def test_register_creates_available_worker() -> None:
    registry, clock, sink = _registry()

    worker = registry.register("worker-alpha", capabilities=["src/api/**"], skills=["python"])

    assert worker.status == "available"
    assert worker.registered_at == clock.now()
    assert worker.last_seen_at == clock.now()
    assert worker.capabilities == ("src/api/**",)
    assert worker.skills == ("python",)
    assert registry.get("worker-alpha") == worker
    assert sink.names() == ["worker.registered"]


def test_register_again_refreshes_registration() -> None:
    registry, clock, _ = _registry()
    first = registry.register("worker-alpha", skills=["python"])
    registry.set_status("worker-alpha", "working", current_task="T-0001")
    clock.advance(minutes=5)

    refreshed = registry.register("worker-alpha")

    assert refreshed.status == "available"
    assert refreshed.current_task is None
    assert refreshed.skills == ("python",)
    assert refreshed.registered_at == first.registered_at
    assert refreshed.last_seen_at == clock.now()


def test_heartbeat_and_offline() -> None:
    registry, clock, sink = _registry()
    registry.register("worker-alpha")
    registry.set_status("worker-alpha", "working", current_task="T-0001")
    clock.advance(minutes=1)

    beat = registry.heartbeat("worker-alpha")
    assert beat.last_seen_at == clock.now()
    assert beat.status == "working"

    clock.advance(minutes=1)
    offline = registry.mark_offline("worker-alpha")

    assert offline.status == "offline"
    assert offline.current_task is None
    assert offline.last_seen_at == clock.now()
    assert sink.names() == [
        "worker.registered",
        "worker.status_changed",
        "worker.heartbeat",
        "worker.offline",
    ]


def test_unknown_worker_raises_not_found() -> None:
    registry, _, _ = _registry()

    with pytest.raises(NotFound, match="Worker ghost not found"):
        registry.heartbeat("ghost")
    with pytest.raises(NotFound):
        registry.mark_offline("ghost")
    with pytest.raises(NotFound):
        registry.register_skills("ghost", ["python"])
    assert registry.get("ghost") is None
    assert registry.skills_for("ghost") == ()


def test_set_status_rejects_unknown_status() -> None:
    registry, _, _ = _registry()
    registry.register("worker-alpha")

    with pytest.raises(ValueError):
        registry.set_status("worker-alpha", "sleeping")
    assert registry.get("worker-alpha").status == "available"


def test_register_skills_replaces_skills_and_strength() -> None:
    registry, _, _ = _registry()
    registry.register("worker-alpha", skills=["python"])

    updated = registry.register_skills("worker-alpha", ["go", "sql"], strength={"go": 0.9})
    kept = registry.register_skills("worker-alpha", ["go", "sql", "api"])

    assert updated.skills == ("go", "sql")
    assert updated.strength == {"go": 0.9}
    assert kept.strength == {"go": 0.9}
    assert registry.skills_for("worker-alpha") == ("go", "sql", "api")


def test_query_by_skills_all_or_any() -> None:
    registry, clock, _ = _registry()
    registry.register("worker-alpha", skills=["python", "api"])
    clock.advance(seconds=1)
    registry.register("worker-beta", skills=["python"])
    clock.advance(seconds=1)
    registry.register("worker-gamma", skills=["docs"])

    both = registry.query_by_skills(["python", "api"])
    either = registry.query_by_skills(["api", "docs"], match_all=False)

    assert [worker.worker_id for worker in both] == ["worker-alpha"]
    assert [worker.worker_id for worker in either] == ["worker-alpha", "worker-gamma"]


def test_find_best_worker_ranks_available_workers() -> None:
    registry, clock, _ = _registry()
    registry.register("worker-alpha", skills=["python", "api"])
    clock.advance(seconds=1)
    registry.register("worker-beta", skills=["route-design"])
    clock.advance(seconds=1)
    registry.register("worker-gamma", skills=["api", "route"])
    registry.mark_offline("worker-gamma")

    best = registry.find_best_worker(["api", "route"])
    beta_only = registry.find_best_worker(["api", "route"], required_skills=["route-design"])

    assert best.worker_id == "worker-alpha"
    assert beta_only.worker_id == "worker-beta"
    assert registry.find_best_worker(["api"], required_skills=["rust"]) is None


def test_find_best_worker_ties_go_to_earliest_registration() -> None:
    registry, clock, _ = _registry()
    registry.register("worker-beta", skills=["docs"])
    clock.advance(seconds=1)
    registry.register("worker-alpha", skills=["docs"])

    assert registry.find_best_worker(["docs"]).worker_id == "worker-beta"


def test_find_best_worker_with_nobody_available() -> None:
    registry, _, _ = _registry()

    assert registry.find_best_worker(["api"]) is None


def test_find_best_worker_for_task_uses_task_keywords_and_skills() -> None:
    store = MemoryStateStore()
    registry, clock, _ = _registry(store)
    tasks = TaskLifecycle(store, clock=clock, ids=CountingIdGenerator())
    registry.register("worker-alpha", skills=["python", "api"])
    clock.advance(seconds=1)
    registry.register("worker-beta", skills=["route-design", "python"])
    clock.advance(seconds=1)
    registry.register("worker-gamma", skills=["route-design"])

    open_task = tasks.create("Add api route", ["src/api/**"], "lead")
    strict_task = tasks.create(
        "Add api route", ["src/api/**"], "lead", required_skills=["route-design", "python"]
    )

    assert open_task.keywords == ("add", "api", "route", "src")
    assert registry.find_best_worker_for_task(open_task).worker_id == "worker-alpha"
    assert registry.find_best_worker_for_task(strict_task).worker_id == "worker-beta"


def test_workers_persist_in_file_store(tmp_path: Path) -> None:
    registry, _, _ = _registry(FileStateStore(tmp_path))
    registry.register("worker-alpha", skills=["python"])
    registry.register_skills("worker-alpha", ["python", "sql"], strength={"sql": 0.5})

    reloaded = FileStateStore(tmp_path).load_workers()

    assert reloaded["worker-alpha"] == registry.get("worker-alpha")
    assert reloaded["worker-alpha"].strength == {"sql": 0.5}
    assert (tmp_path / "workers.json").exists()
