import pytest

from cielo.engine.clock import ManualClock
from cielo.engine.errors import InvalidState, InvalidTransition, NotFound
from cielo.engine.ids import CountingIdGenerator
from cielo.engine.queue import QueueLifecycle, are_deps_resolved
from cielo.governance.audit import BestEffortAudit, MemoryAuditSink
from cielo.state.store import MemoryStateStore


def _queue() -> tuple[QueueLifecycle, ManualClock, MemoryAuditSink]:
    clock = ManualClock()
    ids = CountingIdGenerator()
    sink = MemoryAuditSink()
    queue = QueueLifecycle(
        MemoryStateStore(),
        clock=clock,
        ids=ids,
        audit=BestEffortAudit(sink, clock=clock, ids=ids),
    )
    return queue, clock, sink


def test_enqueue_applies_defaults() -> None:
    queue, clock, sink = _queue()

    item = queue.enqueue("worker-alpha", "feat/login", ["src\\routes\\**"])

    assert item.queue_id == "Q-0001"
    assert item.status == "queued"
    assert item.risk == "low"
    assert item.gates == "fast"
    assert item.rollback == "git revert"
    assert item.scope == ("src/routes/**",)
    assert item.enqueued_at == clock.now()
    assert sink.names() == ["queue.enqueued"]


def test_enqueue_rejects_unknown_risk_and_gates() -> None:
    queue, _, _ = _queue()

    with pytest.raises(ValueError):
        queue.enqueue("worker-alpha", "feat/x", ["src/**"], risk="extreme")
    with pytest.raises(ValueError):
        queue.enqueue("worker-alpha", "feat/x", ["src/**"], gates="slow")
    assert queue.all() == []


def test_dequeue_is_fifo_among_queued() -> None:
    queue, clock, _ = _queue()
    first = queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])
    clock.advance(seconds=1)
    queue.enqueue("worker-beta", "feat/b", ["src/b/**"])

    picked = queue.dequeue("reviewer")

    assert picked.queue_id == first.queue_id
    assert picked.status == "reviewing"
    assert picked.updated_by == "reviewer"


def test_dequeue_prefers_approved_items() -> None:
    queue, clock, _ = _queue()
    queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])
    clock.advance(seconds=1)
    later = queue.enqueue("worker-beta", "feat/b", ["src/b/**"])
    queue.approve(later.queue_id, "reviewer")

    assert queue.dequeue("merger").queue_id == later.queue_id


def test_dequeue_waits_for_dependencies_to_merge() -> None:
    queue, clock, _ = _queue()
    base = queue.enqueue("worker-alpha", "feat/base", ["src/base/**"])
    clock.advance(seconds=1)
    child = queue.enqueue("worker-beta", "feat/child", ["src/child/**"], deps=[base.queue_id])

    assert queue.dequeue("reviewer").queue_id == base.queue_id
    assert queue.dequeue("reviewer") is None
    assert queue.are_deps_resolved(child.deps) is False

    queue.mark_merged(base.queue_id, "merger")

    assert queue.are_deps_resolved(child.deps) is True
    assert queue.dequeue("reviewer").queue_id == child.queue_id


def test_dequeue_on_empty_queue_returns_none() -> None:
    queue, _, sink = _queue()

    assert queue.dequeue("reviewer") is None
    assert sink.names() == []


def test_dequeue_by_id_checks_status_and_dependencies() -> None:
    queue, _, _ = _queue()
    base = queue.enqueue("worker-alpha", "feat/base", ["src/base/**"])
    child = queue.enqueue("worker-beta", "feat/child", ["src/child/**"], deps=[base.queue_id])

    with pytest.raises(InvalidState, match="has unmerged dependencies: Q-0001"):
        queue.dequeue_by_id(child.queue_id, "reviewer")
    assert queue.get(child.queue_id).status == "queued"

    queue.mark_merged(base.queue_id, "merger")
    picked = queue.dequeue_by_id(child.queue_id, "reviewer")

    assert picked.status == "reviewing"
    with pytest.raises(InvalidState) as excinfo:
        queue.dequeue_by_id(child.queue_id, "reviewer")
    assert isinstance(excinfo.value, InvalidTransition)
    assert str(excinfo.value) == "Queue item Q-0002 is 'reviewing', expected 'queued' or 'approved'"
    with pytest.raises(NotFound, match="Queue item Q-0099 not found"):
        queue.dequeue_by_id("Q-0099", "reviewer")


def test_are_deps_resolved_rules() -> None:
    queue, _, _ = _queue()
    merged = queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])
    waiting = queue.enqueue("worker-beta", "feat/b", ["src/b/**"])
    queue.mark_merged(merged.queue_id, "merger")
    items = {item.queue_id: item for item in queue.all()}

    assert are_deps_resolved([], items) is True
    assert are_deps_resolved([merged.queue_id], items) is True
    assert are_deps_resolved([merged.queue_id, waiting.queue_id], items) is False
    assert are_deps_resolved(["Q-0404"], items) is False


def test_review_outcomes_update_status_and_reviewer() -> None:
    queue, clock, _ = _queue()
    item = queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])
    clock.advance(minutes=2)

    changes = queue.request_changes(item.queue_id, "reviewer", "needs tests")
    blocked = queue.block(item.queue_id, "ci-bot", "gate failed")
    reverted = queue.mark_reverted(item.queue_id, "merger")

    assert changes.status == "changes_requested"
    assert changes.reviewed_by == "reviewer"
    assert changes.notes == "needs tests"
    assert changes.updated_at == clock.now()
    assert blocked.status == "blocked"
    assert blocked.notes == "gate failed"
    assert blocked.updated_by == "ci-bot"
    assert reverted.status == "reverted"
    assert reverted.notes == "gate failed"


def test_update_rejects_unknown_status() -> None:
    queue, _, _ = _queue()
    item = queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])

    with pytest.raises(ValueError):
        queue.update(item.queue_id, status="shipped")
    with pytest.raises(NotFound):
        queue.update("Q-0099", notes="x")


def test_depth_and_pending_review() -> None:
    queue, clock, _ = _queue()
    first = queue.enqueue("worker-alpha", "feat/a", ["src/a/**"])
    clock.advance(seconds=1)
    second = queue.enqueue("worker-beta", "feat/b", ["src/b/**"], deps=[first.queue_id])
    clock.advance(seconds=1)
    third = queue.enqueue("worker-gamma", "feat/c", ["src/c/**"])
    queue.approve(third.queue_id, "reviewer")

    assert queue.depth() == 3
    assert [item.queue_id for item in queue.pending_review()] == [first.queue_id]
    assert [item.queue_id for item in queue.by_status("approved")] == [third.queue_id]
    assert queue.get(second.queue_id).deps == (first.queue_id,)
