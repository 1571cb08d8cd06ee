from datetime import timedelta

import pytest

from cielo.engine.clock import ManualClock
from cielo.engine.errors import InvalidTransition, NotFound, ScopeConflict
from cielo.engine.ids import CountingIdGenerator
from cielo.engine.leases import LeaseManager, is_effectively_active
from cielo.engine.scope import scopes_overlap
from cielo.governance.audit import BestEffortAudit, MemoryAuditSink
from cielo.state.store import MemoryStateStore


def _manager(ttl: int = 60) -> tuple[LeaseManager, ManualClock, MemoryAuditSink]:
    clock = ManualClock()
    ids = CountingIdGenerator()
    sink = MemoryAuditSink()
    manager = LeaseManager(
        MemoryStateStore(),
        clock=clock,
        ids=ids,
        audit=BestEffortAudit(sink, clock=clock, ids=ids),
        default_ttl_minutes=ttl,
    )
    return manager, clock, sink


def test_claim_grants_active_lease_with_default_ttl() -> None:
    manager, clock, _ = _manager()

    lease = manager.claim("worker-alpha", "feat/routes", ["src/routes/**"], "add routes")

    assert lease.status == "active"
    assert lease.scope == ("src/routes/**",)
    assert lease.issued_at == clock.now()
    assert lease.expires_at == clock.now() + timedelta(minutes=60)
    assert manager.get(lease.lease_id) == lease


def test_overlapping_claim_by_other_actor_is_rejected() -> None:
    manager, _, sink = _manager()
    held = manager.claim("worker-alpha", "feat/routes", ["src/routes/**"], "routes")

    with pytest.raises(ScopeConflict) as excinfo:
        manager.claim("worker-beta", "feat/api", ["src/routes/api.ts"], "api")

    assert excinfo.value.lease_id == held.lease_id
    assert excinfo.value.actor == "worker-alpha"
    assert str(excinfo.value) == (
        f"Scope overlap with lease {held.lease_id} (actor: worker-alpha, scope: src/routes/**)"
    )
    assert [lease.actor for lease in manager.all()] == ["worker-alpha"]
    assert sink.names() == ["lease.claimed", "lease.conflict"]


def test_same_actor_may_hold_overlapping_leases() -> None:
    manager, _, _ = _manager()
    manager.claim("worker-alpha", "feat/routes", ["src/routes/**"], "routes")

    second = manager.claim("worker-alpha", "feat/routes", ["src/routes/api.ts"], "api")

    assert len(manager.active_for_actor("worker-alpha")) == 2
    assert second.status == "active"


def test_empty_scope_is_rejected() -> None:
    manager, _, _ = _manager()

    with pytest.raises(ValueError):
        manager.claim("worker-alpha", "feat/x", [], "nothing")


def test_expired_lease_stops_blocking_before_cleanup() -> None:
    manager, clock, _ = _manager()
    first = manager.claim("worker-alpha", "feat/a", ["src/**"], "a", ttl_minutes=10)

    clock.advance(minutes=10)
    # expiry is exclusive: a lease expiring exactly now is no longer active
    assert is_effectively_active(first, clock.now()) is False
    second = manager.claim("worker-beta", "feat/b", ["src/app.ts"], "b")

    assert manager.get(first.lease_id).status == "active"
    assert [lease.lease_id for lease in manager.active()] == [second.lease_id]


def test_released_lease_frees_scope() -> None:
    manager, _, _ = _manager()
    first = manager.claim("worker-alpha", "feat/a", ["src/**"], "a")
    manager.release(first.lease_id)

    second = manager.claim("worker-beta", "feat/b", ["src/app.ts"], "b")

    assert second.actor == "worker-beta"


def test_renew_extends_expiry_from_now() -> None:
    manager, clock, _ = _manager()
    lease = manager.claim("worker-alpha", "feat/a", ["src/**"], "a")

    clock.advance(minutes=30)
    renewed = manager.renew(lease.lease_id, ttl_minutes=45)

    assert renewed.expires_at == clock.now() + timedelta(minutes=45)
    assert renewed.last_renewed_at == clock.now()


def test_renew_rejects_expired_and_unknown_leases() -> None:
    manager, clock, _ = _manager()
    lease = manager.claim("worker-alpha", "feat/a", ["src/**"], "a", ttl_minutes=5)
    clock.advance(minutes=6)

    with pytest.raises(InvalidTransition):
        manager.renew(lease.lease_id)
    with pytest.raises(NotFound):
        manager.renew("wg_missing")


def test_release_and_revoke_are_idempotent() -> None:
    manager, _, sink = _manager()
    lease = manager.claim("worker-alpha", "feat/a", ["src/**"], "a")

    first = manager.release(lease.lease_id)
    second = manager.release(lease.lease_id)
    revoked = manager.revoke(lease.lease_id)

    assert first.status == "released"
    assert second.status == "released"
    assert revoked.status == "released"
    assert sink.names().count("lease.released") == 1
    assert "lease.revoked" not in sink.names()


def test_revoke_terminates_active_lease() -> None:
    manager, _, _ = _manager()
    lease = manager.claim("worker-alpha", "feat/a", ["src/**"], "a")

    assert manager.revoke(lease.lease_id).status == "revoked"
    with pytest.raises(NotFound):
        manager.release("wg_missing")


def test_cleanup_marks_lapsed_leases_expired() -> None:
    manager, clock, _ = _manager()
    short = manager.claim("worker-alpha", "feat/a", ["src/a/**"], "a", ttl_minutes=5)
    long = manager.claim("worker-beta", "feat/b", ["docs/**"], "b", ttl_minutes=120)

    clock.advance(minutes=6)

    assert manager.cleanup() == 1
    assert manager.get(short.lease_id).status == "expired"
    assert manager.get(long.lease_id).status == "active"
    assert manager.cleanup() == 0


def test_has_active_lease_requires_every_path_covered() -> None:
    manager, _, _ = _manager()
    manager.claim("worker-alpha", "feat/a", ["src/routes/**", "tests/routes/*.py"], "a")

    assert manager.has_active_lease("worker-alpha", ["src/routes/a.ts", "tests/routes/t.py"])
    assert not manager.has_active_lease("worker-alpha", ["src/routes/a.ts", "src/other.ts"])
    assert not manager.has_active_lease("worker-beta", ["src/routes/a.ts"])


def test_expiring_soon_uses_horizon() -> None:
    manager, _, _ = _manager()
    soon = manager.claim("worker-alpha", "feat/a", ["src/a/**"], "a", ttl_minutes=5)
    manager.claim("worker-beta", "feat/b", ["src/b/**"], "b", ttl_minutes=60)

    assert [lease.lease_id for lease in manager.expiring_soon()] == [soon.lease_id]
    assert len(manager.expiring_soon(within_minutes=90)) == 2


def test_find_conflicts_can_exclude_actor() -> None:
    manager, _, _ = _manager()
    manager.claim("worker-alpha", "feat/a", ["src/**"], "a")

    assert len(manager.find_conflicts(["src/app.ts"])) == 1
    assert manager.find_conflicts(["src/app.ts"], exclude_actor="worker-alpha") == []
    assert manager.find_conflicts(["docs/**"]) == []


def test_no_cross_actor_overlap_survives_claim_sequence() -> None:
    manager, clock, _ = _manager()
    attempts = [
        ("worker-alpha", ["src/routes/**"]),
        ("worker-beta", ["src/routes/api.ts"]),
        ("worker-beta", ["docs/**"]),
        ("worker-gamma", ["src/*/index.ts"]),
        ("worker-gamma", ["tests/**"]),
        ("worker-alpha", ["tests/unit/a.py"]),
        ("worker-delta", ["scripts/build.sh", "src/models/**"]),
    ]
    for actor, scope in attempts:
        try:
            manager.claim(actor, f"feat/{actor}", scope, "work")
        except ScopeConflict:
            pass
        clock.advance(seconds=1)

    active = manager.active()
    for index, lease in enumerate(active):
        for other in active[index + 1 :]:
            if lease.actor != other.actor:
                assert not scopes_overlap(lease.scope, other.scope)
