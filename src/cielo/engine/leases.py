"""Time-bounded exclusive claims over file scopes.

A lease is *effectively active* while its stored status is ``active`` and it
has not yet expired. Conflict checks always use the effective state, so an
unswept expired lease never blocks another actor.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import InvalidTransition, NotFound, ScopeConflict
from cielo.engine.ids import DefaultIdGenerator, IdGenerator
from cielo.engine.scope import file_matches_scope, normalize_path, scopes_overlap
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.state.store import StateStore

logger = get_logger("leases")

LEASE_STATUSES = ("active", "released", "expired", "revoked")
TERMINAL_LEASE_STATUSES = frozenset({"released", "expired", "revoked"})


@dataclass(frozen=True, slots=True)
class Lease:
    lease_id: str
    actor: str
    branch: str
    scope: tuple[str, ...]
    intent: str
    issued_at: datetime
    expires_at: datetime
    status: str = "active"
    last_renewed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lease_id": self.lease_id,
            "actor": self.actor,
            "branch": self.branch,
            "scope": list(self.scope),
            "intent": self.intent,
            "issued_at": format_timestamp(self.issued_at),
            "expires_at": format_timestamp(self.expires_at),
            "status": self.status,
            "last_renewed_at": format_timestamp(self.last_renewed_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Lease:
        status = str(raw.get("status", "active"))
        if status not in LEASE_STATUSES:
            raise ValueError(f"Unknown lease status: {status}")
        return cls(
            lease_id=str(raw["lease_id"]),
            actor=str(raw["actor"]),
            branch=str(raw.get("branch", "")),
            scope=tuple(str(item) for item in raw.get("scope", [])),
            intent=str(raw.get("intent", "")),
            issued_at=parse_timestamp(raw["issued_at"]),
            expires_at=parse_timestamp(raw["expires_at"]),
            status=status,
            last_renewed_at=parse_timestamp(raw.get("last_renewed_at")),
        )


def is_effectively_active(lease: Lease, now: datetime) -> bool:
    return lease.status == "active" and lease.expires_at > now


def find_conflicts(
    leases: Iterable[Lease],
    scope: Sequence[str],
    now: datetime,
    exclude_actor: str | None = None,
) -> list[Lease]:
    """Effectively active leases of other actors whose scope overlaps ``scope``."""
    conflicts: list[Lease] = []
    for lease in leases:
        if exclude_actor is not None and lease.actor == exclude_actor:
            continue
        if not is_effectively_active(lease, now):
            continue
        if scopes_overlap(scope, lease.scope):
            conflicts.append(lease)
    return conflicts


def _sorted(leases: Iterable[Lease]) -> list[Lease]:
    return sorted(leases, key=lambda lease: (lease.issued_at, lease.lease_id))


class LeaseManager:
    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        audit: BestEffortAudit | None = None,
        default_ttl_minutes: int = 60,
        expiring_soon_minutes: int = 10,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or DefaultIdGenerator()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=self.ids)
        self.default_ttl_minutes = default_ttl_minutes
        self.expiring_soon_minutes = expiring_soon_minutes

    def _ttl(self, ttl_minutes: float | None) -> timedelta:
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if minutes <= 0:
            raise ValueError("Lease TTL must be positive.")
        return timedelta(minutes=minutes)

    def claim(
        self,
        actor: str,
        branch: str,
        scope: Sequence[str],
        intent: str,
        ttl_minutes: float | None = None,
    ) -> Lease:
        requested = tuple(normalize_path(pattern) for pattern in scope if pattern)
        if not requested:
            raise ValueError("A lease needs at least one scope pattern.")
        ttl = self._ttl(ttl_minutes)
        lease_id = self.ids.lease_id()
        granted: dict[str, Lease] = {}

        def _claim(leases: dict[str, Lease]) -> dict[str, Lease]:
            now = self.clock.now()
            conflicts = find_conflicts(leases.values(), requested, now, exclude_actor=actor)
            if conflicts:
                blocking = conflicts[0]
                raise ScopeConflict(blocking.lease_id, blocking.actor, blocking.scope)
            lease = Lease(
                lease_id=lease_id,
                actor=actor,
                branch=branch,
                scope=requested,
                intent=intent,
                issued_at=now,
                expires_at=now + ttl,
            )
            granted["lease"] = lease
            return {**leases, lease_id: lease}

        try:
            self.store.transact("leases", _claim)
        except ScopeConflict as exc:
            logger.info("Lease claim by %s blocked by %s (%s)", actor, exc.lease_id, exc.actor)
            self.audit.emit(
                "lease",
                "conflict",
                actor=actor,
                subsystem="leases",
                data={
                    "scope": list(requested),
                    "blocking_lease": exc.lease_id,
                    "holder": exc.actor,
                },
            )
            raise

        lease = granted["lease"]
        logger.debug("Lease %s granted to %s for %s", lease.lease_id, actor, ", ".join(requested))
        self.audit.emit(
            "lease",
            "claimed",
            actor=actor,
            subsystem="leases",
            data={
                "lease_id": lease.lease_id,
                "branch": branch,
                "scope": list(requested),
                "intent": intent,
                "expires_at": format_timestamp(lease.expires_at),
            },
        )
        return lease

    def renew(self, lease_id: str, ttl_minutes: float | None = None) -> Lease:
        ttl = self._ttl(ttl_minutes)
        renewed: dict[str, Lease] = {}

        def _renew(leases: dict[str, Lease]) -> dict[str, Lease]:
            lease = leases.get(lease_id)
            if lease is None:
                raise NotFound("lease", lease_id)
            now = self.clock.now()
            if not is_effectively_active(lease, now):
                current = lease.status if lease.status != "active" else "expired"
                raise InvalidTransition("lease", lease_id, current, ("active",))
            updated = replace(lease, expires_at=now + ttl, last_renewed_at=now)
            renewed["lease"] = updated
            return {**leases, lease_id: updated}

        self.store.transact("leases", _renew)
        lease = renewed["lease"]
        logger.debug("Lease %s renewed until %s", lease_id, lease.expires_at.isoformat())
        self.audit.emit(
            "lease",
            "renewed",
            actor=lease.actor,
            subsystem="leases",
            data={"lease_id": lease_id, "expires_at": format_timestamp(lease.expires_at)},
        )
        return lease

    def _terminate(self, lease_id: str, status: str) -> Lease:
        outcome: dict[str, Any] = {}

        def _terminate(leases: dict[str, Lease]) -> dict[str, Lease]:
            lease = leases.get(lease_id)
            if lease is None:
                raise NotFound("lease", lease_id)
            if lease.status in TERMINAL_LEASE_STATUSES:
                outcome.update(lease=lease, changed=False)
                return leases
            updated = replace(lease, status=status)
            outcome.update(lease=updated, changed=True)
            return {**leases, lease_id: updated}

        self.store.transact("leases", _terminate)
        lease: Lease = outcome["lease"]
        if outcome["changed"]:
            logger.debug("Lease %s %s", lease_id, status)
            self.audit.emit(
                "lease",
                status,
                actor=lease.actor,
                subsystem="leases",
                data={"lease_id": lease_id, "scope": list(lease.scope)},
            )
        return lease

    def release(self, lease_id: str) -> Lease:
        return self._terminate(lease_id, "released")

    def revoke(self, lease_id: str) -> Lease:
        return self._terminate(lease_id, "revoked")

    def cleanup(self) -> int:
        """Mark every lapsed active lease as expired; returns how many."""
        expired: list[Lease] = []

        def _sweep(leases: dict[str, Lease]) -> dict[str, Lease]:
            expired.clear()
            now = self.clock.now()
            updated = dict(leases)
            for key, lease in leases.items():
                if lease.status == "active" and lease.expires_at <= now:
                    updated[key] = replace(lease, status="expired")
                    expired.append(updated[key])
            return updated

        self.store.transact("leases", _sweep)
        for lease in expired:
            self.audit.emit(
                "lease",
                "expired",
                actor=lease.actor,
                subsystem="leases",
                data={"lease_id": lease.lease_id, "scope": list(lease.scope)},
            )
        if expired:
            logger.debug("Expired %d lease(s)", len(expired))
        return len(expired)

    def get(self, lease_id: str) -> Lease | None:
        return self.store.load_leases().get(lease_id)

    def all(self) -> list[Lease]:
        return _sorted(self.store.load_leases().values())

    def active(self) -> list[Lease]:
        now = self.clock.now()
        return [lease for lease in self.all() if is_effectively_active(lease, now)]

    def for_actor(self, actor: str) -> list[Lease]:
        return [lease for lease in self.all() if lease.actor == actor]

    def active_for_actor(self, actor: str) -> list[Lease]:
        return [lease for lease in self.active() if lease.actor == actor]

    def find_conflicts(self, scope: Sequence[str], exclude_actor: str | None = None) -> list[Lease]:
        requested = [normalize_path(pattern) for pattern in scope]
        return find_conflicts(self.all(), requested, self.clock.now(), exclude_actor=exclude_actor)

    def has_active_lease(self, actor: str, paths: Sequence[str]) -> bool:
        """True when every path is covered by one of ``actor``'s active leases."""
        scope = [pattern for lease in self.active_for_actor(actor) for pattern in lease.scope]
        if not scope:
            return False
        return all(file_matches_scope(path, scope) for path in paths)

    def expiring_soon(self, within_minutes: float | None = None) -> list[Lease]:
        minutes = self.expiring_soon_minutes if within_minutes is None else within_minutes
        horizon = self.clock.now() + timedelta(minutes=minutes)
        return [lease for lease in self.active() if lease.expires_at <= horizon]

