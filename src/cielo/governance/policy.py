"""Prioritized allow/deny/warn rule evaluation.

Rules are checked in ascending ``priority`` order and every matching rule is
recorded. A matching ``deny`` or ``warn`` rule is a violation: hard
enforcement makes the whole decision ``deny``, soft enforcement only raises a
warning. With no rules at all the outcome is ``DEFAULT_ALLOW``.

Rule files written by older tooling use camelCase keys (``timeWindows``,
``daysOfWeek``, ``startHour``); both spellings are accepted on load.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.ids import DefaultIdGenerator
from cielo.engine.scope import matches_any, matches_any_of, normalize_path
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.state.store import StateStore

logger = get_logger("policy")

EFFECTS = ("allow", "deny", "warn")
ENFORCEMENTS = ("hard", "soft")


def _pick(raw: Mapping[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in raw:
        return raw[snake]
    return raw.get(camel, default)


@dataclass(frozen=True, slots=True)
class TimeWindow:
    days_of_week: tuple[int, ...] | None = None
    start_hour: int | None = None
    end_hour: int | None = None
    timezone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "days_of_week": None if self.days_of_week is None else list(self.days_of_week),
            "start_hour": self.start_hour,
            "end_hour": self.end_hour,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TimeWindow:
        days = _pick(raw, "days_of_week", "daysOfWeek")
        start_hour = _pick(raw, "start_hour", "startHour")
        end_hour = _pick(raw, "end_hour", "endHour")
        return cls(
            days_of_week=None if days is None else tuple(int(day) for day in days),
            start_hour=None if start_hour is None else int(start_hour),
            end_hour=None if end_hour is None else int(end_hour),
            timezone=raw.get("timezone"),
        )

    def contains(self, moment: datetime) -> bool:
        local = moment
        if self.timezone:
            try:
                local = moment.astimezone(ZoneInfo(self.timezone))
            # absolute or relative paths raise ValueError, non-strings TypeError
            except (ZoneInfoNotFoundError, ValueError, TypeError):
                logger.warning("Unknown timezone %r in policy time window", self.timezone)
                return False
        # datetime.weekday() is Monday=0; windows count from Sunday=0
        day_of_week = (local.weekday() + 1) % 7
        if self.days_of_week is not None and day_of_week not in self.days_of_week:
            return False
        if self.start_hour is not None and local.hour < self.start_hour:
            return False
        if self.end_hour is not None and local.hour >= self.end_hour:
            return False
        return True


@dataclass(frozen=True, slots=True)
class FieldCondition:
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> FieldCondition:
        return cls(field=str(raw["field"]), operator=str(raw["operator"]), value=raw.get("value"))


@dataclass(frozen=True, slots=True)
class PolicyConditions:
    actors: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ()
    time_windows: tuple[TimeWindow, ...] = ()
    fields: tuple[FieldCondition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "actors": list(self.actors),
            "actions": list(self.actions),
            "scopes": list(self.scopes),
            "time_windows": [window.to_dict() for window in self.time_windows],
            "fields": [condition.to_dict() for condition in self.fields],
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> PolicyConditions:
        return cls(
            actors=tuple(str(item) for item in raw.get("actors") or []),
            actions=tuple(str(item) for item in raw.get("actions") or []),
            scopes=tuple(str(item) for item in raw.get("scopes") or []),
            time_windows=tuple(
                TimeWindow.from_dict(item)
                for item in _pick(raw, "time_windows", "timeWindows") or []
            ),
            fields=tuple(FieldCondition.from_dict(item) for item in raw.get("fields") or []),
        )


@dataclass(frozen=True, slots=True)
class PolicyMetadata:
    severity: str = "medium"
    owner: str | None = None
    tags: tuple[str, ...] = ()
    rationale: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "owner": self.owner,
            "tags": list(self.tags),
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> PolicyMetadata:
        return cls(
            severity=str(raw.get("severity", "medium")),
            owner=raw.get("owner"),
            tags=tuple(str(item) for item in raw.get("tags") or []),
            rationale=raw.get("rationale"),
        )


@dataclass(frozen=True, slots=True)
class PolicyRule:
    id: str
    name: str
    effect: str
    description: str = ""
    priority: int = 100
    enabled: bool = True
    enforcement: str = "hard"
    conditions: PolicyConditions = field(default_factory=PolicyConditions)
    metadata: PolicyMetadata = field(default_factory=PolicyMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "enabled": self.enabled,
            "effect": self.effect,
            "enforcement": self.enforcement,
            "conditions": self.conditions.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> PolicyRule:
        effect = str(raw["effect"])
        if effect not in EFFECTS:
            raise ValueError(f"Unknown policy effect: {effect}")
        enforcement = str(raw.get("enforcement", "hard"))
        if enforcement not in ENFORCEMENTS:
            raise ValueError(f"Unknown policy enforcement: {enforcement}")
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", raw["id"])),
            description=str(raw.get("description", "")),
            priority=int(raw.get("priority", 100)),
            enabled=bool(raw.get("enabled", True)),
            effect=effect,
            enforcement=enforcement,
            conditions=PolicyConditions.from_dict(raw.get("conditions") or {}),
            metadata=PolicyMetadata.from_dict(raw.get("metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class PolicyRequest:
    actor: str
    action: str
    scope: tuple[str, ...] | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class RuleMatch:
    rule_id: str
    rule_name: str
    effect: str
    enforcement: str
    severity: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "effect": self.effect,
            "enforcement": self.enforcement,
            "severity": self.severity,
        }


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    decision: str
    has_warnings: bool = False
    matched_rules: tuple[RuleMatch, ...] = ()
    hard_violations: tuple[RuleMatch, ...] = ()
    soft_violations: tuple[RuleMatch, ...] = ()
    reasons: tuple[str, ...] = ()
    evaluated_at: datetime | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "has_warnings": self.has_warnings,
            "matched_rules": [match.to_dict() for match in self.matched_rules],
            "hard_violations": [match.to_dict() for match in self.hard_violations],
            "soft_violations": [match.to_dict() for match in self.soft_violations],
            "reasons": list(self.reasons),
            "evaluated_at": format_timestamp(self.evaluated_at),
        }


DEFAULT_ALLOW = PolicyDecision(decision="allow")

_MISSING = object()


def resolve_field(path: str, context: Mapping[str, Any]) -> Any:
    """Follow a dot path through nested mappings; ``_MISSING`` when absent."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def evaluate_field_condition(condition: FieldCondition, context: Mapping[str, Any]) -> bool:
    resolved = resolve_field(condition.field, context)
    present = resolved is not _MISSING and resolved is not None
    operator = condition.operator
    expected = condition.value

    if operator == "exists":
        return present
    if operator == "not_exists":
        return not present
    if operator in ("eq", "neq") and resolved is _MISSING:
        # an absent field equals nothing, not even null
        return operator == "neq"
    if resolved is _MISSING:
        resolved = None
    if operator == "eq":
        return _strict_equal(resolved, expected)
    if operator == "neq":
        return not _strict_equal(resolved, expected)
    if operator in ("gt", "gte", "lt", "lte"):
        if not (_is_number(resolved) and _is_number(expected)):
            return False
        if operator == "gt":
            return resolved > expected
        if operator == "gte":
            return resolved >= expected
        if operator == "lt":
            return resolved < expected
        return resolved <= expected
    if operator in ("in", "not_in"):
        if not isinstance(expected, list):
            return False
        found = any(_strict_equal(resolved, candidate) for candidate in expected)
        return found if operator == "in" else not found
    if operator == "contains":
        return isinstance(resolved, str) and isinstance(expected, str) and expected in resolved
    if operator == "regex":
        if not (isinstance(resolved, str) and isinstance(expected, str)):
            return False
        try:
            return re.search(expected, resolved) is not None
        except re.error:
            return False
    return False


def rule_matches(rule: PolicyRule, request: PolicyRequest, moment: datetime) -> bool:
    conditions = rule.conditions
    if not matches_any(conditions.actors, request.actor):
        return False
    if not matches_any(conditions.actions, request.action):
        return False
    if not matches_any_of(conditions.scopes, request.scope):
        return False
    if conditions.time_windows and not any(
        window.contains(moment) for window in conditions.time_windows
    ):
        return False
    return all(
        evaluate_field_condition(condition, request.context) for condition in conditions.fields
    )


def _reason(rule: PolicyRule) -> str:
    return f"[{rule.id}] {rule.name}: {rule.metadata.rationale or rule.description}"


def evaluate_rules(
    request: PolicyRequest, rules: Sequence[PolicyRule], moment: datetime
) -> PolicyDecision:
    if not rules:
        return replace(DEFAULT_ALLOW, evaluated_at=moment)

    ordered = sorted((rule for rule in rules if rule.enabled), key=lambda rule: rule.priority)
    matched: list[RuleMatch] = []
    hard: list[RuleMatch] = []
    soft: list[RuleMatch] = []
    reasons: list[str] = []
    for rule in ordered:
        if not rule_matches(rule, request, moment):
            continue
        match = RuleMatch(
            rule_id=rule.id,
            rule_name=rule.name,
            effect=rule.effect,
            enforcement=rule.enforcement,
            severity=rule.metadata.severity,
        )
        matched.append(match)
        if rule.effect == "allow":
            continue
        if rule.enforcement == "hard":
            hard.append(match)
            reasons.append(_reason(rule))
        else:
            soft.append(match)
            reasons.append(f"[WARN] {_reason(rule)}")

    return PolicyDecision(
        decision="deny" if hard else "allow",
        has_warnings=bool(soft),
        matched_rules=tuple(matched),
        hard_violations=tuple(hard),
        soft_violations=tuple(soft),
        reasons=tuple(reasons),
        evaluated_at=moment,
    )


class PolicyEngine:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        clock: Clock | None = None,
        audit: BestEffortAudit | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=DefaultIdGenerator())

    def rules(self) -> list[PolicyRule]:
        if self.store is None:
            return []
        return self.store.load_rules()

    def evaluate(
        self, request: PolicyRequest, rules: Sequence[PolicyRule] | None = None
    ) -> PolicyDecision:
        if rules is None:
            rules = self.rules()
        if request.scope is not None:
            request = replace(request, scope=tuple(normalize_path(item) for item in request.scope))
        moment = parse_timestamp(request.timestamp) or self.clock.now()
        decision = evaluate_rules(request, rules, moment)

        if decision.decision == "deny":
            logger.info(
                "Policy denied %s for %s: %s",
                request.action,
                request.actor,
                "; ".join(decision.reasons),
            )
        self.audit.emit(
            "policy",
            "denied" if decision.decision == "deny" else "evaluated",
            actor=request.actor,
            subsystem="policy",
            data={
                "action": request.action,
                "scope": list(request.scope or ()),
                "decision": decision.decision,
                "has_warnings": decision.has_warnings,
                "matched_rules": [match.rule_id for match in decision.matched_rules],
                "reasons": list(decision.reasons),
            },
        )
        return decision

    def is_allowed(self, request: PolicyRequest, rules: Sequence[PolicyRule] | None = None) -> bool:
        return self.evaluate(request, rules).allowed

    def can_perform(
        self,
        actor: str,
        action: str,
        scope: Sequence[str] | None = None,
        rules: Sequence[PolicyRule] | None = None,
    ) -> bool:
        request = PolicyRequest(
            actor=actor, action=action, scope=None if scope is None else tuple(scope)
        )
        return self.is_allowed(request, rules)
