from datetime import UTC, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from cielo.engine.clock import ManualClock
from cielo.engine.ids import CountingIdGenerator
from cielo.governance.audit import BestEffortAudit, MemoryAuditSink
from cielo.governance.policy import (
    FieldCondition,
    PolicyConditions,
    PolicyEngine,
    PolicyMetadata,
    PolicyRequest,
    PolicyRule,
    TimeWindow,
    evaluate_field_condition,
)
from cielo.state.store import MemoryStateStore

# 2025-01-06 is a Monday
MONDAY_NOON = datetime(2025, 1, 6, 12, 0, tzinfo=UTC)


def _engine(store: MemoryStateStore | None = None) -> tuple[PolicyEngine, MemoryAuditSink]:
    clock = ManualClock(MONDAY_NOON)
    sink = MemoryAuditSink()
    engine = PolicyEngine(
        store,
        clock=clock,
        audit=BestEffortAudit(sink, clock=clock, ids=CountingIdGenerator()),
    )
    return engine, sink


def _rule(rule_id: str, effect: str, priority: int = 100, **conditions: object) -> PolicyRule:
    return PolicyRule(
        id=rule_id,
        name=rule_id.replace("-", " "),
        effect=effect,
        description=f"{rule_id} description",
        priority=priority,
        conditions=PolicyConditions(**conditions),
    )


def test_no_rules_allows_everything() -> None:
    engine, _ = _engine()

    decision = engine.evaluate(PolicyRequest(actor="anyone", action="merge"))

    assert decision.decision == "allow"
    assert decision.matched_rules == ()
    assert decision.has_warnings is False
    assert decision.evaluated_at == MONDAY_NOON


def test_hard_deny_beats_allow_regardless_of_order() -> None:
    engine, sink = _engine()
    rules = [
        _rule("allow-workers", "allow", priority=10, actors=("worker-*",)),
        _rule("deny-secrets", "deny", priority=1, scopes=("src/secrets/**",)),
    ]

    denied = engine.evaluate(
        PolicyRequest(actor="worker-alpha", action="edit", scope=("src/secrets/key.txt",)),
        rules,
    )
    allowed = engine.evaluate(
        PolicyRequest(actor="worker-alpha", action="edit", scope=("src/app.ts",)), rules
    )

    assert denied.decision == "deny"
    assert [match.rule_id for match in denied.matched_rules] == ["deny-secrets", "allow-workers"]
    assert [match.rule_id for match in denied.hard_violations] == ["deny-secrets"]
    assert denied.reasons == ("[deny-secrets] deny secrets: deny-secrets description",)
    assert allowed.decision == "allow"
    assert [match.rule_id for match in allowed.matched_rules] == ["allow-workers"]
    assert sink.names() == ["policy.denied", "policy.evaluated"]


def test_blocked_worker_denied_while_other_workers_allowed() -> None:
    engine, _ = _engine()
    rules = [
        _rule("allow-workers", "allow", priority=100, actors=("worker-*",)),
        _rule("deny-blocked", "deny", priority=1, actors=("worker-blocked",), actions=("task.*",)),
    ]

    assert engine.can_perform("worker-blocked", "task.create", rules=rules) is False
    assert engine.can_perform("worker-alpha", "task.create", rules=rules) is True


def test_soft_violation_only_warns() -> None:
    engine, _ = _engine()
    rule = PolicyRule(
        id="warn-large",
        name="Large change",
        effect="warn",
        enforcement="soft",
        metadata=PolicyMetadata(rationale="Prefer smaller changes"),
    )

    decision = engine.evaluate(PolicyRequest(actor="worker-alpha", action="merge"), [rule])

    assert decision.decision == "allow"
    assert decision.has_warnings is True
    assert decision.reasons == ("[WARN] [warn-large] Large change: Prefer smaller changes",)


def test_hard_deny_and_soft_warning_are_reported_together() -> None:
    engine, _ = _engine()
    rules = [
        _rule("deny-merge", "deny", priority=1, actions=("merge",)),
        PolicyRule(id="warn-size", name="Size", effect="warn", enforcement="soft", priority=5),
    ]

    decision = engine.evaluate(PolicyRequest(actor="worker-alpha", action="merge"), rules)

    assert decision.decision == "deny"
    assert decision.has_warnings is True
    assert [match.rule_id for match in decision.hard_violations] == ["deny-merge"]
    assert [match.rule_id for match in decision.soft_violations] == ["warn-size"]
    assert decision.reasons == (
        "[deny-merge] deny merge: deny-merge description",
        "[WARN] [warn-size] Size: ",
    )


def test_hard_warn_rule_is_a_violation() -> None:
    engine, _ = _engine()

    decision = engine.evaluate(
        PolicyRequest(actor="worker-alpha", action="merge"), [_rule("warn-hard", "warn")]
    )

    assert decision.decision == "deny"


def test_disabled_rules_are_ignored() -> None:
    engine, _ = _engine()
    rule = PolicyRule(id="off", name="off", effect="deny", enabled=False)

    assert engine.is_allowed(PolicyRequest(actor="worker-alpha", action="merge"), [rule])


def test_scope_condition_needs_request_scope() -> None:
    engine, _ = _engine()
    rules = [_rule("deny-secrets", "deny", scopes=("src/secrets/**",))]

    assert engine.can_perform("worker-alpha", "edit", rules=rules) is True
    assert engine.can_perform("worker-alpha", "edit", ["src\\secrets\\a.txt"], rules) is False


def test_rules_load_from_store() -> None:
    store = MemoryStateStore()
    store.save_rules([_rule("deny-merge", "deny", actions=("merge",))])
    engine, _ = _engine(store)

    assert engine.can_perform("worker-alpha", "merge") is False
    assert engine.can_perform("worker-alpha", "review") is True


def test_action_patterns_use_globs() -> None:
    engine, _ = _engine()
    rules = [_rule("deny-task-writes", "deny", actions=("task.*",))]

    assert engine.can_perform("lead", "task.create", rules=rules) is False
    assert engine.can_perform("lead", "queue.approve", rules=rules) is True


@pytest.mark.parametrize(
    ("window", "expected"),
    [
        (TimeWindow(days_of_week=(1,)), True),
        (TimeWindow(days_of_week=(0, 6)), False),
        (TimeWindow(start_hour=9, end_hour=17), True),
        (TimeWindow(start_hour=13), False),
        # end hour is exclusive
        (TimeWindow(end_hour=12), False),
    ],
)
def test_time_window_contains(window: TimeWindow, expected: bool) -> None:
    assert window.contains(MONDAY_NOON) is expected


def test_time_window_uses_timestamp_offset_without_timezone() -> None:
    sunday_late = datetime(2025, 1, 5, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

    assert TimeWindow(days_of_week=(0,), start_hour=23).contains(sunday_late) is True


def test_time_window_converts_named_timezone() -> None:
    try:
        ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("timezone database not available")
    # noon UTC is 07:00 in New York in January
    assert TimeWindow(start_hour=9, timezone="America/New_York").contains(MONDAY_NOON) is False
    assert TimeWindow(start_hour=7, timezone="America/New_York").contains(MONDAY_NOON) is True


@pytest.mark.parametrize("zone", ["Mars/Olympus_Mons", "/etc/UTC", "../x", 5, ["UTC"]])
def test_unusable_timezone_never_matches(zone: object) -> None:
    assert TimeWindow(start_hour=0, timezone=zone).contains(MONDAY_NOON) is False


def test_rule_with_bad_timezone_does_not_break_evaluation() -> None:
    store = MemoryStateStore()
    store.set_json(
        "policies",
        {
            "rules": [
                {
                    "id": "night-freeze",
                    "effect": "deny",
                    "conditions": {"time_windows": [{"start_hour": 0, "timezone": "/etc/UTC"}]},
                }
            ]
        },
    )
    engine, _ = _engine(store)

    decision = engine.evaluate(PolicyRequest(actor="worker-alpha", action="merge"))

    assert decision.decision == "allow"
    assert decision.matched_rules == ()


def test_time_window_condition_gates_rule() -> None:
    engine, _ = _engine()
    weekend_freeze = _rule(
        "weekend-freeze", "deny", actions=("merge",), time_windows=(TimeWindow((0, 6)),)
    )

    assert engine.can_perform("lead", "merge", rules=[weekend_freeze]) is True
    request = PolicyRequest(
        actor="lead", action="merge", timestamp=datetime(2025, 1, 4, 10, tzinfo=UTC)
    )
    assert engine.is_allowed(request, [weekend_freeze]) is False


CONTEXT = {
    "risk": "high",
    "lines": 420,
    "flag": True,
    "labels": "needs-review,backend",
    "missing_value": None,
    "change": {"files": 12, "owner": {"team": "core"}},
}


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        (FieldCondition("risk", "eq", "high"), True),
        (FieldCondition("risk", "neq", "low"), True),
        (FieldCondition("flag", "eq", 1), False),
        (FieldCondition("flag", "eq", True), True),
        (FieldCondition("lines", "gt", 400), True),
        (FieldCondition("lines", "lte", 400), False),
        (FieldCondition("risk", "gt", 1), False),
        (FieldCondition("change.files", "gte", 12), True),
        (FieldCondition("change.owner.team", "in", ["core", "infra"]), True),
        (FieldCondition("change.owner.team", "in", "core"), False),
        (FieldCondition("risk", "not_in", ["low"]), True),
        (FieldCondition("risk", "not_in", "low"), False),
        (FieldCondition("labels", "contains", "backend"), True),
        (FieldCondition("lines", "contains", "4"), False),
        (FieldCondition("labels", "regex", r"^needs-"), True),
        (FieldCondition("labels", "regex", r"(unclosed"), False),
        (FieldCondition("change.owner", "exists"), True),
        (FieldCondition("missing_value", "exists"), False),
        (FieldCondition("nowhere.at.all", "not_exists"), True),
        (FieldCondition("nowhere", "eq", None), False),
        (FieldCondition("nowhere", "neq", None), True),
        (FieldCondition("missing_value", "eq", None), True),
        (FieldCondition("risk", "between", ["a", "z"]), False),
    ],
)
def test_field_conditions(condition: FieldCondition, expected: bool) -> None:
    assert evaluate_field_condition(condition, CONTEXT) is expected


def test_field_condition_rule_reads_request_context() -> None:
    engine, _ = _engine()
    rule = _rule("deny-big", "deny", fields=(FieldCondition("lines", "gt", 400),))

    small = PolicyRequest(actor="worker-alpha", action="merge", context={"lines": 10})
    big = PolicyRequest(actor="worker-alpha", action="merge", context={"lines": 900})

    assert engine.is_allowed(small, [rule]) is True
    assert engine.is_allowed(big, [rule]) is False


def test_rule_from_dict_accepts_camel_case_keys() -> None:
    rule = PolicyRule.from_dict(
        {
            "id": "freeze",
            "name": "Freeze",
            "effect": "deny",
            "conditions": {
                "actions": ["merge"],
                "timeWindows": [{"daysOfWeek": [5], "startHour": 16, "endHour": 23}],
            },
            "metadata": {"severity": "high", "tags": ["release"]},
        }
    )

    window = rule.conditions.time_windows[0]
    assert window.days_of_week == (5,)
    assert window.start_hour == 16
    assert window.end_hour == 23
    assert rule.priority == 100
    assert rule.enforcement == "hard"
    assert rule.metadata.tags == ("release",)
    assert PolicyRule.from_dict(rule.to_dict()) == rule


def test_rule_from_dict_rejects_unknown_effect() -> None:
    with pytest.raises(ValueError):
        PolicyRule.from_dict({"id": "x", "effect": "maybe"})
