"""Two-director review board for high-risk decisions.

Each director looks at a request independently through its own focus areas,
raises concerns, and votes. Any concern at or above the director's veto
threshold is a veto; a medium concern without a veto is an abstention.
``determine_decision`` turns the two votes into the board outcome:

=======  ===========  =========  ========
vote 1   vote 2       decision   escalate
=======  ===========  =========  ========
veto     veto         blocked    yes
veto     approve      escalated  yes
veto     abstain      blocked    yes
abstain  abstain      escalated  yes
approve  approve      approved   no
approve  abstain      approved   no
=======  ===========  =========  ========
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cielo.engine.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from cielo.engine.errors import NotFound
from cielo.engine.ids import DefaultIdGenerator, IdGenerator
from cielo.governance.audit import BestEffortAudit
from cielo.logging import get_logger

if TYPE_CHECKING:
    from cielo.state.store import StateStore

logger = get_logger("board")

DECISION_TYPES = (
    "policy_override",
    "scope_expansion",
    "security_sensitive",
    "resource_intensive",
    "human_escalation",
    "vp_decision",
)
ALWAYS_REVIEWED = frozenset(
    {"policy_override", "security_sensitive", "human_escalation", "vp_decision"}
)
SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}
SENSITIVE_KEYWORDS = ("password", "credential", "secret", "token", "key")


@dataclass(frozen=True, slots=True)
class DirectorProfile:
    id: str
    name: str
    focus_areas: tuple[str, ...]
    veto_threshold: str = "high"


DIRECTORS: dict[str, DirectorProfile] = {
    "director-a": DirectorProfile(
        id="director-a",
        name="Director Alpha",
        focus_areas=("hallucination", "safety", "policy_violation"),
    ),
    "director-b": DirectorProfile(
        id="director-b",
        name="Director Beta",
        focus_areas=("bias", "scope_creep", "resource_abuse"),
    ),
}


@dataclass(frozen=True, slots=True)
class BoardReviewRequest:
    review_id: str
    decision_type: str
    actor: str
    description: str
    requested_at: datetime
    scope: tuple[str, ...] | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_id": self.review_id,
            "decision_type": self.decision_type,
            "actor": self.actor,
            "description": self.description,
            "scope": None if self.scope is None else list(self.scope),
            "context": dict(self.context),
            "requested_at": format_timestamp(self.requested_at),
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> BoardReviewRequest:
        scope = raw.get("scope")
        return cls(
            review_id=str(raw["review_id"]),
            decision_type=str(raw["decision_type"]),
            actor=str(raw.get("actor", "")),
            description=str(raw.get("description", "")),
            scope=None if scope is None else tuple(str(item) for item in scope),
            context=dict(raw.get("context") or {}),
            requested_at=parse_timestamp(raw["requested_at"]),
            correlation_id=raw.get("correlation_id"),
        )


@dataclass(frozen=True, slots=True)
class DirectorConcern:
    type: str
    severity: str
    description: str
    evidence: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "evidence": self.evidence,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DirectorConcern:
        return cls(
            type=str(raw["type"]),
            severity=str(raw["severity"]),
            description=str(raw.get("description", "")),
            evidence=raw.get("evidence"),
        )


@dataclass(frozen=True, slots=True)
class DirectorReview:
    director_id: str
    vote: str
    reasoning: str
    concerns: tuple[DirectorConcern, ...]
    confidence: float
    reviewed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "director_id": self.director_id,
            "vote": self.vote,
            "reasoning": self.reasoning,
            "concerns": [concern.to_dict() for concern in self.concerns],
            "confidence": self.confidence,
            "reviewed_at": format_timestamp(self.reviewed_at),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DirectorReview:
        return cls(
            director_id=str(raw["director_id"]),
            vote=str(raw["vote"]),
            reasoning=str(raw.get("reasoning", "")),
            concerns=tuple(DirectorConcern.from_dict(item) for item in raw.get("concerns") or []),
            confidence=float(raw.get("confidence", 0.5)),
            reviewed_at=parse_timestamp(raw["reviewed_at"]),
        )


@dataclass(frozen=True, slots=True)
class BoardReviewResult:
    request: BoardReviewRequest
    reviews: tuple[DirectorReview, ...]
    decision: str
    reasoning: str
    requires_human_escalation: bool
    decided_at: datetime
    escalation_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "reviews": [review.to_dict() for review in self.reviews],
            "decision": self.decision,
            "reasoning": self.reasoning,
            "requires_human_escalation": self.requires_human_escalation,
            "escalation_reason": self.escalation_reason,
            "decided_at": format_timestamp(self.decided_at),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> BoardReviewResult:
        return cls(
            request=BoardReviewRequest.from_dict(raw["request"]),
            reviews=tuple(DirectorReview.from_dict(item) for item in raw.get("reviews") or []),
            decision=str(raw["decision"]),
            reasoning=str(raw.get("reasoning", "")),
            requires_human_escalation=bool(raw.get("requires_human_escalation", False)),
            escalation_reason=raw.get("escalation_reason"),
            decided_at=parse_timestamp(raw["decided_at"]),
        )


@dataclass(frozen=True, slots=True)
class BoardSession:
    pending: Mapping[str, BoardReviewRequest] = field(default_factory=dict)
    completed: tuple[BoardReviewResult, ...] = ()
    started_at: datetime | None = None
    last_activity_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": {key: request.to_dict() for key, request in self.pending.items()},
            "completed": [result.to_dict() for result in self.completed],
            "started_at": format_timestamp(self.started_at),
            "last_activity_at": format_timestamp(self.last_activity_at),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> BoardSession:
        pending = raw.get("pending") or {}
        return cls(
            pending={
                str(key): BoardReviewRequest.from_dict(value) for key, value in pending.items()
            },
            completed=tuple(
                BoardReviewResult.from_dict(item) for item in raw.get("completed") or []
            ),
            started_at=parse_timestamp(raw.get("started_at")),
            last_activity_at=parse_timestamp(raw.get("last_activity_at")),
        )


def _estimated_cost(context: Mapping[str, Any]) -> float | None:
    value = context.get("estimated_cost")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def detect_concerns(
    request: BoardReviewRequest,
    focus_areas: Sequence[str],
    *,
    scope_breadth_limit: int = 10,
    cost_threshold: float = 100.0,
) -> list[DirectorConcern]:
    concerns: list[DirectorConcern] = []
    description = request.description.lower()
    context = request.context
    scope = list(request.scope or ())

    if "hallucination" in focus_areas:
        if "always" in description or "never" in description:
            concerns.append(
                DirectorConcern(
                    "hallucination",
                    "medium",
                    "Absolute claims detected - may be overgeneralization",
                    "Contains 'always' or 'never' statements",
                )
            )
        if request.decision_type == "policy_override" and not context.get("justification"):
            concerns.append(
                DirectorConcern(
                    "hallucination",
                    "high",
                    "Policy override without justification",
                    "Missing justification field in context",
                )
            )

    if "bias" in focus_areas:
        preferred = context.get("preferred_worker")
        if preferred and request.decision_type == "scope_expansion":
            concerns.append(
                DirectorConcern(
                    "bias",
                    "medium",
                    "Potential worker preference bias in scope assignment",
                    f"Preferred worker: {preferred}",
                )
            )

    if "safety" in focus_areas:
        scope_text = " ".join(scope).lower()
        for keyword in SENSITIVE_KEYWORDS:
            if keyword in scope_text or keyword in description:
                concerns.append(
                    DirectorConcern(
                        "safety",
                        "high",
                        f"Security-sensitive operation: {keyword}",
                        f"Pattern '{keyword}' found in scope or description",
                    )
                )
                break

    if "scope_creep" in focus_areas:
        if any("**" in pattern and "/" not in pattern for pattern in scope):
            concerns.append(
                DirectorConcern(
                    "scope_creep",
                    "medium",
                    "Overly broad scope pattern detected",
                    "Contains root-level ** wildcard",
                )
            )
        if len(scope) > scope_breadth_limit:
            concerns.append(
                DirectorConcern(
                    "scope_creep",
                    "high",
                    "Excessive scope breadth",
                    f"{len(scope)} scope patterns",
                )
            )

    if "resource_abuse" in focus_areas and request.decision_type == "resource_intensive":
        cost = _estimated_cost(context)
        if cost is not None and cost > cost_threshold:
            concerns.append(
                DirectorConcern(
                    "resource_abuse",
                    "high",
                    "High resource cost operation",
                    f"Estimated cost: ${cost:g}",
                )
            )

    if "policy_violation" in focus_areas and request.decision_type == "policy_override":
        concerns.append(
            DirectorConcern(
                "policy_violation",
                "medium",
                "Policy override requested",
                "Explicit policy override decision type",
            )
        )

    return concerns


def determine_vote(concerns: Sequence[DirectorConcern], veto_threshold: str) -> str:
    threshold = SEVERITY_RANK[veto_threshold]
    if any(SEVERITY_RANK.get(concern.severity, 0) >= threshold for concern in concerns):
        return "veto"
    if any(concern.severity == "medium" for concern in concerns):
        return "abstain"
    return "approve"


def _director_reasoning(
    vote: str, concerns: Sequence[DirectorConcern], request: BoardReviewRequest
) -> str:
    if not concerns:
        return f"Approved: No concerns detected for {request.decision_type} decision."
    summary = "; ".join(
        f"[{concern.severity.upper()}] {concern.type}: {concern.description}"
        for concern in concerns
    )
    if vote == "veto":
        return f"VETO: Critical concerns detected. {summary}"
    if vote == "abstain":
        return f"ABSTAIN: Moderate concerns require attention. {summary}"
    return f"Approved with minor notes: {summary}"


def review_decision(
    profile: DirectorProfile,
    request: BoardReviewRequest,
    reviewed_at: datetime,
    *,
    scope_breadth_limit: int = 10,
    cost_threshold: float = 100.0,
) -> DirectorReview:
    concerns = detect_concerns(
        request,
        profile.focus_areas,
        scope_breadth_limit=scope_breadth_limit,
        cost_threshold=cost_threshold,
    )
    vote = determine_vote(concerns, profile.veto_threshold)
    return DirectorReview(
        director_id=profile.id,
        vote=vote,
        reasoning=_director_reasoning(vote, concerns, request),
        concerns=tuple(concerns),
        confidence=max(0.5, 1 - 0.15 * len(concerns)),
        reviewed_at=reviewed_at,
    )


def determine_decision(reviews: Sequence[DirectorReview]) -> tuple[str, bool, str | None]:
    """Return ``(decision, requires_human_escalation, escalation_reason)``."""
    votes = Counter(review.vote for review in reviews)
    total = len(reviews)
    if votes["veto"] == total:
        return (
            "blocked",
            True,
            "Unanimous Board veto - all Directors flagged critical concerns",
        )
    if votes["veto"] and votes["approve"]:
        return "escalated", True, "Director disagreement - veto conflicts with approval"
    if votes["abstain"] == total:
        return "escalated", True, "Both Directors abstained - insufficient confidence"
    if votes["veto"]:
        return "blocked", True, "Director veto with abstention"
    return "approved", False, None


def combine_reasoning(reviews: Sequence[DirectorReview], decision: str) -> str:
    parts = " | ".join(f"[{review.director_id}] {review.reasoning}" for review in reviews)
    return f"Board {decision.upper()}: {parts}"


def requires_board_review(decision_type: str, context: Mapping[str, Any] | None = None) -> bool:
    context = context or {}
    if decision_type in ALWAYS_REVIEWED:
        return True
    if decision_type == "scope_expansion":
        scope = context.get("scope") or []
        return len(scope) > 5 or any(pattern == "**" for pattern in scope)
    if decision_type == "resource_intensive":
        cost = _estimated_cost(context)
        return cost is not None and cost > 50
    return False


class BoardReviewCoordinator:
    """Persists pending requests and bounded decision history in the store."""

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        audit: BestEffortAudit | None = None,
        history_limit: int = 100,
        scope_breadth_limit: int = 10,
        cost_threshold: float = 100.0,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or DefaultIdGenerator()
        self.audit = audit or BestEffortAudit(clock=self.clock, ids=self.ids)
        self.history_limit = history_limit
        self.scope_breadth_limit = scope_breadth_limit
        self.cost_threshold = cost_threshold

    def review(self, director_id: str, request: BoardReviewRequest) -> DirectorReview:
        profile = DIRECTORS.get(director_id)
        if profile is None:
            raise NotFound("director", director_id)
        return review_decision(
            profile,
            request,
            self.clock.now(),
            scope_breadth_limit=self.scope_breadth_limit,
            cost_threshold=self.cost_threshold,
        )

    def submit(
        self,
        decision_type: str,
        actor: str,
        description: str,
        scope: Sequence[str] | None = None,
        context: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> BoardReviewRequest:
        if decision_type not in DECISION_TYPES:
            raise ValueError(f"Unknown decision type: {decision_type}")
        now = self.clock.now()
        request = BoardReviewRequest(
            review_id=self.ids.review_id(),
            decision_type=decision_type,
            actor=actor,
            description=description,
            scope=None if scope is None else tuple(scope),
            context=dict(context or {}),
            requested_at=now,
            correlation_id=correlation_id,
        )

        def _submit(session: BoardSession) -> BoardSession:
            return replace(
                session,
                pending={**session.pending, request.review_id: request},
                started_at=session.started_at or now,
                last_activity_at=now,
            )

        self.store.transact("board", _submit)
        logger.debug(
            "Board review %s submitted by %s (%s)", request.review_id, actor, decision_type
        )
        self.audit.emit(
            "board",
            "submitted",
            actor=actor,
            subsystem="board",
            correlation_id=correlation_id,
            data={"review_id": request.review_id, "decision_type": decision_type},
        )
        return request

    def execute(self, review_id: str) -> BoardReviewResult:
        outcome: dict[str, BoardReviewResult] = {}

        def _execute(session: BoardSession) -> BoardSession:
            request = session.pending.get(review_id)
            if request is None:
                raise NotFound("review", review_id)
            reviews = tuple(self.review(director_id, request) for director_id in DIRECTORS)
            decision, escalate, reason = determine_decision(reviews)
            now = self.clock.now()
            result = BoardReviewResult(
                request=request,
                reviews=reviews,
                decision=decision,
                reasoning=combine_reasoning(reviews, decision),
                requires_human_escalation=escalate,
                escalation_reason=reason,
                decided_at=now,
            )
            outcome["result"] = result
            pending = {key: value for key, value in session.pending.items() if key != review_id}
            completed: tuple[BoardReviewResult, ...] = ()
            if self.history_limit > 0:
                completed = (*session.completed, result)[-self.history_limit :]
            return replace(
                session,
                pending=pending,
                completed=completed,
                started_at=session.started_at or now,
                last_activity_at=now,
            )

        self.store.transact("board", _execute)
        result = outcome["result"]
        if result.decision != "approved":
            logger.info(
                "Board %s review %s: %s", result.decision, review_id, result.escalation_reason
            )
        self.audit.emit(
            "board",
            "decided",
            actor=result.request.actor,
            subsystem="board",
            correlation_id=result.request.correlation_id,
            data={
                "review_id": review_id,
                "decision_type": result.request.decision_type,
                "decision": result.decision,
                "votes": {review.director_id: review.vote for review in result.reviews},
                "requires_human_escalation": result.requires_human_escalation,
            },
        )
        return result

    def review_now(
        self,
        decision_type: str,
        actor: str,
        description: str,
        scope: Sequence[str] | None = None,
        context: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> BoardReviewResult:
        request = self.submit(decision_type, actor, description, scope, context, correlation_id)
        return self.execute(request.review_id)

    def requires_board_review(
        self, decision_type: str, context: Mapping[str, Any] | None = None
    ) -> bool:
        return requires_board_review(decision_type, context)

    def pending(self) -> list[BoardReviewRequest]:
        session = self.store.load_board()
        return sorted(
            session.pending.values(), key=lambda request: (request.requested_at, request.review_id)
        )

    def recent(self, limit: int = 10) -> list[BoardReviewResult]:
        if limit <= 0:
            return []
        return list(self.store.load_board().completed[-limit:])

    def stats(self) -> dict[str, int]:
        session = self.store.load_board()
        decisions = Counter(result.decision for result in session.completed)
        return {
            "total_reviews": len(session.completed),
            "approved": decisions["approved"],
            "blocked": decisions["blocked"],
            "escalated": decisions["escalated"],
            "pending_count": len(session.pending),
        }
