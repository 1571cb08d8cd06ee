from cielo.governance.audit import (
    AuditEvent,
    BestEffortAudit,
    JsonlAuditSink,
    MemoryAuditSink,
    NullAuditSink,
)
from cielo.governance.board import BoardReviewCoordinator, BoardReviewResult, determine_decision
from cielo.governance.policy import PolicyDecision, PolicyEngine, PolicyRequest, PolicyRule

__all__ = [
    "AuditEvent",
    "BestEffortAudit",
    "BoardReviewCoordinator",
    "BoardReviewResult",
    "JsonlAuditSink",
    "MemoryAuditSink",
    "NullAuditSink",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyRequest",
    "PolicyRule",
    "determine_decision",
]
