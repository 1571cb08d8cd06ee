from __future__ import annotations

from collections.abc import Iterable


class CoordinationError(RuntimeError):
    """Base class for recoverable coordination failures surfaced to callers."""


class ScopeConflict(CoordinationError):
    """Raised when a lease claim overlaps another actor's active lease."""

    def __init__(self, lease_id: str, actor: str, scope: Iterable[str]) -> None:
        self.lease_id = lease_id
        self.actor = actor
        self.scope = tuple(scope)
        super().__init__(
            f"Scope overlap with lease {lease_id} "
            f"(actor: {actor}, scope: {', '.join(self.scope)})"
        )


class NotFound(CoordinationError):
    """Raised when an operation names an unknown id."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} {identifier} not found")


class InvalidTransition(CoordinationError):
    """Raised when a state machine guard rejects a transition."""

    def __init__(
        self,
        kind: str,
        identifier: str,
        current: str,
        expected: Iterable[str],
        *,
        detail: str | None = None,
    ) -> None:
        self.kind = kind
        self.identifier = identifier
        self.current = current
        self.expected = tuple(expected)
        message = detail or (
            f"{kind.capitalize()} {identifier} is '{current}', expected "
            + " or ".join(f"'{state}'" for state in self.expected)
        )
        super().__init__(message)


class InvalidState(InvalidTransition):
    """Raised when a queue item cannot be picked up for review."""


class AuditSinkFailure(CoordinationError):
    """Raised by audit sinks; never escapes the best-effort audit wrapper."""
