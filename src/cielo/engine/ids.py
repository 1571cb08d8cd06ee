from __future__ import annotations

import re
import time
from collections.abc import Iterable
from typing import Protocol
from uuid import uuid4


class IdGenerator(Protocol):
    def lease_id(self) -> str: ...

    def task_id(self, existing: Iterable[str]) -> str: ...

    def queue_id(self, existing: Iterable[str]) -> str: ...

    def review_id(self) -> str: ...

    def receipt_id(self) -> str: ...


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def next_sequential_id(prefix: str, existing: Iterable[str], width: int = 4) -> str:
    """Return ``<prefix>-NNNN`` one past the highest numbered id in ``existing``."""
    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    highest = 0
    for identifier in existing:
        match = pattern.match(identifier)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}-{highest + 1:0{width}d}"


class DefaultIdGenerator:
    """Random lease/review ids, sequential task and queue ids."""

    def lease_id(self) -> str:
        return f"wg_{uuid4().hex[:8]}"

    def task_id(self, existing: Iterable[str]) -> str:
        return next_sequential_id("T", existing)

    def queue_id(self, existing: Iterable[str]) -> str:
        return next_sequential_id("Q", existing)

    def review_id(self) -> str:
        return f"BR-{_base36(int(time.time() * 1000))}-{uuid4().hex[:4]}"

    def receipt_id(self) -> str:
        return f"rcpt_{_base36(int(time.time() * 1000))}_{uuid4().hex[:6]}"


class CountingIdGenerator(DefaultIdGenerator):
    """Fully deterministic ids, handy for reproducible runs and tests."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    def _next(self, kind: str) -> int:
        self._counters[kind] = self._counters.get(kind, 0) + 1
        return self._counters[kind]

    def lease_id(self) -> str:
        return f"wg_{self._next('lease'):08x}"

    def review_id(self) -> str:
        return f"BR-{self._next('review'):04d}"

    def receipt_id(self) -> str:
        return f"rcpt_{self._next('receipt'):06d}"
