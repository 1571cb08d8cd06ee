"""Glob grammar shared by lease overlap checks and policy matching.

Grammar:

- literal characters match themselves;
- ``*`` matches any run of characters except ``/``;
- ``**`` matches any run of characters including ``/``;
- a ``**/`` segment also matches zero directories, so ``src/**/a.ts``
  matches ``src/a.ts``;
- a pattern that is exactly ``*`` or ``**`` matches every value.

Backslashes are normalized to forward slashes on both sides.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from functools import lru_cache

MATCH_ALL_PATTERNS = frozenset({"*", "**"})


def normalize_path(value: str) -> str:
    return value.replace("\\", "/")


@lru_cache(maxsize=2048)
def compile_glob(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
        elif pattern.startswith("**", index):
            parts.append(".*")
            index += 2
        elif pattern[index] == "*":
            parts.append("[^/]*")
            index += 1
        else:
            parts.append(re.escape(pattern[index]))
            index += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def glob_match(pattern: str, value: str) -> bool:
    pattern = normalize_path(pattern)
    value = normalize_path(value)
    if pattern in MATCH_ALL_PATTERNS:
        return True
    if "*" not in pattern:
        return pattern == value
    return compile_glob(pattern).match(value) is not None


def literal_prefix(pattern: str) -> str:
    """Text before the first wildcard."""
    pattern = normalize_path(pattern)
    star = pattern.find("*")
    return pattern if star < 0 else pattern[:star]


def matches_any(patterns: Sequence[str] | None, value: str) -> bool:
    """True when ``patterns`` is empty or any of them matches ``value``."""
    if not patterns:
        return True
    return any(glob_match(pattern, value) for pattern in patterns)


def matches_any_of(patterns: Sequence[str] | None, values: Sequence[str] | None) -> bool:
    """True when ``patterns`` is empty or some pattern matches some value."""
    if not patterns:
        return True
    if not values:
        return False
    return any(glob_match(pattern, value) for value in values for pattern in patterns)


def patterns_overlap(pattern_a: str, pattern_b: str) -> bool:
    if glob_match(pattern_a, pattern_b) or glob_match(pattern_b, pattern_a):
        return True
    # catches "src/**" vs "src/foo/**" where neither glob matches the other's text
    base_a = literal_prefix(pattern_a)
    base_b = literal_prefix(pattern_b)
    return base_a.startswith(base_b) or base_b.startswith(base_a)


def scopes_overlap(scope_a: Iterable[str], scope_b: Iterable[str]) -> bool:
    patterns_b = list(scope_b)
    for pattern_a in scope_a:
        for pattern_b in patterns_b:
            if patterns_overlap(pattern_a, pattern_b):
                return True
    return False


def file_matches_scope(path: str, scope: Iterable[str]) -> bool:
    return any(glob_match(pattern, path) for pattern in scope)
