"""
Glob matching for permission patterns.

Only ``*`` is special: it matches any run of characters, including none,
and may appear anywhere in a pattern. Every other character matches itself
exactly and case-sensitively. ``?`` and ``[...]`` are literals, which is why
fnmatch is not used here.
"""

import re
from functools import lru_cache


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(part) for part in pattern.split("*")]
    return re.compile(".*".join(parts), re.DOTALL)


def glob_match(pattern: str, value: str) -> bool:
    """Check whether value matches the glob pattern as a whole."""
    if "*" not in pattern:
        return pattern == value
    return _compile(pattern).fullmatch(value) is not None


def method_match(pattern: str, method: str) -> bool:
    """HTTP method match: case-insensitive, ``*`` allowed."""
    return glob_match(pattern.upper(), method.upper())


__all__ = ["glob_match", "method_match"]
