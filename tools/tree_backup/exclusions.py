"""Exclusion patterns compiled into a single path predicate."""

import os
import re
from pathlib import Path
from typing import List, Optional, Pattern, Sequence, Union

from shared.logger import get_logger

from .errors import ExclusionPatternError

logger = get_logger(__name__)

# Excluded unless the user opts out with use_default_excludes=False
DEFAULT_EXCLUDE_PATTERNS = [
    "~/.cache",
    "*/.git",
    "*/.svn",
    "*/.hg",
    "*/__pycache__",
]

_SEPARATOR = r"[\\/]"
_TRAILING = "/\\*"
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


def normalize_pattern(pattern: str) -> str:
    """
    Normalize a raw pattern before compilation.

    Surrounding whitespace is dropped, "~" is expanded and trailing
    separators and wildcards are stripped repeatedly, so "dir", "dir/" and
    "dir/*" all name the directory itself together with its subtree.
    """
    if not isinstance(pattern, str):
        raise ExclusionPatternError(f"Exclusion pattern must be a string, got {type(pattern).__name__}")

    normalized = pattern.strip()
    if normalized.startswith("~"):
        normalized = os.path.expanduser(normalized)

    while normalized and normalized[-1] in _TRAILING:
        normalized = normalized[:-1]

    if not normalized:
        raise ExclusionPatternError(f"Exclusion pattern {pattern!r} would exclude everything")
    return normalized


def _is_absolute(pattern: str) -> bool:
    return pattern.startswith(("/", "\\")) or bool(_WINDOWS_DRIVE.match(pattern))


def translate_pattern(pattern: str) -> str:
    """
    Translate one normalized pattern into a regular expression.

    "*" matches any run of characters, separators included; both "/" and
    "\\" match either separator. Every other character is literal.
    """
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char in "/\\":
            parts.append(_SEPARATOR)
        else:
            parts.append(re.escape(char))
    body = "".join(parts)

    if pattern.startswith("*"):
        prefix = ""
    elif _is_absolute(pattern):
        prefix = "^"
    else:
        prefix = r"(?:^|(?<=[\\/]))"

    # a match must end on a path component boundary
    return f"{prefix}{body}(?={_SEPARATOR}|$)"


class ExclusionMatcher:
    """
    Predicate over absolute paths built from a set of exclusion patterns.

    Absolute patterns are matched against the whole path. Every other
    pattern only sees the part of the path from ``start`` on, so the
    directories above a source root never cause an exclusion.

    Attributes:
        patterns: Normalized patterns the matcher was compiled from
    """

    def __init__(
        self,
        patterns: Sequence[str],
        absolute: Optional[Pattern] = None,
        relative: Optional[Pattern] = None,
    ):
        self.patterns = list(patterns)
        self._absolute = absolute
        self._relative = relative

    def matches(self, path: Union[str, Path], start: int = 0) -> bool:
        """
        Return True if path (or one of its ancestors) is excluded.

        Args:
            path: Absolute path to test
            start: Offset where relative patterns begin to apply
        """
        text = os.fspath(path)
        if self._absolute is not None and self._absolute.search(text):
            return True
        if self._relative is not None and self._relative.search(text, start):
            return True
        return False

    def __bool__(self) -> bool:
        return self._absolute is not None or self._relative is not None

    def __repr__(self) -> str:
        return f"ExclusionMatcher({self.patterns!r})"


def match_offset(root: Union[str, Path]) -> int:
    """Offset of the part of paths under root that exclusions apply to."""
    anchor = os.fspath(Path(root).parent)
    return len(anchor.rstrip("/\\"))


def _compile(patterns: Sequence[str], flags: int) -> Optional[Pattern]:
    if not patterns:
        return None
    alternation = "|".join(f"(?:{translate_pattern(p)})" for p in patterns)
    try:
        return re.compile(alternation, flags)
    except re.error as e:
        raise ExclusionPatternError(f"Invalid exclusion patterns: {e}")


def compile_patterns(patterns: Sequence[str]) -> ExclusionMatcher:
    """
    Compile exclusion patterns into one matcher.

    Args:
        patterns: Raw patterns, e.g. "*/node_modules" or "/data/tmp"

    Returns:
        ExclusionMatcher evaluating at most two alternations

    Raises:
        ExclusionPatternError: If any pattern is invalid
    """
    normalized: List[str] = []
    for pattern in patterns:
        value = normalize_pattern(pattern)
        if value not in normalized:
            normalized.append(value)

    if not normalized:
        return ExclusionMatcher([])

    flags = re.IGNORECASE if os.name == "nt" else 0
    absolute = [p for p in normalized if _is_absolute(p)]
    relative = [p for p in normalized if not _is_absolute(p)]

    logger.debug(f"Compiled {len(normalized)} exclusion pattern(s)")
    return ExclusionMatcher(normalized, _compile(absolute, flags), _compile(relative, flags))


def build_matcher(extra_patterns: Sequence[str], use_defaults: bool = True) -> ExclusionMatcher:
    """Combine the default patterns with user supplied ones."""
    patterns = list(DEFAULT_EXCLUDE_PATTERNS) if use_defaults else []
    patterns.extend(extra_patterns)
    return compile_patterns(patterns)
