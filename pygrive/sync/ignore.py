"""Ignore rules loaded from .griveignore files.

Each non-empty line of a ``.griveignore`` file at the sync root is a glob
pattern matched against the slash-separated path relative to the root:

- ``*`` matches any run of characters except ``/``
- ``?`` matches one character except ``/``
- ``[abc]`` / ``[!abc]`` match one character from / not from a set
- ``**/a`` matches ``a`` at any depth
- ``a/**/b`` matches zero or more segments between ``a`` and ``b``
- ``b/**`` matches everything inside ``b`` but not ``b`` itself

Lines starting with ``#`` are comments. A line starting with ``!`` is an
include rule: a path matched by any include rule is never excluded, no
matter where the include appears in the file.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".griveignore"


class RuleSign(str, Enum):
    """Whether a rule excludes or re-includes matching paths."""

    EXCLUDE = "exclude"
    INCLUDE = "include"


def translate_pattern(pattern: str) -> str:
    """Translate a glob pattern into an anchored regular expression.

    Args:
        pattern: Glob pattern relative to the sync root

    Returns:
        Regular expression source (to be used with ``re.fullmatch``)

    Examples:
        >>> translate_pattern("*.log")
        '[^/]*\\\\.log'
        >>> bool(re.fullmatch(translate_pattern("a/**/b"), "a/b"))
        True
    """
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                at_segment_start = i == 0 or pattern[i - 1] == "/"
                if at_segment_start and pattern.startswith("**/", i):
                    # Leading "**/": zero or more whole segments
                    out.append("(?:.*/)?")
                    i += 3
                    continue
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "/" and pattern.startswith("/**/", i):
            out.append("/(?:.*/)?")
            i += 4
            continue
        elif c == "/" and pattern[i:] == "/**":
            # Everything strictly inside the folder
            out.append("/.+")
            i += 3
            continue
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@dataclass
class IgnoreRule:
    """A single compiled ignore rule."""

    pattern: str
    """Glob pattern as written in the rule file"""

    sign: RuleSign = RuleSign.EXCLUDE

    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._regex = re.compile(translate_pattern(self.pattern))

    @property
    def is_include(self) -> bool:
        return self.sign == RuleSign.INCLUDE

    def matches(self, path: str) -> bool:
        """Check whether the rule's pattern matches a relative path."""
        return self._regex.fullmatch(path) is not None

    @classmethod
    def parse(cls, line: str) -> Optional["IgnoreRule"]:
        """Parse one rule-file line.

        Args:
            line: Raw line from a .griveignore file

        Returns:
            IgnoreRule, or None for blank lines and comments
        """
        text = line.strip()
        if not text or text.startswith("#"):
            return None

        sign = RuleSign.EXCLUDE
        if text.startswith("!"):
            sign = RuleSign.INCLUDE
            text = text[1:].strip()

        # All patterns are root-relative already
        text = text.strip("/")
        if not text:
            return None
        return cls(pattern=text, sign=sign)


class IgnoreMatcher:
    """Decides whether relative paths are excluded from sync.

    A path is excluded iff at least one exclude rule matches it and no
    include rule matches it.

    Examples:
        >>> matcher = IgnoreMatcher.from_lines(["*.log", "!keep.log"])
        >>> matcher.matches("other.log")
        True
        >>> matcher.matches("keep.log")
        False
    """

    def __init__(self, rules: Optional[Iterable[IgnoreRule]] = None):
        self.rules: list[IgnoreRule] = list(rules or [])
        self._excludes = [r for r in self.rules if not r.is_include]
        self._includes = [r for r in self.rules if r.is_include]

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "IgnoreMatcher":
        """Build a matcher from rule-file lines."""
        rules = []
        for line in lines:
            rule = IgnoreRule.parse(line)
            if rule is not None:
                rules.append(rule)
        return cls(rules)

    def __len__(self) -> int:
        return len(self.rules)

    def matches(self, path: str) -> bool:
        """Check whether a path is excluded.

        Args:
            path: Slash-separated path relative to the sync root

        Returns:
            True if the path must not be synced
        """
        if not any(rule.matches(path) for rule in self._excludes):
            return False
        return not any(rule.matches(path) for rule in self._includes)

    def is_excluded(self, path: str) -> bool:
        """Check a path and all of its parent folders.

        Excluded folders are pruned, so anything below one is excluded too.
        """
        if not self._excludes:
            return False
        parts = path.split("/")
        return any(
            self.matches("/".join(parts[:depth])) for depth in range(1, len(parts) + 1)
        )


def load_ignore_file(
    root: Path, extra_lines: Optional[Iterable[str]] = None
) -> IgnoreMatcher:
    """Load ignore rules from ``<root>/.griveignore``.

    Args:
        root: Sync root directory
        extra_lines: Additional rule lines appended after the file's rules

    Returns:
        IgnoreMatcher (empty if the file does not exist)
    """
    lines: list[str] = []
    ignore_file = root / IGNORE_FILE_NAME
    if ignore_file.is_file():
        try:
            lines.extend(ignore_file.read_text(encoding="utf-8").splitlines())
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read {ignore_file}: {e}")
    if extra_lines:
        lines.extend(extra_lines)

    matcher = IgnoreMatcher.from_lines(lines)
    logger.debug(f"Loaded {len(matcher)} ignore rule(s) from {ignore_file}")
    return matcher
