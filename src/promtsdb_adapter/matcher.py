from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Sequence


class MatchType(str, Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX_MATCH = "=~"
    REGEX_NO_MATCH = "!~"

    @property
    def is_regex(self) -> bool:
        return self in (MatchType.REGEX_MATCH, MatchType.REGEX_NO_MATCH)


@dataclass(frozen=True)
class LabelMatcher:
    """Predicate on one label value. Build with new_label_matcher()."""

    name: str
    type: MatchType
    value: str
    _re: Optional[re.Pattern[str]] = field(default=None, repr=False, compare=False)

    def matches(self, v: str) -> bool:
        if self.type is MatchType.EQUAL:
            return self.value == v
        if self.type is MatchType.NOT_EQUAL:
            return self.value != v

        pattern = self._re if self._re is not None else _anchored(self.value)
        found = pattern.fullmatch(v) is not None
        return found if self.type is MatchType.REGEX_MATCH else not found

    def __str__(self) -> str:
        return f'{self.name}{self.type.value}"{self.value}"'


def _anchored(value: str) -> re.Pattern[str]:
    # Prometheus regex matchers always match the whole label value.
    return re.compile("^(?:" + value + ")$")


def new_label_matcher(match_type: MatchType, name: str, value: str) -> LabelMatcher:
    """Create a matcher, compiling regex values up front.

    Raises ValueError when a regex value does not compile.
    """

    match_type = MatchType(match_type)
    compiled: Optional[re.Pattern[str]] = None
    if match_type.is_regex:
        try:
            compiled = _anchored(value)
        except re.error as exc:
            raise ValueError(f"invalid regex for matcher on {name!r}: {exc}") from exc
    return LabelMatcher(name=name, type=match_type, value=value, _re=compiled)


# Longest operators first so "!=" is not read as "=".
_OPERATORS = ("=~", "!~", "!=", "=")
_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def parse_matcher(expr: str) -> LabelMatcher:
    """Parse `name<op>value` where op is one of =, !=, =~, !~.

    The value may be wrapped in double quotes.
    """

    best: Optional[tuple[int, str]] = None
    for op in _OPERATORS:
        idx = expr.find(op)
        if idx <= 0:
            continue
        if best is None or idx < best[0] or (idx == best[0] and len(op) > len(best[1])):
            best = (idx, op)

    if best is None:
        raise ValueError(f"invalid matcher expression: {expr!r}")

    idx, op = best
    name = expr[:idx].strip()
    value = expr[idx + len(op):].strip()
    if not _NAME_RE.match(name):
        raise ValueError(f"invalid label name in matcher: {name!r}")
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]

    return new_label_matcher(MatchType(op), name, value)


class SeriesMatcher:
    """All-of conjunction of label matchers evaluated against a tag map."""

    def __init__(self, matchers: Sequence[LabelMatcher]) -> None:
        self.matchers: List[LabelMatcher] = list(matchers)

    def matches(self, tags: Optional[Mapping[str, str]]) -> bool:
        tags = tags or {}
        return all(m.matches(tags.get(m.name, "")) for m in self.matchers)
