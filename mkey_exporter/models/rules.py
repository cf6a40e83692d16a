"""Domain types shared by the classifier, aggregator and reconciler.

A LabelSet is deliberately a plain tuple of (name, value) pairs rather than
a dict: equality and hashing follow the order in which rules produced the
labels, and tuples give us that for free.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

LabelPair = tuple[str, str]
LabelSet = tuple[LabelPair, ...]

# A parsed label value template is a sequence of literal strings and
# capture group references (positional int or named str).
GroupRef = Union[int, str]


@dataclass(frozen=True, slots=True)
class GroupReference:
    """Reference to a capture group inside a label value template."""

    group: GroupRef


TemplatePart = Union[str, GroupReference]


@dataclass(frozen=True, slots=True)
class Rule:
    """One classification rule.

    pattern:      compiled regex, searched anywhere in the key.
    label_name:   name of the label this rule produces.
    label_value:  the original template text (e.g. "u$1"), kept for logs.
    template:     label_value parsed into literal and group parts.
    """

    pattern: re.Pattern[str]
    label_name: str
    label_value: str
    template: tuple[TemplatePart, ...]


@dataclass(frozen=True, slots=True)
class RuleGroup:
    name: str
    rules: tuple[Rule, ...]


@dataclass(frozen=True, slots=True)
class CacheKeyRecord:
    """Metadata for a single cache key, as reported by the cache server."""

    key: str
    size: int
    expires: int = -1


@dataclass(slots=True)
class Aggregate:
    count: int = 0
    total_size: int = 0
