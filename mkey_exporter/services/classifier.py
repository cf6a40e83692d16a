"""Key classification: cache key -> ordered label set.

THE ALGORITHM
-------------
Rules are tried in the order they were declared.  The first rule that
matches for a given label name wins; later rules with the same name are
only consulted when every earlier one missed.  That makes rule lists read
like a chain of fallbacks:

  {"pattern": "u-c:\\w+:",       "label_name": "type", "label_value": "cart"}
  {"pattern": "u-p:\\w+:",       "label_name": "type", "label_value": "profile"}
  {"pattern": "([\\w-]+):\\w+:", "label_name": "type", "label_value": "unknown"}

  "u-p:123:x" -> (("type", "profile"),)
  "u-v:789:x" -> (("type", "unknown"),)

A key that matches nothing gets the empty label set ().  It is not an
error: all unmatched keys are counted together in that bucket.
"""

from __future__ import annotations

import re

from mkey_exporter.models.rules import GroupReference, LabelSet, Rule, RuleGroup


def _expand(rule: Rule, match: re.Match[str]) -> str:
    parts = rule.template
    if not parts:
        return ""
    if len(parts) == 1 and isinstance(parts[0], str):
        return parts[0]

    out: list[str] = []
    for part in parts:
        if isinstance(part, GroupReference):
            # Groups that did not take part in the match expand to "".
            out.append(match.group(part.group) or "")
        else:
            out.append(part)
    return "".join(out)


class LabelClassifier:
    """Applies one RuleGroup to keys.  Safe to reuse for every key of a cycle."""

    def __init__(self, group: RuleGroup) -> None:
        self._group = group
        self._names: set[str] = set()

    @property
    def group(self) -> RuleGroup:
        return self._group

    def extract(self, key: str) -> LabelSet:
        names = self._names
        names.clear()
        labels: list[tuple[str, str]] = []

        for rule in self._group.rules:
            if rule.label_name in names:
                continue

            match = rule.pattern.search(key)
            if match is None:
                continue

            names.add(rule.label_name)
            labels.append((rule.label_name, _expand(rule, match)))

        return tuple(labels)


def extract(key: str, group: RuleGroup) -> LabelSet:
    """Classify a single key with a group.  Convenience for one-off calls."""
    return LabelClassifier(group).extract(key)
