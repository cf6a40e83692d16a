"""Rule configuration loading.

Rules arrive as JSON (or the built-in default below) and leave this module
as immutable RuleGroup objects.  Everything that can be wrong with a rule
is detected here, once, at startup:

  - the pattern does not compile
  - the label value template references a capture group the pattern
    does not define
  - the label name is not a valid Prometheus label name, or is reserved

That leaves the classification path total: once a RuleGroup exists,
classifying a key can not fail.

FILE FORMAT
-----------
  {"groups": [
     {"name": "default",
      "rules": [
        {"pattern": "^([\\\\w]+):", "label_name": "type", "label_value": "$1"}
      ]}
  ]}

A bare JSON list of groups is accepted too.

TEMPLATE SYNTAX
---------------
  $1, ${1}        positional capture group (0 is the whole match)
  $name, ${name}  named capture group
  $$              a literal "$"

A "$" not followed by a valid reference is kept as a literal "$".
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from mkey_exporter.models.rules import GroupReference, Rule, RuleGroup, TemplatePart

logger = logging.getLogger(__name__)

# Added to every exported series to tell groups apart, so rules may not
# produce a label with this name.
GROUP_LABEL = "rule_group"

_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_REF_NAME_RE = re.compile(r"[_0-9a-zA-Z]+")

DEFAULT_RULES: dict[str, Any] = {
    "groups": [
        {
            "name": "default",
            "rules": [
                {"pattern": r"^.+:([\w]+):", "label_name": "user", "label_value": "$1"},
                {"pattern": r"^([\w]+):", "label_name": "type", "label_value": "$1"},
            ],
        }
    ]
}


class RuleConfigError(ValueError):
    """Rule configuration is unusable.  Fatal at startup."""


class RuleIn(BaseModel):
    pattern: str
    label_name: str
    label_value: str


class RuleGroupIn(BaseModel):
    name: str
    rules: list[RuleIn]


class RulesFileIn(BaseModel):
    groups: list[RuleGroupIn]


def parse_template(template: str) -> tuple[TemplatePart, ...]:
    """Split a label value template into literal and group reference parts.

    Adjacent literals are merged so expansion does as few joins as possible.
    """
    parts: list[TemplatePart] = []
    literal: list[str] = []
    i = 0
    n = len(template)

    while i < n:
        ch = template[i]
        if ch != "$":
            literal.append(ch)
            i += 1
            continue

        nxt = template[i + 1] if i + 1 < n else ""
        if nxt == "$":
            literal.append("$")
            i += 2
            continue

        name: str | None = None
        if nxt == "{":
            close = template.find("}", i + 2)
            if close != -1 and _REF_NAME_RE.fullmatch(template, i + 2, close):
                name = template[i + 2 : close]
                end = close + 1
        else:
            m = _REF_NAME_RE.match(template, i + 1)
            if m is not None:
                name = m.group(0)
                end = m.end()

        if name is None:
            literal.append("$")
            i += 1
            continue

        if literal:
            parts.append("".join(literal))
            literal.clear()
        parts.append(GroupReference(int(name) if name.isdigit() else name))
        i = end

    if literal:
        parts.append("".join(literal))
    return tuple(parts)


def compile_rule(raw: RuleIn, *, group: str, index: int) -> Rule:
    where = f"group {group!r} rule #{index}"

    if not _LABEL_NAME_RE.match(raw.label_name):
        raise RuleConfigError(
            f"{where}: label_name {raw.label_name!r} is not a valid label name"
        )
    if raw.label_name.startswith("__") or raw.label_name == GROUP_LABEL:
        raise RuleConfigError(f"{where}: label_name {raw.label_name!r} is reserved")

    try:
        pattern = re.compile(raw.pattern)
    except re.error as exc:
        raise RuleConfigError(
            f"{where}: invalid pattern {raw.pattern!r}: {exc}"
        ) from None

    template = parse_template(raw.label_value)
    for part in template:
        if not isinstance(part, GroupReference):
            continue
        ref = part.group
        if isinstance(ref, int):
            if ref > pattern.groups:
                raise RuleConfigError(
                    f"{where}: label_value {raw.label_value!r} references group "
                    f"${ref} but pattern {raw.pattern!r} has {pattern.groups} group(s)"
                )
        elif ref not in pattern.groupindex:
            raise RuleConfigError(
                f"{where}: label_value {raw.label_value!r} references unknown "
                f"named group {ref!r}"
            )

    return Rule(
        pattern=pattern,
        label_name=raw.label_name,
        label_value=raw.label_value,
        template=template,
    )


def build_groups(data: Any) -> tuple[RuleGroup, ...]:
    """Validate raw (decoded JSON) rule configuration into RuleGroups."""
    if isinstance(data, list):
        data = {"groups": data}

    try:
        parsed = RulesFileIn.model_validate(data)
    except ValidationError as exc:
        raise RuleConfigError(f"invalid rule configuration: {exc}") from None

    if not parsed.groups:
        raise RuleConfigError("rule configuration must define at least one group")

    groups: list[RuleGroup] = []
    seen: set[str] = set()
    for g in parsed.groups:
        if not g.name:
            raise RuleConfigError("rule group name must not be empty")
        if g.name in seen:
            raise RuleConfigError(f"duplicate rule group name {g.name!r}")
        seen.add(g.name)

        rules = tuple(
            compile_rule(r, group=g.name, index=i) for i, r in enumerate(g.rules)
        )
        groups.append(RuleGroup(name=g.name, rules=rules))

    return tuple(groups)


def load_rules(path: str | None) -> tuple[RuleGroup, ...]:
    """Load rule groups from a JSON file, or the built-in rules when path is None."""
    if path is None:
        groups = build_groups(DEFAULT_RULES)
        logger.info("Using built-in rules  groups=%d", len(groups))
        return groups

    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RuleConfigError(f"cannot read rules file {path!r}: {exc}") from None

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuleConfigError(f"rules file {path!r} is not valid JSON: {exc}") from None

    groups = build_groups(data)
    logger.info(
        "Loaded rules from %s  groups=%d rules=%d",
        path,
        len(groups),
        sum(len(g.rules) for g in groups),
    )
    return groups
