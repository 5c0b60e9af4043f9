"""Kubernetes label selector parsing and matching.

Supports the same grammar as ``kubectl -l``::

    app=web,tier!=cache          equality / inequality
    env in (prod,staging)        set membership
    env notin (dev)
    release                      key exists
    !canary                      key does not exist
    replicas>2                   integer comparison

Requirements are comma separated and ANDed.  An empty selector matches
every label set.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

_KEY = r"[A-Za-z0-9](?:[-A-Za-z0-9_./]*[A-Za-z0-9])?"
_VALUE = r"(?:[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?)?"

_RE_NOT_EXISTS = re.compile(rf"^!\s*({_KEY})$")
_RE_EXISTS = re.compile(rf"^({_KEY})$")
_RE_EQUALITY = re.compile(rf"^({_KEY})\s*(==|=|!=)\s*({_VALUE})$")
_RE_SET = re.compile(rf"^({_KEY})\s+(in|notin)\s*\((.*)\)$")
_RE_COMPARE = re.compile(rf"^({_KEY})\s*(>|<)\s*(-?[0-9]+)$")
_RE_SET_VALUE = re.compile(rf"^{_VALUE}$")


class SelectorError(ValueError):
    """Raised when a label selector cannot be parsed."""


class Operator(StrEnum):
    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"
    GREATER_THAN = ">"
    LESS_THAN = "<"


@dataclass(frozen=True)
class Requirement:
    """A single ``key <op> values`` clause."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        value = labels.get(self.key)
        match self.operator:
            case Operator.EQUALS:
                return present and value == self.values[0]
            case Operator.NOT_EQUALS:
                return not present or value != self.values[0]
            case Operator.IN:
                return present and value in self.values
            case Operator.NOT_IN:
                return not present or value not in self.values
            case Operator.EXISTS:
                return present
            case Operator.DOES_NOT_EXIST:
                return not present
            case Operator.GREATER_THAN | Operator.LESS_THAN:
                if not present:
                    return False
                try:
                    actual = int(value)  # type: ignore[arg-type]
                except ValueError:
                    return False
                bound = int(self.values[0])
                return actual > bound if self.operator is Operator.GREATER_THAN else actual < bound
        return False

    def __str__(self) -> str:
        match self.operator:
            case Operator.EXISTS:
                return self.key
            case Operator.DOES_NOT_EXIST:
                return f"!{self.key}"
            case Operator.IN | Operator.NOT_IN:
                return f"{self.key} {self.operator.value} ({','.join(self.values)})"
            case _:
                return f"{self.key}{self.operator.value}{self.values[0]}"


@dataclass(frozen=True)
class LabelSelector:
    """An AND of requirements."""

    requirements: tuple[Requirement, ...] = ()

    @classmethod
    def parse(cls, text: str | None) -> LabelSelector:
        """Parse *text*; ``None`` or blank yields the match-everything selector."""
        if text is None or not text.strip():
            return cls()
        requirements = [_parse_requirement(clause) for clause in _split_clauses(text)]
        requirements.sort(key=lambda r: (r.key, r.operator.value))
        return cls(requirements=tuple(requirements))

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(req.matches(labels) for req in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(req) for req in self.requirements)


def _split_clauses(text: str) -> list[str]:
    clauses: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced ')' in selector {text!r}")
        if ch == "," and depth == 0:
            clauses.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if depth != 0:
        raise SelectorError(f"unbalanced '(' in selector {text!r}")
    clauses.append("".join(current).strip())
    for clause in clauses:
        if not clause:
            raise SelectorError(f"empty requirement in selector {text!r}")
    return clauses


def _parse_requirement(clause: str) -> Requirement:
    if m := _RE_SET.match(clause):
        key, op, raw_values = m.groups()
        values = [v.strip() for v in raw_values.split(",")]
        if not values or any(not _RE_SET_VALUE.match(v) for v in values) or values == [""]:
            raise SelectorError(f"invalid value list in requirement {clause!r}")
        operator = Operator.IN if op == "in" else Operator.NOT_IN
        return Requirement(key=key, operator=operator, values=tuple(sorted(set(values))))
    if m := _RE_NOT_EXISTS.match(clause):
        return Requirement(key=m.group(1), operator=Operator.DOES_NOT_EXIST)
    if m := _RE_EQUALITY.match(clause):
        key, op, value = m.groups()
        operator = Operator.NOT_EQUALS if op == "!=" else Operator.EQUALS
        return Requirement(key=key, operator=operator, values=(value,))
    if m := _RE_COMPARE.match(clause):
        key, op, value = m.groups()
        operator = Operator.GREATER_THAN if op == ">" else Operator.LESS_THAN
        return Requirement(key=key, operator=operator, values=(value,))
    if m := _RE_EXISTS.match(clause):
        return Requirement(key=m.group(1), operator=Operator.EXISTS)
    raise SelectorError(f"invalid requirement {clause!r}")
