"""
Rule trees and pinned nodes.

A rule is either a leaf ``[op, field, value]`` or a combinator
``[kind, cond, ...]``. Pinned nodes are encoded by the classifier as
``["=", "name", certname]`` leaves directly under a top-level ``"or"``; this
module is the only place that reads or writes that encoding.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

COMBINATORS = ("and", "or", "not")


class RuleError(ValueError):
    """Raised when a raw rule cannot be parsed."""


@dataclass(frozen=True)
class Leaf:
    op: str
    field: Any
    value: Any

    def to_raw(self) -> List[Any]:
        return [self.op, self.field, self.value]

    @property
    def pinned_node(self) -> Optional[str]:
        if self.op == "=" and self.field == "name":
            return self.value
        return None


@dataclass(frozen=True)
class Combinator:
    kind: str
    children: Tuple["Condition", ...]

    def to_raw(self) -> List[Any]:
        return [self.kind, *(c.to_raw() for c in self.children)]


Condition = Union[Leaf, Combinator]


def parse(raw: Sequence[Any]) -> Condition:
    """Parse a raw rule list into a :data:`Condition`.

    Raises:
        RuleError: When *raw* is neither a combinator nor a 3-element leaf.
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        raise RuleError(f"rule must be a non-empty list, got {raw!r}")
    head = raw[0]
    if head in COMBINATORS:
        return Combinator(head, tuple(parse(c) for c in raw[1:]))
    if len(raw) == 3 and isinstance(head, str):
        return Leaf(head, raw[1], raw[2])
    raise RuleError(f"malformed rule condition: {raw!r}")


def pin_leaf(certname: str) -> Leaf:
    return Leaf("=", "name", certname)


def extract_pinned(rule: Optional[Sequence[Any]]) -> List[str]:
    """Return the certnames pinned by *rule*, in rule order.

    Only the top-level children following the literal ``"or"`` token are
    inspected; other leaves are ignored.
    """
    pinned: List[str] = []
    inside_or = False
    for condition in rule or []:
        if inside_or:
            if isinstance(condition, (list, tuple)) and len(condition) == 3:
                operator, field_name, value = condition
                if operator == "=" and field_name == "name" and value not in pinned:
                    pinned.append(value)
        elif condition == "or":
            inside_or = True
    return pinned


def merge_rule_with_pinned(rule: Optional[Sequence[Any]], pinned: Iterable[str]) -> Optional[List[Any]]:
    """Return *rule* extended with one ``["=", "name", n]`` leaf per pinned node.

    The result is ``["or", rule, pin...]``. A rule that is itself a bare
    name leaf is wrapped in ``["and", ...]`` so it is not read back as a pin.
    Without pinned nodes the rule is returned unchanged.
    """
    names: List[str] = []
    for n in pinned:
        if n not in names:
            names.append(n)
    if not names:
        return None if rule is None else list(rule)

    children: List[Condition] = []
    if rule is not None:
        base = parse(rule)
        if isinstance(base, Leaf) and base.pinned_node is not None:
            base = Combinator("and", (base,))
        children.append(base)
    children.extend(pin_leaf(n) for n in names)
    return Combinator("or", tuple(children)).to_raw()
