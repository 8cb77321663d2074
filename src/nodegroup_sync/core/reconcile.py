"""
Reconciliation engine: per-attribute "in sync?" predicates and payload planning.

Each predicate takes the desired value, the observed value and the
``create_only`` flag. `plan_update` runs them all for one group and returns a
:class:`GroupPlan` holding the delta to send, if any; `plan_create` builds the
payload for a group that does not exist yet. Nothing here performs HTTP.

``create_only`` turns every predicate into "in sync", parent, pinned and
unpinned included: an existing group is never touched again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .directory import GroupDirectory, NotFound
from .model import (
    MANAGED_ATTRS,
    REMOVE,
    ROOT_GROUP_ID,
    UNCHANGED,
    Attr,
    DesiredGroup,
    Group,
    Value,
    is_group_id,
    is_removal,
)
from .rules import extract_pinned, merge_rule_with_pinned

SCALAR_ATTRS: Tuple[str, ...] = ("description", "environment", "environment_trumps", "variables")


@dataclass
class GroupPlan:
    """Outcome of comparing one desired group with its observed state."""
    name: str
    group_id: Optional[str] = None
    out_of_sync: Tuple[str, ...] = ()
    delta: Dict[str, Any] = field(default_factory=dict)
    pin: Tuple[str, ...] = ()
    unpin: Tuple[str, ...] = ()

    @property
    def in_sync(self) -> bool:
        return not self.out_of_sync

    @property
    def needs_update(self) -> bool:
        return bool(self.delta)


# ---------------- predicates ----------------

def _same_name(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def parent_in_sync(
    desired: Optional[str],
    observed_name: Optional[str],
    directory: GroupDirectory,
    create_only: bool = False,
) -> bool:
    """Compare parents by name (case-insensitive); an id-shaped desired parent is resolved first.

    Raises:
        NotFound: When the desired parent id is not in the directory.
    """
    if create_only or desired is None or _same_name(observed_name, desired):
        return True
    if is_group_id(desired):
        return _same_name(observed_name, directory.resolve_parent_name(desired))
    return False


def scalar_in_sync(desired: Attr, observed: Any, create_only: bool = False) -> bool:
    if create_only or desired is UNCHANGED:
        return True
    if desired is REMOVE:
        return observed is None or observed == {}
    return desired.value == observed


def rule_pins(desired: DesiredGroup, observed_pinned: Optional[Sequence[str]]) -> List[str]:
    """Certnames to merge into the desired rule before comparing it.

    Desired pins come first. Nodes pinned on the service by other means are
    kept (in observed order) unless they are meant to be unpinned or the
    desired rule already names them.
    """
    pins = list(desired.pinned)
    base = desired.value_of("rule")
    own = set(extract_pinned(base)) if base is not None else set()
    for name in observed_pinned or ():
        if name not in pins and name not in desired.unpinned and name not in own:
            pins.append(name)
    return pins


def desired_rule(desired: Attr, pins: Sequence[str]) -> Optional[List[Any]]:
    """The rule to send: the desired rule merged with *pins*."""
    base = desired.value if isinstance(desired, Value) else None
    return merge_rule_with_pinned(base, pins)


def rule_in_sync(
    desired: Attr,
    observed: Optional[Sequence[Any]],
    pins: Sequence[str] = (),
    create_only: bool = False,
) -> bool:
    if create_only or desired is UNCHANGED:
        return True
    target = desired_rule(desired, pins)
    if target is None:
        return observed is None
    return observed is not None and target == list(observed)


def pinned_in_sync(
    desired: Sequence[str],
    observed: Optional[Sequence[str]],
    create_only: bool = False,
) -> bool:
    """Every desired certname must already be pinned; extra pins are fine."""
    if create_only:
        return True
    if observed is None:
        return not desired
    return set(desired) <= set(observed)


def unpinned_in_sync(
    desired: Sequence[str],
    observed_pinned: Optional[Sequence[str]],
    create_only: bool = False,
) -> bool:
    """The service has no "unpinned" field: check against the current pins."""
    if create_only or not desired or observed_pinned is None:
        return True
    return not (set(desired) & set(observed_pinned))


def deep_check(observed: Mapping[str, Any], desired: Mapping[str, Any]) -> bool:
    """Recursive comparison of class parameter payloads.

    A removal marker (``None``/``REMOVE``) means the key must be absent.
    Keys only present in *observed* are ignored.
    """
    for key, val in desired.items():
        if is_removal(val):
            if key in observed:
                return False
            continue
        if isinstance(val, Mapping) and isinstance(observed.get(key), Mapping):
            if not deep_check(observed[key], val):
                return False
        elif key not in observed or val != observed[key]:
            return False
    return True


def classes_in_sync(desired: Attr, observed: Optional[Mapping[str, Any]], create_only: bool = False) -> bool:
    if create_only or desired is UNCHANGED:
        return True
    observed = observed or {}
    if desired is REMOVE:
        return not observed
    should = desired.value
    # fast path: a class that should exist is missing altogether
    should_keys = {k for k, v in should.items() if not is_removal(v)}
    if should_keys - set(observed):
        return False
    return deep_check(observed, should)


# ---------------- planning ----------------

def observed_parent_name(group: Group, directory: GroupDirectory) -> Optional[str]:
    if group.parent is None:
        return None
    parent = directory.get(group.parent)
    return parent.name if parent is not None else group.parent


def resolve_parent_ref(ref: Optional[str], directory: GroupDirectory, *, strict: bool) -> Optional[str]:
    """Turn a parent name into an id; ids pass through.

    With ``strict`` an unknown name raises :class:`NotFound`, otherwise the
    name is returned as given.
    """
    if ref is None or is_group_id(ref):
        return ref
    parent_id = directory.resolve_parent_id(ref)
    if parent_id is not None:
        return parent_id
    if strict:
        raise NotFound(f"Parent node group '{ref}' not found")
    return ref


def _without_removals(value: Any) -> Any:
    """Drop removal markers: there is nothing to remove from a new group."""
    if isinstance(value, Mapping):
        return {k: _without_removals(v) for k, v in value.items() if not is_removal(v)}
    return value


def plan_create(desired: DesiredGroup, directory: GroupDirectory) -> Dict[str, Any]:
    """Payload for creating *desired* (parent resolved, pins merged into the rule)."""
    payload: Dict[str, Any] = {"name": desired.name}
    if desired.id:
        payload["id"] = desired.id
    for attr in MANAGED_ATTRS:
        value = desired.get(attr)
        if isinstance(value, Value):
            payload[attr] = _without_removals(value.value)

    payload["parent"] = resolve_parent_ref(payload.get("parent", ROOT_GROUP_ID), directory, strict=True)

    rule = desired_rule(desired.rule, desired.pinned)
    if rule is not None:
        payload["rule"] = rule
    return payload


def plan_update(desired: DesiredGroup, observed: Group, directory: GroupDirectory) -> GroupPlan:
    """Compare *desired* with *observed* and build the delta for the drift."""
    co = desired.create_only
    observed_pinned = observed.pinned
    pins = rule_pins(desired, observed_pinned)

    checks = [
        ("parent", parent_in_sync(desired.parent_ref, observed_parent_name(observed, directory), directory, co)),
        *((attr, scalar_in_sync(desired.get(attr), observed.get(attr), co)) for attr in SCALAR_ATTRS),
        ("rule", rule_in_sync(desired.rule, observed.rule, pins, co)),
        ("classes", classes_in_sync(desired.classes, observed.classes, co)),
        ("pinned", pinned_in_sync(desired.pinned, observed_pinned, co)),
        ("unpinned", unpinned_in_sync(desired.unpinned, observed_pinned, co)),
    ]
    out_of_sync = tuple(attr for attr, ok in checks if not ok)
    plan = GroupPlan(name=desired.name, group_id=observed.id, out_of_sync=out_of_sync)

    changed = [a for a in out_of_sync if a in MANAGED_ATTRS]
    if changed:
        parent_ref = desired.parent_ref or observed.parent
        delta: Dict[str, Any] = {
            "id": observed.id,
            "parent": resolve_parent_ref(parent_ref, directory, strict=False),
        }
        for attr in changed:
            if attr == "parent":
                continue
            if attr == "rule":
                delta["rule"] = desired_rule(desired.rule, pins)
            else:
                value = desired.get(attr)
                delta[attr] = value.value if isinstance(value, Value) else value
        plan.delta = delta

    if "pinned" in out_of_sync:
        plan.pin = tuple(desired.pinned)
    if "unpinned" in out_of_sync:
        plan.unpin = tuple(desired.unpinned)
    return plan


def describe_group(group: Group, directory: GroupDirectory) -> Dict[str, Any]:
    """Descriptor view of an existing group: parent as a name, pins extracted."""
    out: Dict[str, Any] = {"name": group.name, "id": group.id}
    out["parent"] = observed_parent_name(group, directory)
    for attr in SCALAR_ATTRS + ("rule", "classes"):
        out[attr] = group.get(attr)
    out["pinned"] = list(group.pinned or [])
    return out
