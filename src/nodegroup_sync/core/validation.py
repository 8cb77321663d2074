"""
Desired-state validators (run before any remote call).
"""
from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from .model import REMOVE, UNCHANGED, DesiredGroup, Value, is_group_id
from .rules import RuleError, parse

ENVIRONMENT_RE = re.compile(r"\A[a-z0-9_]+\Z")
AGENT_SPECIFIED = "agent-specified"


class ValidationError(Exception):
    """Raised when a desired group has the wrong shape."""
    pass


def require_disjoint(name: str, pinned: Iterable[str], unpinned: Iterable[str]) -> None:
    """Ensure no certname is both pinned and unpinned."""
    both = sorted(set(pinned) & set(unpinned))
    if both:
        raise ValidationError(f"{name}: identical nodes specified in pinned and unpinned: {', '.join(both)}")


def require_environment(name: str, value: Any) -> None:
    if not isinstance(value, str) or not (ENVIRONMENT_RE.match(value) or value == AGENT_SPECIFIED):
        raise ValidationError(f"{name}: invalid environment name {value!r}")


def require_type(name: str, attr: str, value: Any, kind: type, label: str) -> None:
    if not isinstance(value, kind):
        raise ValidationError(f"{name}: {attr} should be a {label}")


def validate_desired(desired: DesiredGroup) -> None:
    """Validate one desired group.

    Raises:
        ValidationError: On the first problem found.
    """
    if not isinstance(desired.name, str):
        raise ValidationError("name should be a String")
    if desired.name.strip() == "":
        raise ValidationError("Node group must have a name")
    name = desired.name

    if desired.unknown:
        raise ValidationError(f"{name}: unknown attribute(s): {', '.join(desired.unknown)}")
    if desired.ensure not in ("present", "absent"):
        raise ValidationError(f"{name}: ensure must be 'present' or 'absent', got {desired.ensure!r}")
    if desired.id is not None and not is_group_id(desired.id):
        raise ValidationError(f"{name}: id {desired.id!r} is not a group identifier")

    require_disjoint(name, desired.pinned, desired.unpinned)

    for attr in ("parent", "environment", "environment_trumps", "description", "variables", "rule", "classes"):
        tagged = desired.get(attr)
        if tagged is UNCHANGED:
            continue
        if tagged is REMOVE:
            if attr in ("parent", "environment", "environment_trumps", "classes"):
                raise ValidationError(f"{name}: {attr} cannot be removed")
            continue
        if not isinstance(tagged, Value):
            raise ValidationError(f"{name}: {attr} holds an untagged value {tagged!r}")
        value = tagged.value
        if attr == "environment":
            require_environment(name, value)
        elif attr in ("parent", "description"):
            require_type(name, attr, value, str, "String")
        elif attr == "environment_trumps":
            require_type(name, attr, value, bool, "Boolean")
        elif attr in ("variables", "classes"):
            require_type(name, attr, value, Mapping, "Hash")
            if attr == "classes":
                for cls, params in value.items():
                    if params is not None and params is not REMOVE and not isinstance(params, Mapping):
                        raise ValidationError(f"{name}: parameters of class {cls!r} must be a Hash")
        elif attr == "rule":
            try:
                parse(value)
            except RuleError as exc:
                raise ValidationError(f"{name}: {exc}") from exc


def validate_all(specs: Iterable[DesiredGroup]) -> None:
    """Validate every desired group and reject duplicate (case-insensitive) names."""
    seen = {}
    for spec in specs:
        validate_desired(spec)
        key = spec.name.lower()
        if key in seen:
            raise ValidationError(f"duplicate node group name(s): {seen[key]}, {spec.name}")
        seen[key] = spec.name
