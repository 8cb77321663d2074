"""
Group data model.

- `Group`: a node group as returned by the classifier (`GET groups`).
- `DesiredGroup`: the resource descriptor handed to the engine.
- Desired attributes are tagged: `UNCHANGED` (leave alone), `REMOVE`
  (send null so the service drops the field) or `Value(x)`.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, Union

from .rules import extract_pinned

T = TypeVar("T")

ROOT_GROUP_ID = "00000000-0000-4000-8000-000000000000"
NODE_ID_REGEX = re.compile(r"^[a-z0-9]{8}-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{12}$")

# The service rejects any body key outside this list.
API_KEYS: Tuple[str, ...] = (
    "name",
    "environment",
    "environment_trumps",
    "description",
    "parent",
    "rule",
    "variables",
    "classes",
)
MANAGED_ATTRS: Tuple[str, ...] = tuple(k for k in API_KEYS if k != "name")

DEFAULT_ENVIRONMENT = "production"


class Unset(enum.Enum):
    UNCHANGED = "unchanged"
    REMOVE = "remove"

    def __repr__(self) -> str:
        return self.name


UNCHANGED = Unset.UNCHANGED
REMOVE = Unset.REMOVE


@dataclass(frozen=True)
class Value(Generic[T]):
    value: T


Attr = Union[Unset, Value]


def is_group_id(value: Any) -> bool:
    """True when *value* has the classifier's group id shape."""
    return isinstance(value, str) and bool(NODE_ID_REGEX.match(value))


def is_removal(value: Any) -> bool:
    return value is None or value is REMOVE


def strip_removals(payload: Any) -> Any:
    """Return a JSON-ready copy: `Value` unwrapped, `REMOVE` -> None, `UNCHANGED` dropped."""
    if isinstance(payload, Value):
        return strip_removals(payload.value)
    if payload is REMOVE:
        return None
    if isinstance(payload, Mapping):
        return {k: strip_removals(v) for k, v in payload.items() if v is not UNCHANGED}
    if isinstance(payload, (list, tuple)):
        return [strip_removals(v) for v in payload]
    return payload


def _as_attr(raw: Any) -> Attr:
    if isinstance(raw, (Unset, Value)):
        return raw
    if raw is None:
        return REMOVE
    return Value(raw)


def _as_names(raw: Any) -> Tuple[str, ...]:
    """Flatten a certname or (nested) list of certnames, keeping first-seen order."""
    out: List[str] = []

    def walk(v: Any) -> None:
        if v is None:
            return
        if isinstance(v, (list, tuple, set, frozenset)):
            for x in v:
                walk(x)
            return
        s = str(v).strip()
        if s and s not in out:
            out.append(s)

    walk(raw)
    return tuple(out)


@dataclass
class Group:
    """A node group as stored by the classifier."""
    id: str
    name: str
    parent: Optional[str] = None
    environment: Optional[str] = None
    environment_trumps: bool = False
    description: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    rule: Optional[List[Any]] = None
    classes: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Group":
        known = {"id", *API_KEYS}
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            parent=data.get("parent"),
            environment=data.get("environment"),
            environment_trumps=bool(data.get("environment_trumps", False)),
            description=data.get("description"),
            variables=dict(data.get("variables") or {}),
            rule=data.get("rule"),
            classes=dict(data.get("classes") or {}),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @property
    def pinned(self) -> Optional[Tuple[str, ...]]:
        """Certnames pinned through the rule, or None when the group has no rule."""
        if self.rule is None:
            return None
        return tuple(extract_pinned(self.rule))

    def get(self, attr: str) -> Any:
        return getattr(self, attr)


@dataclass
class DesiredGroup:
    """Desired state for one node group."""
    name: str
    ensure: str = "present"
    id: Optional[str] = None
    parent: Attr = UNCHANGED
    environment: Attr = UNCHANGED
    environment_trumps: Attr = UNCHANGED
    description: Attr = UNCHANGED
    variables: Attr = UNCHANGED
    rule: Attr = UNCHANGED
    classes: Attr = UNCHANGED
    pinned: Tuple[str, ...] = ()
    unpinned: Tuple[str, ...] = ()
    create_only: bool = False
    refresh_classes: bool = False
    unknown: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], name: Optional[str] = None) -> "DesiredGroup":
        """Build a descriptor from a plain mapping.

        A missing key means `UNCHANGED`, an explicit null means `REMOVE`.
        `parent`, `environment` and `classes` fall back to the root group,
        ``production`` and ``{}`` when not given.
        """
        known = {
            "name", "ensure", "id", "parent", "environment", "environment_trumps",
            "description", "variables", "rule", "classes", "pinned", "unpinned",
            "create_only", "refresh_classes",
        }
        group_name = name if name is not None else data.get("name")
        return cls(
            name="" if group_name is None else group_name,
            ensure=str(data.get("ensure", "present")),
            id=data.get("id"),
            parent=_as_attr(data.get("parent", ROOT_GROUP_ID)),
            environment=_as_attr(data.get("environment", DEFAULT_ENVIRONMENT)),
            environment_trumps=_as_attr(data["environment_trumps"]) if "environment_trumps" in data else UNCHANGED,
            description=_as_attr(data["description"]) if "description" in data else UNCHANGED,
            variables=_as_attr(data["variables"]) if "variables" in data else UNCHANGED,
            rule=_as_attr(data["rule"]) if "rule" in data else UNCHANGED,
            classes=_as_attr(data.get("classes", {})),
            pinned=_as_names(data.get("pinned")),
            unpinned=_as_names(data.get("unpinned")),
            create_only=bool(data.get("create_only", False)),
            refresh_classes=bool(data.get("refresh_classes", False)),
            unknown=tuple(sorted(k for k in data if k not in known)),
        )

    def get(self, attr: str) -> Attr:
        return getattr(self, attr)

    def value_of(self, attr: str, default: Any = None) -> Any:
        """Plain value of a tagged attribute (`default` unless it holds a `Value`)."""
        v = getattr(self, attr)
        return v.value if isinstance(v, Value) else default

    @property
    def parent_ref(self) -> Optional[str]:
        return self.value_of("parent")
