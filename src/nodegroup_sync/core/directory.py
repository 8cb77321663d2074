"""
Group directory: the group listing fetched once per reconciliation pass.

The listing is resolved by id or by name and updated in place when the
orchestrator creates or deletes a group, so later groups of the same pass
can reference it.
"""
from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional

from .model import Group


class NotFound(LookupError):
    """Raised when a group id cannot be resolved in the directory."""


class GroupDirectory:
    """In-memory listing of the classifier groups for one pass."""

    def __init__(self, groups: Iterable[Group] = (), *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self._groups: List[Group] = list(groups)
        self.log = logger or logging.getLogger("ngs.directory")

    @classmethod
    def load(cls, client, *, logger: Optional[logging.LoggerAdapter] = None) -> "GroupDirectory":
        """List every group through *client* and index them."""
        directory = cls(client.list_groups(), logger=logger)
        directory.log.debug("Directory loaded with %d groups", len(directory))
        return directory

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[Group]:
        return iter(self._groups)

    # ---------------- lookups ----------------
    def find(self, name: str) -> Optional[Group]:
        """Case-insensitive lookup by group name."""
        wanted = str(name).lower()
        for group in self._groups:
            if group.name.lower() == wanted:
                return group
        return None

    def get(self, group_id: str) -> Optional[Group]:
        for group in self._groups:
            if group.id == group_id:
                return group
        return None

    def resolve_parent_name(self, group_id: str) -> str:
        """Name of the group with *group_id*.

        Raises:
            NotFound: When no listed group carries that id.
        """
        group = self.get(group_id)
        if group is None:
            raise NotFound(f"No node group with id '{group_id}'")
        return group.name

    def resolve_parent_id(self, name: str) -> Optional[str]:
        """Id of the group called *name* (case-insensitive), or None."""
        wanted = str(name).lower()
        for group in self._groups:
            if group.name.lower() == wanted:
                return group.id
        return None

    # ---------------- mutations ----------------
    def register(self, name: str, group_id: str, **attrs) -> Group:
        """Add a placeholder for a group created during this pass."""
        group = Group(id=group_id, name=name, **attrs)
        self._groups.append(group)
        self.log.debug("Directory: registered %s -> %s", name, group_id)
        return group

    def forget(self, group_id: str) -> None:
        self._groups = [g for g in self._groups if g.id != group_id]

