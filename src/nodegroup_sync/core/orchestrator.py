"""
Orchestrator: converge a set of desired node groups against the classifier.

Lifecycle per call to `converge`:
  validate -> refresh classes -> open pass (list groups once) -> order parents first
  -> per group: create | update + pin/unpin | delete | nothing

- Strictly sequential; a group created early in the pass is visible as a
  parent to the groups that follow.
- Group-level isolation: a ServiceError/NotFound aborts the current group
  only, nothing is rolled back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .classifier_client import ClassifierClient, ServiceError
from .directory import GroupDirectory, NotFound
from .model import DesiredGroup, is_group_id
from .reconcile import GroupPlan, plan_create, plan_update
from .validation import validate_all


@dataclass(frozen=True)
class GroupResult:
    """Result for one desired group."""
    name: str
    status: str
    group_id: str = ""
    changes: Tuple[str, ...] = ()
    error: str = ""


@dataclass
class ConvergeReport:
    results: List[GroupResult] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def any_error(self) -> bool:
        return bool(self.counts.get("ERROR"))

    def rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": r.name,
                "id": r.group_id,
                "result": r.status.lower(),
                "changes": ", ".join(r.changes),
                "error": r.error,
            }
            for r in self.results
        ]


class ClassifierSession:
    """Explicit holder of the classifier client shared by the passes of one run."""

    def __init__(self, client: ClassifierClient, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.client = client
        self.log = logger or logging.getLogger("ngs.session")

    def open_pass(self) -> "ReconciliationPass":
        """Start a pass with a freshly listed directory."""
        return ReconciliationPass(self.client, GroupDirectory.load(self.client, logger=self.log))


@dataclass
class ReconciliationPass:
    """One discovery-then-apply pass; its directory never outlives it."""
    client: ClassifierClient
    directory: GroupDirectory


def order_by_parent(specs: Iterable[DesiredGroup]) -> List[DesiredGroup]:
    """Stable ordering where a desired parent comes before its children."""
    pending = list(specs)
    by_name = {s.name.lower(): s for s in pending}
    ordered: List[DesiredGroup] = []
    placed = set()
    visiting = set()

    def visit(spec: DesiredGroup) -> None:
        key = spec.name.lower()
        if key in placed or key in visiting:
            return
        visiting.add(key)
        parent = spec.parent_ref
        if parent and not is_group_id(parent):
            dep = by_name.get(parent.lower())
            if dep is not None and dep is not spec:
                visit(dep)
        visiting.discard(key)
        placed.add(key)
        ordered.append(spec)

    for spec in pending:
        visit(spec)
    return ordered


class Orchestrator:
    """Sequences classifier calls so that remote groups match the desired specs."""

    def __init__(
        self,
        session: ClassifierSession,
        *,
        dry_run: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.session = session
        self.client = session.client
        self.dry_run = dry_run
        self.log = logger or logging.getLogger("ngs.orchestrator")

    # ---------------- public API ----------------
    def converge(self, specs: Iterable[DesiredGroup]) -> ConvergeReport:
        """Bring every desired group in sync.

        Raises:
            ValidationError: Before any remote call, on a malformed desired group.
            ServiceError: When the class refresh or the group listing fails.
        """
        specs = list(specs)
        validate_all(specs)

        self.refresh_environments(specs)
        current = self.session.open_pass()
        self.log.info("Converging %d group(s) against %d existing", len(specs), len(current.directory))

        report = ConvergeReport()
        for spec in order_by_parent(specs):
            try:
                res = self.converge_group(current, spec)
            except (ServiceError, NotFound) as exc:
                self.log.error("Group %s failed: %s", spec.name, exc)
                res = GroupResult(spec.name, "ERROR", error=str(exc))
            self._append(report, res)
        return report

    def refresh_environments(self, specs: Iterable[DesiredGroup]) -> List[str]:
        """Refresh the class cache once per environment that asked for it."""
        envs: List[str] = []
        for spec in specs:
            if spec.refresh_classes:
                env = spec.value_of("environment")
                if env not in envs:
                    envs.append(env)
        for env in envs:
            if self.dry_run:
                self.log.info("Dry-run: would refresh classes for environment=%s", env)
                continue
            self.client.refresh_classes(env)
        return envs

    def converge_group(self, current: ReconciliationPass, spec: DesiredGroup) -> GroupResult:
        existing = current.directory.find(spec.name)

        if spec.ensure == "absent":
            if existing is None:
                return GroupResult(spec.name, "ABSENT")
            return self._destroy(current, spec, existing.id)

        if existing is None:
            return self._create(current, spec)

        plan = plan_update(spec, existing, current.directory)
        if spec.id and spec.id != existing.id:
            self.log.warning("Group %s: desired id %s differs from existing id %s; keeping existing",
                             spec.name, spec.id, existing.id)
        if plan.in_sync:
            self.log.debug("Group %s unchanged", spec.name)
            return GroupResult(spec.name, "UNCHANGED", group_id=existing.id)
        return self._update(current, spec, plan)

    # ---------------- transitions ----------------
    def _create(self, current: ReconciliationPass, spec: DesiredGroup) -> GroupResult:
        payload = plan_create(spec, current.directory)
        changes = tuple(k for k in payload if k not in ("name", "id"))
        if self.dry_run:
            self.log.info("Dry-run: would create %s", spec.name)
            # placeholder without id so children planned later still resolve
            current.directory.register(spec.name, "")
            return GroupResult(spec.name, "PLANNED", changes=("create",) + changes)

        group_id = self.client.create_group(payload)
        current.directory.register(
            spec.name, group_id,
            parent=payload.get("parent"),
            environment=payload.get("environment"),
            rule=payload.get("rule"),
        )
        self.log.info("Group %s created with id %s", spec.name, group_id)

        if spec.pinned:
            self.client.pin_nodes(group_id, list(spec.pinned))
            changes += ("pinned",)
        return GroupResult(spec.name, "CREATED", group_id=group_id, changes=changes)

    def _update(self, current: ReconciliationPass, spec: DesiredGroup, plan: GroupPlan) -> GroupResult:
        self.log.info("Group %s out of sync: %s", spec.name, ", ".join(plan.out_of_sync))
        if self.dry_run:
            return GroupResult(spec.name, "PLANNED", group_id=plan.group_id, changes=plan.out_of_sync)

        if plan.needs_update:
            self.client.update_group(plan.delta)
        if plan.pin:
            self.client.pin_nodes(plan.group_id, list(plan.pin))
        if plan.unpin:
            self.client.unpin_nodes(plan.group_id, list(plan.unpin))
        return GroupResult(spec.name, "UPDATED", group_id=plan.group_id, changes=plan.out_of_sync)

    def _destroy(self, current: ReconciliationPass, spec: DesiredGroup, group_id: str) -> GroupResult:
        if self.dry_run:
            self.log.info("Dry-run: would delete %s (%s)", spec.name, group_id)
            return GroupResult(spec.name, "PLANNED", group_id=group_id, changes=("delete",))
        # On failure the directory keeps the group: the error propagates to converge().
        self.client.delete_group(group_id)
        current.directory.forget(group_id)
        self.log.info("Group %s deleted", spec.name)
        return GroupResult(spec.name, "DELETED", group_id=group_id)

    @staticmethod
    def _append(report: ConvergeReport, res: GroupResult) -> None:
        report.results.append(res)
        report.counts[res.status] = report.counts.get(res.status, 0) + 1
