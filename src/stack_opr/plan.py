"""Plan engine: desired graph vs. last applied state.

Walks the graph in create order, resolves each resource's properties and
classifies the change against the snapshot:

- no-op    properties, type and deletion policy unchanged
- create   not in the snapshot
- update   changed properties the provider can mutate in place
- replace  type changed, or a changed property is in the provider's
           replace set (old instance kept when UpdateReplacePolicy: Retain)
- delete   in the snapshot but not in the graph; with DeletionPolicy:
           Retain the entry is delete(retained) and the provider is never
           called

Deletes come after all other entries, dependents before dependencies,
using the dependencies recorded in the snapshot.

Resources that will be created or replaced have no identifiers yet; any
property that references them resolves to Computed and always counts as
changed. The executor re-resolves those properties at apply time.

With refresh enabled, each snapshot resource is read back through its
provider first. Resources gone on the provider side plan as create, and
modified ones are planned against what the provider reports.
"""

import heapq
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import PropertyChange, diff_properties, fingerprint, to_jsonable
from resolver.base import OMIT, Computed
from stack_opr.graph import ResourceGraph
from stack_opr.providers import ProviderRegistry
from stack_opr.state import SnapshotLookup, StateSnapshot

logger = logging.getLogger(__name__)

NO_OP = 'no-op'
CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'

ACTIONS = (NO_OP, CREATE, UPDATE, REPLACE, DELETE)

PLAN_FORMAT_VERSION = 1


@dataclass
class DriftRecord:
    """Difference between the snapshot and provider-side state.

    Attributes:
        logical_id: Drifted resource
        status: 'deleted' (gone on the provider side) or 'modified'
        changes: Snapshot -> actual property changes (modified only)
    """
    logical_id: str
    status: str
    changes: list[PropertyChange] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'logical_id': self.logical_id, 'status': self.status}
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'DriftRecord':
        return cls(
            logical_id=data['logical_id'],
            status=data['status'],
            changes=[PropertyChange.from_dict(c) for c in data.get('changes', [])],
        )


@dataclass
class PlanEntry:
    """One planned resource change.

    Attributes:
        logical_id: Resource name
        resource_type: Type the action applies to (stored type for deletes)
        action: One of ACTIONS
        changes: Property diff (empty for no-op and delete)
        retained: Delete without calling the provider (DeletionPolicy), or
            keep the old instance on replace (UpdateReplacePolicy)
        reason: Why the action was chosen
        dependencies: Logical ids this entry must wait for during apply
        physical_id: Current provider id (update/replace/delete)
        drift: Drift status that shaped this entry, if any
    """
    logical_id: str
    resource_type: str
    action: str
    changes: list[PropertyChange] = field(default_factory=list)
    retained: bool = False
    reason: str = ''
    dependencies: list[str] = field(default_factory=list)
    physical_id: Optional[str] = None
    drift: Optional[str] = None

    @property
    def label(self) -> str:
        """Display form, e.g. 'delete(retained)'."""
        if self.retained and self.action in (DELETE, REPLACE):
            return f'{self.action}(retained)'
        return self.action

    @property
    def is_change(self) -> bool:
        return self.action != NO_OP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logical_id': self.logical_id,
            'type': self.resource_type,
            'action': self.action,
        }
        if self.retained:
            d['retained'] = True
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        if self.reason:
            d['reason'] = self.reason
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        if self.drift is not None:
            d['drift'] = self.drift
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'PlanEntry':
        if data.get('action') not in ACTIONS:
            raise ValueError(f"Unknown plan action: {data.get('action')!r}")
        return cls(
            logical_id=data['logical_id'],
            resource_type=data['type'],
            action=data['action'],
            changes=[PropertyChange.from_dict(c) for c in data.get('changes', [])],
            retained=data.get('retained', False),
            reason=data.get('reason', ''),
            dependencies=list(data.get('dependencies', [])),
            physical_id=data.get('physical_id'),
            drift=data.get('drift'),
        )


@dataclass
class Plan:
    """Ordered change set for one stack.

    Attributes:
        stack: Stack name
        entries: Entries in execution order
        drift: Drift found by refresh
        state_version: Store version of the snapshot the plan was made from
        template_fingerprint: Fingerprint of the template (None for destroy)
        parameters: Parameter values used
        template_path: Template file, recorded for saved plans
        outputs: Output values as far as known at plan time
        destroy: True for a destroy plan
    """
    stack: str
    entries: list[PlanEntry] = field(default_factory=list)
    drift: list[DriftRecord] = field(default_factory=list)
    state_version: int = 0
    template_fingerprint: Optional[str] = None
    parameters: dict = field(default_factory=dict)
    template_path: Optional[str] = None
    outputs: dict = field(default_factory=dict)
    destroy: bool = False

    @property
    def has_changes(self) -> bool:
        return any(e.is_change for e in self.entries)

    @property
    def changes(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.is_change]

    def get(self, logical_id: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.logical_id == logical_id:
                return entry
        return None

    def summary(self) -> dict[str, int]:
        """Count of entries per action label."""
        counts: dict[str, int] = {}
        for entry in self.entries:
            counts[entry.label] = counts.get(entry.label, 0) + 1
        return counts

    @property
    def fingerprint(self) -> str:
        return fingerprint({
            'stack': self.stack,
            'state_version': self.state_version,
            'template': self.template_fingerprint,
            'entries': [e.to_dict() for e in self.entries],
        })

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'format_version': PLAN_FORMAT_VERSION,
            'stack': self.stack,
            'state_version': self.state_version,
            'destroy': self.destroy,
            'has_changes': self.has_changes,
            'fingerprint': self.fingerprint,
            'summary': self.summary(),
            'entries': [e.to_dict() for e in self.entries],
        }
        if self.drift:
            d['drift'] = [r.to_dict() for r in self.drift]
        if self.template_fingerprint is not None:
            d['template_fingerprint'] = self.template_fingerprint
        if self.template_path is not None:
            d['template_path'] = self.template_path
        if self.parameters:
            d['parameters'] = to_jsonable(self.parameters)
        if self.outputs:
            d['outputs'] = to_jsonable(self.outputs)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        version = data.get('format_version', PLAN_FORMAT_VERSION)
        if version > PLAN_FORMAT_VERSION:
            raise ValueError(f"Plan format version {version} is not supported")
        plan = cls(
            stack=data['stack'],
            entries=[PlanEntry.from_dict(e) for e in data.get('entries', [])],
            drift=[DriftRecord.from_dict(r) for r in data.get('drift', [])],
            state_version=data.get('state_version', 0),
            template_fingerprint=data.get('template_fingerprint'),
            parameters=dict(data.get('parameters') or {}),
            template_path=data.get('template_path'),
            outputs=dict(data.get('outputs') or {}),
            destroy=data.get('destroy', False),
        )
        saved = data.get('fingerprint')
        if saved and saved != plan.fingerprint:
            raise ValueError("Plan file fingerprint mismatch (file was modified)")
        return plan

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        """Load a saved plan.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not a valid plan
        """
        with open(path, encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid plan file {path}: {e}")
        return cls.from_dict(data)


class PlanLookup:
    """ResourceLookup for planning.

    Resources about to be created or replaced resolve to Computed; all
    others resolve from the baseline snapshot.
    """

    def __init__(self, snapshot: StateSnapshot, pending: set[str]):
        self._applied = SnapshotLookup(snapshot)
        self.pending = pending

    def physical_id(self, logical_id: str) -> Any:
        if logical_id in self.pending:
            return Computed(logical_id)
        return self._applied.physical_id(logical_id)

    def attribute(self, logical_id: str, name: str) -> Any:
        if logical_id in self.pending:
            return Computed(f'{logical_id}.{name}')
        return self._applied.attribute(logical_id, name)


class PlanEngine:
    """Computes a Plan for a graph (or a destroy plan) against a snapshot.

    The snapshot is never modified; refresh works on a copy.
    """

    def __init__(
        self,
        snapshot: StateSnapshot,
        registry: ProviderRegistry,
        graph: Optional[ResourceGraph] = None,
        refresh: bool = False,
    ):
        self.snapshot = snapshot
        self.registry = registry
        self.graph = graph
        self.refresh = refresh

    def plan(self) -> Plan:
        """Plan the graph against the snapshot (destroy plan when no graph)."""
        baseline, drift = self._refresh() if self.refresh else (self.snapshot, [])
        drifted = {r.logical_id: r.status for r in drift}

        plan = Plan(
            stack=self.snapshot.stack,
            drift=drift,
            state_version=self.snapshot.version,
            destroy=self.graph is None,
        )

        desired_ids: set[str] = set()
        if self.graph is not None:
            template = self.graph.template
            plan.template_fingerprint = fingerprint(template.raw)
            plan.template_path = str(template.source_path) if template.source_path else None
            plan.parameters = dict(self.graph.parameters)
            pending: set[str] = set()
            lookup = PlanLookup(baseline, pending)
            for node in self.graph.create_order():
                entry = self._plan_node(node, baseline, lookup, drifted.get(node.logical_id))
                if entry.action in (CREATE, REPLACE):
                    pending.add(node.logical_id)
                plan.entries.append(entry)
                desired_ids.add(node.logical_id)
            plan.outputs = self._preview_outputs(lookup)

        removed = [lid for lid in self.snapshot.resources if lid not in desired_ids]
        for lid in _delete_order(self.snapshot, removed):
            entry = self._plan_delete(lid, drifted.get(lid))
            # Anything that still pointed at the resource goes first
            entry.dependencies = sorted(
                other for other, res in self.snapshot.resources.items()
                if lid in res.dependencies and other != lid
            )
            plan.entries.append(entry)

        logger.info(f"Plan for {plan.stack}: "
                    + (', '.join(f'{n} {a}' for a, n in sorted(plan.summary().items())) or 'empty'))
        return plan

    def _plan_node(self, node, baseline: StateSnapshot, lookup: PlanLookup,
                   drift: Optional[str]) -> PlanEntry:
        decl = node.decl
        provider = self.registry.get(decl.type)
        desired = self.graph.evaluator.resolve_properties(decl.properties, lookup, decl.logical_id)
        current = baseline.get(decl.logical_id)

        entry = PlanEntry(
            logical_id=decl.logical_id,
            resource_type=decl.type,
            action=NO_OP,
            dependencies=node.dependency_ids,
            drift=drift,
        )

        if current is None:
            entry.action = CREATE
            entry.changes = diff_properties({}, desired)
            entry.reason = ('deleted outside the stack' if drift == 'deleted'
                            else 'not in state')
            return entry

        entry.physical_id = current.physical_id
        if current.type != decl.type:
            entry.action = REPLACE
            entry.changes = diff_properties(current.properties, desired)
            entry.retained = decl.retain_on_replace
            entry.reason = f'type changed from {current.type}'
            return entry

        entry.changes = diff_properties(current.properties, desired)
        if not entry.changes:
            if current.deletion_policy != decl.deletion_policy:
                entry.action = UPDATE
                entry.reason = f'DeletionPolicy changed to {decl.deletion_policy}'
            return entry

        forced = provider.requires_replace(c.name for c in entry.changes)
        if forced:
            entry.action = REPLACE
            entry.retained = decl.retain_on_replace
            entry.reason = f"replacement required by {', '.join(forced)}"
        else:
            entry.action = UPDATE
            entry.reason = ('modified outside the stack' if drift == 'modified'
                            else 'properties changed')
        return entry

    def _plan_delete(self, logical_id: str, drift: Optional[str]) -> PlanEntry:
        current = self.snapshot.get(logical_id)
        entry = PlanEntry(
            logical_id=logical_id,
            resource_type=current.type,
            action=DELETE,
            physical_id=current.physical_id,
            drift=drift,
        )
        if current.retain_on_delete:
            entry.retained = True
            entry.reason = 'DeletionPolicy: Retain'
        elif drift == 'deleted':
            entry.reason = 'already deleted outside the stack'
        else:
            entry.reason = 'destroy' if self.graph is None else 'removed from template'
        return entry

    def _preview_outputs(self, lookup: PlanLookup) -> dict[str, Any]:
        template = self.graph.template
        outputs: dict[str, Any] = {}
        for name, out in template.outputs.items():
            if out.condition and not self.graph.condition_values.get(out.condition):
                continue
            value = self.graph.evaluator.resolve(out.value, lookup, f'Outputs.{name}')
            if value is not OMIT:
                outputs[name] = value
        return outputs

    def _refresh(self) -> tuple[StateSnapshot, list]:
        """Read back provider-side state into a copy of the snapshot."""
        baseline = self.snapshot.copy()
        drift: list[DriftRecord] = []
        for lid, resource in self.snapshot.resources.items():
            if resource.physical_id is None:
                continue
            provider = self.registry.get(resource.type)
            actual = provider.describe(resource.physical_id)
            if actual is None:
                logger.warning(f"Drift: {lid} ({resource.physical_id}) no longer exists")
                drift.append(DriftRecord(lid, 'deleted'))
                baseline.remove(lid)
                continue
            changes = diff_properties(resource.properties, actual)
            if changes:
                logger.warning(f"Drift: {lid} modified outside the stack "
                               f"({', '.join(c.name for c in changes)})")
                drift.append(DriftRecord(lid, 'modified', changes))
                baseline.get(lid).properties = dict(actual)
        return baseline, drift


def _delete_order(snapshot: StateSnapshot, logical_ids: list[str]) -> list[str]:
    """Dependents before dependencies, using dependencies stored in state.

    Ties (and any leftovers from a corrupted cycle) go in name order.
    """
    targets = set(logical_ids)
    # Edges point from a resource to what it depends on: it must go first.
    dependents_left = {lid: 0 for lid in targets}
    for lid in targets:
        for dep in snapshot.get(lid).dependencies:
            if dep in targets:
                dependents_left[dep] += 1

    ready = [lid for lid, n in dependents_left.items() if n == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        lid = heapq.heappop(ready)
        ordered.append(lid)
        for dep in snapshot.get(lid).dependencies:
            if dep in targets:
                dependents_left[dep] -= 1
                if dependents_left[dep] == 0:
                    heapq.heappush(ready, dep)

    leftovers = sorted(targets - set(ordered))
    if leftovers:
        logger.warning(f"Stored dependencies form a cycle: {', '.join(leftovers)}")
    return ordered + leftovers
