"""Apply executor for template-based provisioning.

Executes a Plan's change entries against resource providers:

- Entries run on a thread pool bounded by `parallelism`. An entry is
  submitted once every entry it depends on has succeeded, so independent
  subtrees proceed concurrently while dependents wait.
- A provider failure marks the entry failed and every transitive dependent
  skipped. Independent branches keep going; the ApplyResult aggregates
  succeeded / failed / skipped / cancelled.
- Properties are re-resolved against the live snapshot right before each
  provider call, which turns plan-time Computed values into real ids.
- After every successful entry the snapshot is saved with a conditional
  write tagged with the lock's fencing token, and the lock lease is
  refreshed. Losing the lock or a rejected write aborts the run: no new
  provider calls, and the lock is not released (it is no longer ours).
- Cancellation stops submitting new entries. In-flight calls finish and
  are persisted, then the lock is released.

Snapshot mutation and persistence happen only on the calling thread;
worker threads only talk to providers.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from common import diff_properties
from errors import (
    ConsistencyError,
    EngineError,
    LockError,
    LockLostError,
    ProviderError,
    StalePlanError,
)
from resolver.base import OMIT, contains_computed
from stack_opr.graph import ResourceGraph
from stack_opr.lock import LockManager
from stack_opr.plan import CREATE, DELETE, REPLACE, UPDATE, Plan, PlanEntry
from stack_opr.providers import ProviderRegistry
from stack_opr.state import ResourceState, StateSnapshot
from stack_opr.store import StateStore

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
CANCELLED = 'cancelled'


@dataclass
class EntryResult:
    """Outcome of one plan entry.

    Attributes:
        logical_id: Resource name
        action: Plan action label (e.g. 'delete(retained)')
        status: pending, running, succeeded, failed, skipped, cancelled
        physical_id: Provider id after the entry ran
        error: Failure or skip reason
        started_at: Timestamp the provider call was submitted
        completed_at: Timestamp the outcome was recorded
    """
    logical_id: str
    action: str
    status: str = PENDING
    physical_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self, physical_id: Optional[str] = None) -> None:
        self.status = SUCCEEDED
        self.completed_at = time.time()
        self.physical_id = physical_id

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.error = reason

    def cancel(self) -> None:
        self.status = CANCELLED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logical_id': self.logical_id,
            'action': self.action,
            'status': self.status,
        }
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        if self.error is not None:
            d['error'] = self.error
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


@dataclass
class ApplyResult:
    """Aggregate outcome of an apply.

    Attributes:
        stack: Stack name
        entries: Per-entry results in plan order
        outputs: Resolved outputs (set after a fully successful apply)
        aborted: Error that stopped the run (lock loss / consistency)
        cancelled: True if cancellation was requested
        state_version: Store version after the last write
    """
    stack: str
    entries: dict[str, EntryResult] = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    aborted: Optional[EngineError] = None
    cancelled: bool = False
    state_version: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def _with_status(self, status: str) -> list[str]:
        return [lid for lid, r in self.entries.items() if r.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(SKIPPED)

    @property
    def cancelled_entries(self) -> list[str]:
        return self._with_status(CANCELLED)

    @property
    def success(self) -> bool:
        return self.aborted is None and all(r.status == SUCCEEDED for r in self.entries.values())

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'stack': self.stack,
            'success': self.success,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'cancelled': self.cancelled_entries,
            'entries': [r.to_dict() for r in self.entries.values()],
            'state_version': self.state_version,
        }
        if self.outputs:
            d['outputs'] = self.outputs
        if self.aborted is not None:
            d['aborted'] = {'code': self.aborted.code, 'message': self.aborted.message}
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


@dataclass
class _Outcome:
    """What a worker did; applied to the snapshot on the calling thread."""
    put: Optional[ResourceState] = None
    removed: bool = False
    error: Optional[ProviderError] = None


@dataclass
class ApplyExecutor:
    """Applies a Plan while holding the stack lock.

    The caller acquires the lock before planning; apply() releases it when
    done unless the lock was lost or a state write was rejected.

    Attributes:
        snapshot: State the plan was computed from (updated in place)
        store: StateStore the snapshot is saved to
        registry: Resource providers
        lock: LockManager holding the stack lock
        graph: Desired graph (None for destroy plans)
        parallelism: Max concurrent provider calls
        cancel_event: Set to stop submitting new entries
    """
    snapshot: StateSnapshot
    store: StateStore
    registry: ProviderRegistry
    lock: LockManager
    graph: Optional[ResourceGraph] = None
    parallelism: int = 4
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        """Request cancellation; in-flight provider calls still finish."""
        logger.warning("Cancellation requested, waiting for in-flight operations")
        self.cancel_event.set()

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute the plan's change entries.

        Raises:
            LockLostError: If the stack lock is not held (nothing is executed)
            StalePlanError: If the snapshot moved since the plan was made
                (nothing is executed, the lock is released)
        """
        if not self.lock.held:
            current = self.lock.current()
            raise LockLostError(0, current.to_dict() if current else None)

        result = ApplyResult(stack=plan.stack, state_version=self.snapshot.version)
        result.started_at = time.time()
        for entry in plan.changes:
            result.entries[entry.logical_id] = EntryResult(entry.logical_id, entry.label)

        try:
            if plan.state_version != self.snapshot.version:
                raise StalePlanError(plan.state_version, self.snapshot.version)
            self._run(plan, result)
            if result.aborted is None and not result.cancelled and result.success:
                self._write_outputs(plan, result)
        except StalePlanError:
            raise
        except (LockError, ConsistencyError) as e:
            self._abort(result, e)
        finally:
            result.completed_at = time.time()
            if result.aborted is None and self.lock.held:
                self.lock.release()

        logger.info(
            f"Apply {plan.stack}: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
            + (f", {len(result.cancelled_entries)} cancelled" if result.cancelled_entries else "")
        )
        return result

    def _abort(self, result: ApplyResult, error: EngineError) -> None:
        logger.error(f"Aborting apply of {result.stack}: {error}")
        result.aborted = error

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _run(self, plan: Plan, result: ApplyResult) -> None:
        entries = plan.changes
        change_ids = {e.logical_id for e in entries}
        dependents: dict[str, list[str]] = {e.logical_id: [] for e in entries}
        for entry in entries:
            for dep in entry.dependencies:
                if dep in dependents:
                    dependents[dep].append(entry.logical_id)

        pending: list[PlanEntry] = list(entries)
        running: dict[Future, PlanEntry] = {}

        def ready(entry: PlanEntry) -> bool:
            return all(
                dep not in change_ids or result.entries[dep].status == SUCCEEDED
                for dep in entry.dependencies
            )

        def skip_dependents(logical_id: str) -> None:
            stack = list(dependents[logical_id])
            while stack:
                lid = stack.pop()
                if result.entries[lid].status != PENDING:
                    continue
                result.entries[lid].skip(f"dependency '{logical_id}' did not succeed")
                logger.warning(f"Skipping {lid}: dependency {logical_id} did not succeed")
                stack.extend(dependents[lid])

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            while True:
                pending = [e for e in pending if result.entries[e.logical_id].status == PENDING]

                if self.cancel_event.is_set() or result.aborted is not None:
                    if self.cancel_event.is_set():
                        result.cancelled = True
                    for entry in pending:
                        result.entries[entry.logical_id].cancel()
                    pending = []
                else:
                    for entry in pending:
                        if len(running) >= self.parallelism:
                            break
                        if not ready(entry):
                            continue
                        future = self._submit(pool, entry, result)
                        if future is None:
                            skip_dependents(entry.logical_id)
                        else:
                            running[future] = entry
                    pending = [e for e in pending if result.entries[e.logical_id].status == PENDING]

                if not running:
                    for entry in pending:
                        # Only reachable if a dependency never became runnable
                        result.entries[entry.logical_id].skip("dependencies not satisfied")
                    return

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    entry = running.pop(future)
                    if not self._complete(entry, future.result(), result):
                        skip_dependents(entry.logical_id)

    def _submit(self, pool: ThreadPoolExecutor, entry: PlanEntry,
                result: ApplyResult) -> Optional[Future]:
        """Resolve properties and hand the provider call to the pool.

        Returns None (entry failed) if properties cannot be resolved.
        """
        entry_result = result.entries[entry.logical_id]
        properties: dict = {}
        if entry.action != DELETE:
            try:
                properties = self._resolve(entry)
            except EngineError as e:
                entry_result.fail(str(e))
                logger.error(f"{entry.logical_id}: {e}")
                return None

        entry_result.start()
        logger.info(f"{entry.label} {entry.logical_id} ({entry.resource_type})")
        return pool.submit(self._execute, entry, properties, self.snapshot.get(entry.logical_id))

    def _resolve(self, entry: PlanEntry) -> dict:
        decl = self.graph.get_node(entry.logical_id).decl
        properties = self.graph.evaluator.resolve_properties(
            decl.properties, self.snapshot.lookup(), entry.logical_id)
        if contains_computed(properties):
            raise ProviderError(
                f"Properties of '{entry.logical_id}' still depend on unapplied resources",
                entry.logical_id,
            )
        return properties

    def _complete(self, entry: PlanEntry, outcome: _Outcome, result: ApplyResult) -> bool:
        """Record a finished entry, persist state and refresh the lock.

        Returns:
            True if the entry succeeded

        Raises:
            LockError / ConsistencyError from persistence (aborts the run)
        """
        entry_result = result.entries[entry.logical_id]
        changed = False
        if outcome.removed:
            changed = self.snapshot.remove(entry.logical_id) is not None
        if outcome.put is not None:
            self.snapshot.put(outcome.put)
            changed = True

        if outcome.error is not None:
            entry_result.fail(str(outcome.error))
            logger.error(f"{entry.label} {entry.logical_id} failed: {outcome.error}")
        else:
            entry_result.succeed(outcome.put.physical_id if outcome.put else None)
            logger.info(f"{entry.label} {entry.logical_id} complete")

        if changed and result.aborted is None:
            try:
                result.state_version = self.snapshot.save(self.store, fencing_token=self.lock.token)
                self.lock.refresh()
            except (LockError, ConsistencyError) as e:
                self._abort(result, e)
        return outcome.error is None

    # -------------------------------------------------------------------------
    # Provider calls (worker threads)
    # -------------------------------------------------------------------------

    def _execute(self, entry: PlanEntry, properties: dict,
                 current: Optional[ResourceState]) -> _Outcome:
        try:
            if entry.action == CREATE:
                return _Outcome(put=self._create(entry, properties))
            if entry.action == UPDATE:
                return _Outcome(put=self._update(entry, properties, current))
            if entry.action == REPLACE:
                return self._replace(entry, properties, current)
            if entry.action == DELETE:
                return self._delete(entry, current)
            raise ProviderError(f"Unsupported action '{entry.action}'", entry.logical_id)
        except ProviderError as e:
            return _Outcome(error=e)
        except Exception as e:
            logger.exception(f"Provider raised unexpectedly for {entry.logical_id}")
            return _Outcome(error=ProviderError(f"{type(e).__name__}: {e}", entry.logical_id))

    def _state_for(self, entry: PlanEntry, properties: dict, physical_id: str,
                   attributes: dict) -> ResourceState:
        node = self.graph.get_node(entry.logical_id)
        return ResourceState(
            logical_id=entry.logical_id,
            type=node.type,
            properties=properties,
            physical_id=physical_id,
            attributes=dict(attributes),
            dependencies=node.dependency_ids,
            deletion_policy=node.decl.deletion_policy,
        )

    def _create(self, entry: PlanEntry, properties: dict) -> ResourceState:
        provider = self.registry.get(entry.resource_type)
        created = provider.create(entry.logical_id, properties)
        return self._state_for(entry, properties, created.physical_id, created.attributes)

    def _update(self, entry: PlanEntry, properties: dict,
                current: ResourceState) -> ResourceState:
        provider = self.registry.get(entry.resource_type)
        before = current.properties
        if entry.drift == 'modified':
            # Drifted: diff against what the provider holds, not last-applied state
            actual = provider.describe(current.physical_id)
            if actual is not None:
                before = actual
        changes = diff_properties(before, properties)
        attributes = dict(current.attributes)
        if changes:
            attributes.update(provider.update(current.physical_id, properties, changes) or {})
        return self._state_for(entry, properties, current.physical_id, attributes)

    def _replace(self, entry: PlanEntry, properties: dict,
                 current: ResourceState) -> _Outcome:
        if entry.retained:
            logger.info(f"Keeping old {entry.logical_id} ({current.physical_id}): "
                        f"UpdateReplacePolicy is Retain")
        else:
            self.registry.get(current.type).delete(current.physical_id)
        try:
            return _Outcome(put=self._create(entry, properties))
        except ProviderError as e:
            # The old instance is gone (or orphaned); do not keep pointing at it
            return _Outcome(removed=True, error=e)

    def _delete(self, entry: PlanEntry, current: Optional[ResourceState]) -> _Outcome:
        if current is None:
            return _Outcome(removed=True)
        if entry.retained:
            logger.info(f"Retaining {entry.logical_id} ({current.physical_id}): "
                        f"removed from state only")
        elif entry.drift == 'deleted':
            logger.info(f"{entry.logical_id} already deleted outside the stack")
        else:
            self.registry.get(current.type).delete(current.physical_id)
        return _Outcome(removed=True)

    # -------------------------------------------------------------------------
    # Outputs
    # -------------------------------------------------------------------------

    def _write_outputs(self, plan: Plan, result: ApplyResult) -> None:
        outputs: dict[str, Any] = {}
        if self.graph is not None:
            lookup = self.snapshot.lookup()
            for name, out in self.graph.template.outputs.items():
                if out.condition and not self.graph.condition_values.get(out.condition):
                    continue
                value = self.graph.evaluator.resolve(out.value, lookup, f'Outputs.{name}')
                if value is not OMIT:
                    outputs[name] = value
        result.outputs = outputs
        if outputs != self.snapshot.outputs:
            self.snapshot.set_outputs(outputs)
            result.state_version = self.snapshot.save(self.store, fencing_token=self.lock.token)
