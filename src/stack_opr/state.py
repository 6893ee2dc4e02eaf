"""State snapshot for template-based provisioning.

The snapshot maps logical ids to what was last applied: concrete
properties, provider-assigned physical id and attributes, and the
dependencies the resource had at the time (needed to order deletes once
the resource is gone from the template).

Snapshots are stored as versioned JSON records in a StateStore under
'{stack}/state'. Format history:

- v1: 'resources' is a list of {logical_id, type, properties, physical_id}
- v2: 'resources' is a mapping by logical id with attributes, dependencies,
  deletion policy and per-resource serial; adds lineage and outputs

Older formats are upgraded on load; they are never written.
"""

import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from errors import ExpressionError
from resolver.base import Computed

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2


def state_key(stack: str) -> str:
    return f'{stack}/state'


@dataclass
class ResourceState:
    """Last applied state of one resource.

    Attributes:
        logical_id: Template name of the resource
        type: Resource type at the time of apply
        properties: Concrete properties sent to the provider
        physical_id: Provider-assigned identifier
        attributes: Provider-reported attributes (e.g. Arn)
        dependencies: Logical ids this resource depended on
        deletion_policy: 'Delete' or 'Retain'
        serial: Snapshot serial at which this entry was last written
        updated_at: Timestamp of the last write
    """
    logical_id: str
    type: str
    properties: dict = field(default_factory=dict)
    physical_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'
    serial: int = 0
    updated_at: Optional[float] = None

    @property
    def retain_on_delete(self) -> bool:
        return self.deletion_policy == 'Retain'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'properties': self.properties,
            'physical_id': self.physical_id,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.deletion_policy != 'Delete':
            d['deletion_policy'] = self.deletion_policy
        d['serial'] = self.serial
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> 'ResourceState':
        return cls(
            logical_id=logical_id,
            type=data['type'],
            properties=dict(data.get('properties') or {}),
            physical_id=data.get('physical_id'),
            attributes=dict(data.get('attributes') or {}),
            dependencies=list(data.get('dependencies') or []),
            deletion_policy=data.get('deletion_policy', 'Delete'),
            serial=data.get('serial', 0),
            updated_at=data.get('updated_at'),
        )


def upgrade_snapshot_data(data: dict) -> dict:
    """Bring stored snapshot data up to FORMAT_VERSION.

    Raises:
        ValueError: If the data is from a newer engine
    """
    version = data.get('format_version', data.get('version', 1))
    if version > FORMAT_VERSION:
        raise ValueError(
            f"State format version {version} is newer than supported ({FORMAT_VERSION})"
        )
    if version == FORMAT_VERSION:
        return data

    logger.info(f"Upgrading state snapshot from format v{version} to v{FORMAT_VERSION}")
    resources = {}
    for entry in data.get('resources') or []:
        resources[entry['logical_id']] = {
            'type': entry['type'],
            'properties': entry.get('properties') or {},
            'physical_id': entry.get('physical_id', entry.get('id')),
            'serial': data.get('serial', 0),
        }
    return {
        'format_version': FORMAT_VERSION,
        'stack': data.get('stack', ''),
        'lineage': data.get('lineage') or str(uuid.uuid4()),
        'serial': data.get('serial', 0),
        'resources': resources,
        'outputs': data.get('outputs') or {},
    }


class StateSnapshot:
    """Stack-level state snapshot with load/save through a StateStore.

    `version` is the store record version the snapshot was read at (0 =
    never written); saving is a conditional write against it. `serial`
    counts content changes and travels with the data.
    """

    def __init__(self, stack: str, lineage: Optional[str] = None):
        self.stack = stack
        self.lineage = lineage or str(uuid.uuid4())
        self.serial = 0
        self.version = 0
        self.outputs: dict[str, Any] = {}
        self._resources: dict[str, ResourceState] = {}

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, logical_id: str) -> Optional[ResourceState]:
        return self._resources.get(logical_id)

    def put(self, resource: ResourceState) -> None:
        """Record a resource as applied, bumping the serial."""
        self.serial += 1
        resource.serial = self.serial
        resource.updated_at = time.time()
        self._resources[resource.logical_id] = resource

    def remove(self, logical_id: str) -> Optional[ResourceState]:
        """Drop a resource from the snapshot, bumping the serial."""
        removed = self._resources.pop(logical_id, None)
        if removed is not None:
            self.serial += 1
        return removed

    def set_outputs(self, outputs: dict[str, Any]) -> None:
        if outputs != self.outputs:
            self.serial += 1
            self.outputs = dict(outputs)

    def copy(self) -> 'StateSnapshot':
        return copy.deepcopy(self)

    def lookup(self) -> 'SnapshotLookup':
        return SnapshotLookup(self)

    def to_dict(self) -> dict:
        return {
            'format_version': FORMAT_VERSION,
            'stack': self.stack,
            'lineage': self.lineage,
            'serial': self.serial,
            'resources': {lid: r.to_dict() for lid, r in self._resources.items()},
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, stack: str, data: dict, version: int = 0) -> 'StateSnapshot':
        data = upgrade_snapshot_data(data)
        snapshot = cls(stack, lineage=data.get('lineage'))
        snapshot.serial = data.get('serial', 0)
        snapshot.version = version
        snapshot.outputs = dict(data.get('outputs') or {})
        for lid, entry in (data.get('resources') or {}).items():
            snapshot._resources[lid] = ResourceState.from_dict(lid, entry)
        return snapshot

    def save(self, store, fencing_token: Optional[int] = None) -> int:
        """Conditionally write the snapshot.

        Args:
            store: StateStore to write to
            fencing_token: Current lock token (checked by the store)

        Returns:
            New record version (also stored on the snapshot)

        Raises:
            OptimisticLockConflictError: If the record changed since load
            StaleFencingTokenError: If the token is no longer current
        """
        self.version = store.write(
            state_key(self.stack), self.to_dict(),
            expected_version=self.version, fencing_token=fencing_token,
        )
        logger.debug(f"Saved state for {self.stack} (version {self.version}, serial {self.serial})")
        return self.version

    @classmethod
    def load(cls, store, stack: str) -> 'StateSnapshot':
        """Load the stack's snapshot, or an empty one if none exists."""
        record = store.read(state_key(stack))
        if record is None:
            logger.debug(f"No state for {stack}, starting empty")
            return cls(stack)
        snapshot = cls.from_dict(stack, record.data, version=record.version)
        logger.debug(f"Loaded state for {stack} (version {record.version}, "
                     f"{len(snapshot)} resources)")
        return snapshot


class SnapshotLookup:
    """ResourceLookup over applied resources.

    Resources not in the snapshot resolve to Computed.
    """

    def __init__(self, snapshot: StateSnapshot):
        self.snapshot = snapshot

    def physical_id(self, logical_id: str) -> Any:
        resource = self.snapshot.get(logical_id)
        if resource is None or resource.physical_id is None:
            return Computed(logical_id)
        return resource.physical_id

    def attribute(self, logical_id: str, name: str) -> Any:
        resource = self.snapshot.get(logical_id)
        if resource is None:
            return Computed(f'{logical_id}.{name}')
        if name not in resource.attributes:
            raise ExpressionError(
                f"Resource '{logical_id}' ({resource.type}) has no attribute '{name}'"
            )
        return resource.attributes[name]
