"""Resource providers.

A provider owns the concrete lifecycle of one or more resource types:

- describe(physical_id) -> properties, or None if the resource is gone
- create(logical_id, properties) -> ProviderResult(physical_id, attributes)
- update(physical_id, properties, changes) -> attributes
- delete(physical_id)

Failures raise ProviderError. Each provider declares which properties
cannot be changed in place (replace_properties); the plan engine turns a
change to any of them into a replacement.

LocalProvider keeps resources as JSON files on disk. It is the default
for every type so stacks can be planned and applied without a cloud SDK.
"""

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from config import ConfigError
from errors import ProviderError, ProviderNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ProviderResult:
    """Identifiers assigned by a provider on create."""
    physical_id: str
    attributes: dict = field(default_factory=dict)


class ResourceProvider:
    """Base class for resource providers."""

    resource_type = '*'

    def __init__(self, replace_properties: Optional[Iterable[str]] = None):
        self.replace_properties = set(replace_properties or ())

    def requires_replace(self, changed: Iterable[str]) -> list[str]:
        """Names of changed properties that force replacement."""
        return sorted(set(changed) & self.replace_properties)

    def describe(self, physical_id: str) -> Optional[dict]:
        raise NotImplementedError

    def create(self, logical_id: str, properties: dict) -> ProviderResult:
        raise NotImplementedError

    def update(self, physical_id: str, properties: dict, changes: list) -> dict:
        raise NotImplementedError

    def delete(self, physical_id: str) -> None:
        raise NotImplementedError


def _slug(resource_type: str) -> str:
    return re.sub(r'[^A-Za-z0-9]+', '-', resource_type).strip('-').lower() or 'resource'


class LocalProvider(ResourceProvider):
    """File-backed provider: one JSON document per resource.

    Layout: {root}/{type-slug}/{physical_id}.json
    Attributes: Arn (arn:local:<type>:<physical_id>) and Id.
    """

    def __init__(self, root: Path, resource_type: str = '*',
                 replace_properties: Optional[Iterable[str]] = None):
        super().__init__(replace_properties)
        self.root = Path(root)
        self.resource_type = resource_type

    def _dir(self) -> Path:
        return self.root / _slug(self.resource_type)

    def _path(self, physical_id: str) -> Path:
        return self._dir() / f'{physical_id}.json'

    def _attributes(self, physical_id: str) -> dict:
        return {
            'Arn': f'arn:local:{self.resource_type}:{physical_id}',
            'Id': physical_id,
        }

    def _write(self, physical_id: str, logical_id: str, properties: dict) -> None:
        path = self._path(physical_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix('.tmp')
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump({'logical_id': logical_id, 'type': self.resource_type,
                           'properties': properties}, f, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            raise ProviderError(f"Cannot write {path}: {e}", logical_id)

    def _read(self, physical_id: str) -> Optional[dict]:
        path = self._path(physical_id)
        if not path.exists():
            return None
        try:
            with open(path, encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Cannot read {path}: {e}")

    def describe(self, physical_id: str) -> Optional[dict]:
        doc = self._read(physical_id)
        return doc['properties'] if doc else None

    def create(self, logical_id: str, properties: dict) -> ProviderResult:
        physical_id = f'{logical_id.lower()}-{uuid.uuid4().hex[:12]}'
        self._write(physical_id, logical_id, properties)
        logger.debug(f"Created {self.resource_type} {physical_id}")
        return ProviderResult(physical_id, self._attributes(physical_id))

    def update(self, physical_id: str, properties: dict, changes: list) -> dict:
        doc = self._read(physical_id)
        if doc is None:
            raise ProviderError(f"{self.resource_type} {physical_id} does not exist")
        self._write(physical_id, doc.get('logical_id', physical_id), properties)
        logger.debug(f"Updated {self.resource_type} {physical_id} "
                     f"({', '.join(c.name for c in changes)})")
        return self._attributes(physical_id)

    def delete(self, physical_id: str) -> None:
        path = self._path(physical_id)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"{self.resource_type} {physical_id} already gone")
        except OSError as e:
            raise ProviderError(f"Cannot delete {path}: {e}")


class ProviderRegistry:
    """Maps resource types to providers ('*' matches any type)."""

    def __init__(self):
        self._providers: dict[str, ResourceProvider] = {}

    def register(self, resource_type: str, provider: ResourceProvider) -> None:
        self._providers[resource_type] = provider

    def get(self, resource_type: str) -> ResourceProvider:
        """Provider for a type.

        Raises:
            ProviderNotFoundError: If neither the type nor '*' is registered
        """
        if resource_type in self._providers:
            return self._providers[resource_type]
        if '*' in self._providers:
            return self._providers['*']
        raise ProviderNotFoundError(resource_type)

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._providers or '*' in self._providers


PROVIDER_KINDS = ('local',)


def build_registry(config, resource_types: Iterable[str]) -> ProviderRegistry:
    """Create providers for the given types from an EngineConfig.

    Raises:
        ConfigError: If a provider kind is unknown
    """
    registry = ProviderRegistry()
    for resource_type in sorted(set(resource_types)):
        settings = config.provider_settings(resource_type)
        if settings.kind not in PROVIDER_KINDS:
            raise ConfigError(
                f"Unknown provider kind '{settings.kind}' for {resource_type}. "
                f"Valid: {', '.join(PROVIDER_KINDS)}"
            )
        root = settings.root or (config.state_dir / 'resources')
        registry.register(resource_type, LocalProvider(
            root, resource_type, settings.replace_properties))
    return registry
