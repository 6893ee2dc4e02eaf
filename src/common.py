"""Common utilities and types for plan and apply."""

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from resolver.base import Computed, contains_computed

_MISSING = object()


@dataclass
class PropertyChange:
    """One changed top-level property.

    before/after are None when the property is added/removed; `added` and
    `removed` disambiguate from properties whose value is literally null.
    """
    name: str
    before: Any = None
    after: Any = None
    added: bool = False
    removed: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name}
        if not self.added:
            d['before'] = to_jsonable(self.before)
        if not self.removed:
            d['after'] = to_jsonable(self.after)
        if self.added:
            d['added'] = True
        if self.removed:
            d['removed'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'PropertyChange':
        return cls(
            name=data['name'],
            before=data.get('before'),
            after=data.get('after'),
            added=data.get('added', False),
            removed=data.get('removed', False),
        )


def diff_properties(before: dict, after: dict) -> list[PropertyChange]:
    """Compare two property mappings by top-level key.

    A Computed value on the desired side always counts as a change, since
    the concrete value cannot be compared until apply.

    Returns:
        Changes sorted by property name (empty = identical)
    """
    changes: list[PropertyChange] = []
    for name in sorted(set(before) | set(after)):
        old = before.get(name, _MISSING)
        new = after.get(name, _MISSING)
        if old is _MISSING:
            changes.append(PropertyChange(name, after=new, added=True))
        elif new is _MISSING:
            changes.append(PropertyChange(name, before=old, removed=True))
        elif contains_computed(new) or old != new:
            changes.append(PropertyChange(name, before=old, after=new))
    return changes


def to_jsonable(value: Any) -> Any:
    """Convert a resolved tree to JSON-safe data (Computed becomes text)."""
    if isinstance(value, Computed):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def canonical_json(data: Any) -> str:
    """Stable JSON encoding (sorted keys, no whitespace) for hashing."""
    return json.dumps(to_jsonable(data), sort_keys=True, separators=(',', ':'), default=str)


def fingerprint(data: Any) -> str:
    """SHA-256 of the canonical JSON form, truncated for display."""
    return hashlib.sha256(canonical_json(data).encode('utf-8')).hexdigest()[:16]
