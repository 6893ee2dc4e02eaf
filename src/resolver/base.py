"""Shared expression primitives.

This module provides the pieces both the evaluator and the static template
checks need:
- OMIT, the tagged "drop this property" value
- Computed, the tagged "known after apply" value
- Fn::Sub placeholder parsing
- Reference collection (Ref / GetAtt / Sub / Fn::If conditions)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

# Ref targets that produce OMIT
NO_VALUE_REFS = {'AWS::NoValue', 'NoValue'}

_PLACEHOLDER = re.compile(r'\$\{([^}]*)\}')


class _Omit:
    """Singleton marker for a property removed by Ref: AWS::NoValue."""

    _instance: Optional['_Omit'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'OMIT'

    def __bool__(self) -> bool:
        return False


OMIT = _Omit()


@dataclass(frozen=True)
class Computed:
    """Value that is only known once a dependency has been applied.

    Attributes:
        ref: What the value depends on, e.g. 'Bucket' or 'Bucket.Arn'
    """
    ref: str

    def __str__(self) -> str:
        return f'(known after apply: {self.ref})'


def contains_computed(value: Any) -> bool:
    """True if a resolved tree still holds a Computed value anywhere."""
    if isinstance(value, Computed):
        return True
    if isinstance(value, dict):
        return any(contains_computed(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_computed(v) for v in value)
    return False


def parse_sub(text: str) -> list[tuple[str, bool]]:
    """Split an Fn::Sub string into (chunk, is_placeholder) parts.

    '${!Name}' is a literal '${Name}', not a placeholder.
    """
    parts: list[tuple[str, bool]] = []
    pos = 0
    for match in _PLACEHOLDER.finditer(text):
        if match.start() > pos:
            parts.append((text[pos:match.start()], False))
        name = match.group(1).strip()
        if name.startswith('!'):
            parts.append(('${' + name[1:] + '}', False))
        else:
            parts.append((name, True))
        pos = match.end()
    if pos < len(text):
        parts.append((text[pos:], False))
    return parts


def split_sub_args(args: Any) -> tuple[str, dict]:
    """Normalize Fn::Sub arguments to (text, local variables)."""
    if isinstance(args, str):
        return args, {}
    if isinstance(args, list) and len(args) == 2 and isinstance(args[0], str) \
            and isinstance(args[1], dict):
        return args[0], args[1]
    raise ValueError("Fn::Sub expects a string or [string, {variables}]")


def split_getatt(args: Any) -> tuple[str, str]:
    """Normalize Fn::GetAtt arguments to (logical_id, attribute)."""
    if isinstance(args, str) and '.' in args:
        logical_id, attribute = args.split('.', 1)
        return logical_id, attribute
    if isinstance(args, list) and len(args) == 2 and all(isinstance(a, str) for a in args):
        return args[0], args[1]
    raise ValueError("Fn::GetAtt expects 'Resource.Attribute' or [Resource, Attribute]")


@dataclass
class References:
    """Names referenced by an expression tree.

    Attributes:
        refs: Names used via Ref (parameters, pseudo, resources)
        attributes: Resource ids used via GetAtt
        placeholders: Fn::Sub placeholders, as written ('Name' or 'Res.Attr')
        conditions: Condition names used via Fn::If / Condition
    """
    refs: set[str] = field(default_factory=set)
    attributes: set[str] = field(default_factory=set)
    placeholders: set[str] = field(default_factory=set)
    conditions: set[str] = field(default_factory=set)


def collect_references(tree: Any, condition_values: Optional[dict[str, bool]] = None) -> References:
    """Collect every name referenced in an expression tree.

    When condition_values is given, only the taken branch of each Fn::If is
    followed, so references inside untaken branches do not create edges.
    Malformed intrinsics are skipped here; the evaluator reports them.
    """
    found = References()
    _collect(tree, found, condition_values)
    return found


def _collect(node: Any, found: References, conds: Optional[dict[str, bool]]) -> None:
    if isinstance(node, list):
        for item in node:
            _collect(item, found, conds)
        return
    if not isinstance(node, dict):
        return

    if len(node) == 1:
        key, args = next(iter(node.items()))
        if key == 'Ref' and isinstance(args, str):
            if args not in NO_VALUE_REFS:
                found.refs.add(args)
            return
        if key == 'Condition' and isinstance(args, str):
            found.conditions.add(args)
            return
        if key == 'Fn::GetAtt':
            try:
                logical_id, _ = split_getatt(args)
            except ValueError:
                return
            found.attributes.add(logical_id)
            return
        if key == 'Fn::Sub':
            try:
                text, local_vars = split_sub_args(args)
            except ValueError:
                return
            for name, is_placeholder in parse_sub(text):
                if is_placeholder and name not in local_vars:
                    found.placeholders.add(name)
            _collect(list(local_vars.values()), found, conds)
            return
        if key == 'Fn::If' and isinstance(args, list) and len(args) == 3 \
                and isinstance(args[0], str):
            found.conditions.add(args[0])
            if conds is not None and args[0] in conds:
                _collect(args[1] if conds[args[0]] else args[2], found, conds)
            else:
                _collect(args[1:], found, conds)
            return

    for value in node.values():
        _collect(value, found, conds)
