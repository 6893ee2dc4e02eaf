"""Expression evaluator for template conditions and properties.

Resolves intrinsic functions into plain values:

- Ref: parameter / pseudo-parameter value, or a resource's physical id
- Fn::GetAtt: a resource attribute
- Fn::Sub: string substitution with ${Name} and ${Resource.Attribute}
- Fn::If: ternary selection on a named condition
- Fn::Equals / And / Or / Not / Condition: boolean condition logic
- Fn::Join / Fn::Select: list helpers
- Ref: AWS::NoValue: OMIT, removing the enclosing key or list item

Resource values come from a ResourceLookup. During planning, resources that
are about to be created or replaced resolve to Computed; the executor
re-resolves once they exist.

Evaluation is pure: the same parameters, conditions and lookup always yield
the same tree.
"""

import datetime
import logging
from typing import Any, Optional, Protocol

from errors import (
    CyclicConditionError,
    ExpressionError,
    UnknownConditionError,
    UnknownPlaceholderError,
    UnresolvedReferenceError,
)
from resolver.base import (
    NO_VALUE_REFS,
    OMIT,
    Computed,
    parse_sub,
    split_getatt,
    split_sub_args,
)

logger = logging.getLogger(__name__)


class ResourceLookup(Protocol):
    """Source of resource identifiers and attributes."""

    def physical_id(self, logical_id: str) -> Any:
        """Return the physical id, or Computed if not yet known."""

    def attribute(self, logical_id: str, name: str) -> Any:
        """Return an attribute value, or Computed if not yet known."""


class _NoResources:
    """Lookup used when resource values are unavailable (e.g. validate)."""

    def physical_id(self, logical_id: str) -> Any:
        return Computed(logical_id)

    def attribute(self, logical_id: str, name: str) -> Any:
        return Computed(f'{logical_id}.{name}')


def _normalize(value: Any) -> Any:
    """Comparable form for Fn::Equals (template scalars are stringly typed)."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return value


class ExpressionEvaluator:
    """Evaluates conditions and resolves property trees for one run.

    Attributes:
        parameters: Validated parameter values
        conditions: Raw condition expressions by name
        pseudo_parameters: Extra Ref targets (e.g. AWS::Region)
        resources: Logical ids that may be referenced
    """

    def __init__(
        self,
        parameters: dict[str, Any],
        conditions: Optional[dict[str, Any]] = None,
        pseudo_parameters: Optional[dict[str, Any]] = None,
        resources: Optional[set[str]] = None,
    ):
        self.parameters = dict(parameters)
        self.conditions = dict(conditions or {})
        self.pseudo_parameters = dict(pseudo_parameters or {})
        self.resources = set(resources or ())
        self._condition_cache: dict[str, bool] = {}

    # -------------------------------------------------------------------------
    # Conditions
    # -------------------------------------------------------------------------

    def evaluate_conditions(self) -> dict[str, bool]:
        """Evaluate every declared condition (memoized)."""
        return {name: self.condition(name) for name in self.conditions}

    def condition(self, name: str) -> bool:
        """Evaluate a named condition.

        Raises:
            UnknownConditionError: If the condition is not declared
            CyclicConditionError: If evaluation recurses into itself
        """
        return self._condition(name, [])

    def _condition(self, name: str, chain: list[str]) -> bool:
        if name in self._condition_cache:
            return self._condition_cache[name]
        if name not in self.conditions:
            raise UnknownConditionError(name)
        if name in chain:
            raise CyclicConditionError(chain[chain.index(name):] + [name])

        result = self._bool_expr(self.conditions[name], chain + [name], name)
        self._condition_cache[name] = result
        logger.debug(f"Condition {name} = {result}")
        return result

    def _bool_expr(self, expr: Any, chain: list[str], owner: str) -> bool:
        if isinstance(expr, bool):
            return expr
        if not isinstance(expr, dict) or len(expr) != 1:
            raise ExpressionError(f"Condition '{owner}' must be a single intrinsic function")

        key, args = next(iter(expr.items()))
        if key == 'Condition':
            if not isinstance(args, str):
                raise ExpressionError(f"Condition reference in '{owner}' must be a name")
            return self._condition(args, chain)
        if key == 'Fn::Equals':
            if not isinstance(args, list) or len(args) != 2:
                raise ExpressionError(f"Fn::Equals in '{owner}' expects two values")
            left = self._resolve(args[0], _NoResources(), owner, allow_resources=False)
            right = self._resolve(args[1], _NoResources(), owner, allow_resources=False)
            return _normalize(left) == _normalize(right)
        if key == 'Fn::Not':
            if not isinstance(args, list) or len(args) != 1:
                raise ExpressionError(f"Fn::Not in '{owner}' expects one condition")
            return not self._bool_expr(args[0], chain, owner)
        if key in ('Fn::And', 'Fn::Or'):
            if not isinstance(args, list) or len(args) < 2:
                raise ExpressionError(f"{key} in '{owner}' expects at least two conditions")
            results = [self._bool_expr(a, chain, owner) for a in args]
            return all(results) if key == 'Fn::And' else any(results)

        raise ExpressionError(f"Unsupported function '{key}' in condition '{owner}'")

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    def resolve(self, tree: Any, lookup: Optional[ResourceLookup] = None,
                source: Optional[str] = None) -> Any:
        """Resolve a property tree.

        Returns the resolved tree with OMIT values removed from mappings and
        lists. If the whole tree resolves to OMIT, OMIT is returned.
        """
        return self._resolve(tree, lookup or _NoResources(), source, allow_resources=True)

    def resolve_properties(self, properties: dict, lookup: Optional[ResourceLookup] = None,
                           source: Optional[str] = None) -> dict:
        """Resolve a resource's Properties mapping into a plain dict."""
        resolved = self.resolve(properties, lookup, source)
        if resolved is OMIT:
            return {}
        if not isinstance(resolved, dict):
            raise ExpressionError(f"Properties of '{source}' must resolve to a mapping")
        return resolved

    def _resolve(self, node: Any, lookup: ResourceLookup, source: Optional[str],
                 allow_resources: bool) -> Any:
        if isinstance(node, list):
            items = [self._resolve(v, lookup, source, allow_resources) for v in node]
            return [v for v in items if v is not OMIT]

        if isinstance(node, dict):
            if len(node) == 1:
                key, args = next(iter(node.items()))
                handler = self._FUNCTIONS.get(key)
                if handler is not None:
                    return handler(self, args, lookup, source, allow_resources)
            out = {}
            for k, v in node.items():
                value = self._resolve(v, lookup, source, allow_resources)
                if value is not OMIT:
                    out[str(k)] = value
            return out

        if isinstance(node, (datetime.date, datetime.datetime)):
            # YAML turns unquoted dates (e.g. policy versions) into date objects
            return node.isoformat()

        return node

    def _ref(self, name: Any, lookup: ResourceLookup, source: Optional[str],
             allow_resources: bool) -> Any:
        if not isinstance(name, str):
            raise ExpressionError(f"Ref in '{source}' must be a name")
        if name in NO_VALUE_REFS:
            return OMIT
        if name in self.parameters:
            return self.parameters[name]
        if name in self.pseudo_parameters:
            return self.pseudo_parameters[name]
        if allow_resources and name in self.resources:
            return lookup.physical_id(name)
        raise UnresolvedReferenceError(name, source)

    def _fn_ref(self, args, lookup, source, allow_resources):
        return self._ref(args, lookup, source, allow_resources)

    def _fn_getatt(self, args, lookup, source, allow_resources):
        try:
            logical_id, attribute = split_getatt(args)
        except ValueError as e:
            raise ExpressionError(f"{e} (in {source})")
        if not allow_resources or logical_id not in self.resources:
            raise UnresolvedReferenceError(logical_id, source)
        return lookup.attribute(logical_id, attribute)

    def _fn_if(self, args, lookup, source, allow_resources):
        if not isinstance(args, list) or len(args) != 3 or not isinstance(args[0], str):
            raise ExpressionError(f"Fn::If in '{source}' expects [condition, then, else]")
        branch = args[1] if self.condition(args[0]) else args[2]
        return self._resolve(branch, lookup, source, allow_resources)

    def _fn_equals(self, args, lookup, source, allow_resources):
        if not isinstance(args, list) or len(args) != 2:
            raise ExpressionError(f"Fn::Equals in '{source}' expects two values")
        left, right = (self._resolve(a, lookup, source, allow_resources) for a in args)
        if isinstance(left, Computed):
            return left
        if isinstance(right, Computed):
            return right
        return _normalize(left) == _normalize(right)

    def _fn_and(self, args, lookup, source, allow_resources):
        return self._bool_expr({'Fn::And': args}, [], source or 'property')

    def _fn_or(self, args, lookup, source, allow_resources):
        return self._bool_expr({'Fn::Or': args}, [], source or 'property')

    def _fn_not(self, args, lookup, source, allow_resources):
        return self._bool_expr({'Fn::Not': args}, [], source or 'property')

    def _fn_sub(self, args, lookup, source, allow_resources):
        try:
            text, raw_vars = split_sub_args(args)
        except ValueError as e:
            raise ExpressionError(f"{e} (in {source})")
        local_vars = {
            k: self._resolve(v, lookup, source, allow_resources)
            for k, v in raw_vars.items()
        }

        chunks: list[str] = []
        for chunk, is_placeholder in parse_sub(text):
            if not is_placeholder:
                chunks.append(chunk)
                continue
            value = self._sub_value(chunk, local_vars, lookup, source, allow_resources)
            if isinstance(value, Computed):
                return value
            chunks.append(str(_normalize(value)))
        return ''.join(chunks)

    def _sub_value(self, name: str, local_vars: dict, lookup: ResourceLookup,
                   source: Optional[str], allow_resources: bool) -> Any:
        if name in local_vars:
            return local_vars[name]
        if '.' in name:
            logical_id, attribute = name.split('.', 1)
            if allow_resources and logical_id in self.resources:
                return lookup.attribute(logical_id, attribute)
            raise UnknownPlaceholderError(name, source)
        if name in self.parameters:
            return self.parameters[name]
        if name in self.pseudo_parameters:
            return self.pseudo_parameters[name]
        if allow_resources and name in self.resources:
            return lookup.physical_id(name)
        raise UnknownPlaceholderError(name, source)

    def _fn_join(self, args, lookup, source, allow_resources):
        if not isinstance(args, list) or len(args) != 2 or not isinstance(args[0], str):
            raise ExpressionError(f"Fn::Join in '{source}' expects [delimiter, [values]]")
        values = self._resolve(args[1], lookup, source, allow_resources)
        if not isinstance(values, list):
            raise ExpressionError(f"Fn::Join in '{source}' expects a list of values")
        for v in values:
            if isinstance(v, Computed):
                return v
        return args[0].join(str(_normalize(v)) for v in values)

    def _fn_select(self, args, lookup, source, allow_resources):
        if not isinstance(args, list) or len(args) != 2:
            raise ExpressionError(f"Fn::Select in '{source}' expects [index, [values]]")
        index = self._resolve(args[0], lookup, source, allow_resources)
        values = self._resolve(args[1], lookup, source, allow_resources)
        if isinstance(values, Computed):
            return values
        try:
            return values[int(index)]
        except (TypeError, ValueError, IndexError):
            raise ExpressionError(f"Fn::Select index {index!r} out of range (in {source})")

    _FUNCTIONS = {
        'Ref': _fn_ref,
        'Fn::GetAtt': _fn_getatt,
        'Fn::If': _fn_if,
        'Fn::Equals': _fn_equals,
        'Fn::Sub': _fn_sub,
        'Fn::Join': _fn_join,
        'Fn::Select': _fn_select,
        'Fn::And': _fn_and,
        'Fn::Or': _fn_or,
        'Fn::Not': _fn_not,
    }
