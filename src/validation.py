"""Parameter and template validation.

Parameter validation runs before graph construction and fails fast with
ParameterValidationError naming the parameter and the violated constraint.

Template linting (validate_template) collects every problem it can find
without evaluating conditions, so `stack validate` reports all of them at
once.
"""

import logging
import re
from typing import Any, Optional

from errors import ParameterValidationError
from resolver.base import NO_VALUE_REFS, collect_references
from template import ParameterDecl, Template

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Parameter validation
# -----------------------------------------------------------------------------

def _coerce_number(decl: ParameterDecl, value: Any) -> float | int:
    """Convert a Number parameter value, keeping integers integral."""
    if isinstance(value, bool):
        raise ParameterValidationError(decl.name, 'Type', f"expected Number, got {value!r}")
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ParameterValidationError(decl.name, 'Type', f"expected Number, got {value!r}")
    return int(number) if number.is_integer() else number


def _violation(decl: ParameterDecl, constraint: str, detail: str) -> ParameterValidationError:
    if decl.constraint_description:
        detail = f"{detail} ({decl.constraint_description})"
    return ParameterValidationError(decl.name, constraint, detail)


def validate_parameter(decl: ParameterDecl, value: Any) -> Any:
    """Check one value against its declaration and return the typed value.

    Raises:
        ParameterValidationError: On the first violated constraint
    """
    if decl.type == 'Number':
        value = _coerce_number(decl, value)
    elif not isinstance(value, str):
        value = str(value)

    if decl.allowed_values is not None:
        allowed = [str(v) for v in decl.allowed_values]
        if str(value) not in allowed:
            raise _violation(
                decl, 'AllowedValues',
                f"{value!r} not in {allowed}",
            )

    if decl.type == 'Number':
        if decl.min_value is not None and value < decl.min_value:
            raise _violation(decl, 'MinValue', f"{value} < {decl.min_value}")
        if decl.max_value is not None and value > decl.max_value:
            raise _violation(decl, 'MaxValue', f"{value} > {decl.max_value}")
        return value

    if decl.min_length is not None and len(value) < decl.min_length:
        raise _violation(decl, 'MinLength', f"length {len(value)} < {decl.min_length}")
    if decl.max_length is not None and len(value) > decl.max_length:
        raise _violation(decl, 'MaxLength', f"length {len(value)} > {decl.max_length}")
    if decl.allowed_pattern is not None:
        try:
            matched = re.fullmatch(decl.allowed_pattern, value)
        except re.error as e:
            raise ParameterValidationError(
                decl.name, 'AllowedPattern', f"invalid pattern: {e}")
        if not matched:
            raise _violation(
                decl, 'AllowedPattern',
                f"{value!r} does not match {decl.allowed_pattern!r}",
            )
    return value


def validate_parameters(template: Template, values: Optional[dict] = None) -> dict[str, Any]:
    """Resolve parameter values against the template's declarations.

    Supplied values override defaults. Every declared parameter must end up
    with a value; undeclared names are rejected.

    Returns:
        Mapping of parameter name to typed, validated value

    Raises:
        ParameterValidationError: On unknown, missing or invalid parameters
    """
    values = dict(values or {})

    unknown = sorted(set(values) - set(template.parameters))
    if unknown:
        raise ParameterValidationError(
            unknown[0], 'Declared', "parameter is not declared by the template")

    resolved: dict[str, Any] = {}
    for name, decl in template.parameters.items():
        if name in values:
            raw = values[name]
        elif decl.default is not None:
            raw = decl.default
        else:
            raise ParameterValidationError(name, 'Required', "no value supplied and no default")
        resolved[name] = validate_parameter(decl, raw)
        logger.debug(f"Parameter {name}={resolved[name]!r}")

    return resolved


# -----------------------------------------------------------------------------
# Template linting
# -----------------------------------------------------------------------------

def validate_template(template: Template, pseudo_parameters: Optional[dict] = None) -> list[str]:
    """Lint a template for dangling references and unknown conditions.

    Checks every resource and output regardless of conditions:
    - Ref targets are parameters, pseudo-parameters or resources
    - GetAtt targets are resources
    - Fn::Sub placeholders name a parameter, pseudo-parameter or resource
    - DependsOn targets are resources
    - Fn::If / Condition names are declared conditions
    - Conditions do not reference resources

    Args:
        template: Parsed template
        pseudo_parameters: Names available to Ref besides parameters

    Returns:
        List of error messages (empty = valid)
    """
    errors: list[str] = []
    pseudo = set(pseudo_parameters or {}) | NO_VALUE_REFS
    params = set(template.parameters)
    resources = set(template.resources)
    conditions = set(template.conditions)

    def _check(owner: str, tree: Any, allow_resources: bool) -> None:
        refs = collect_references(tree)
        for name in sorted(refs.refs):
            if name in params or name in pseudo:
                continue
            if allow_resources and name in resources:
                continue
            errors.append(f"{owner} references unknown name '{name}'")
        for name in sorted(refs.attributes):
            if not allow_resources or name not in resources:
                errors.append(f"{owner} references attribute of unknown resource '{name}'")
        for name in sorted(refs.conditions):
            if name not in conditions:
                errors.append(f"{owner} references unknown condition '{name}'")
        for name in sorted(refs.placeholders):
            if '.' in name:
                known = allow_resources and name.split('.', 1)[0] in resources
            else:
                known = name in params or name in pseudo or (allow_resources and name in resources)
            if not known:
                errors.append(f"{owner} uses unknown placeholder '${{{name}}}'")

    for name, expr in template.conditions.items():
        _check(f"Condition '{name}'", expr, allow_resources=False)

    for lid, res in template.resources.items():
        _check(f"Resource '{lid}'", res.properties, allow_resources=True)
        for dep in res.depends_on:
            if dep not in resources:
                errors.append(f"Resource '{lid}' DependsOn unknown resource '{dep}'")
            elif dep == lid:
                errors.append(f"Resource '{lid}' depends on itself")

    for name, out in template.outputs.items():
        _check(f"Output '{name}'", out.value, allow_resources=True)

    return errors
