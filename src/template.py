"""Template loading for declarative stacks.

Templates declare parameters, conditions, resources and outputs. Property
values may contain intrinsic expressions (Ref, Fn::If, Fn::Sub, ...) that
are resolved by resolver.evaluator.

Accepted top-level sections:
  Parameters, Conditions, Resources (required), Outputs, Description, Metadata
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import TemplateError

logger = logging.getLogger(__name__)

PARAMETER_TYPES = ('String', 'Number')
DELETION_POLICIES = ('Delete', 'Retain')

KNOWN_SECTIONS = {
    'AWSTemplateFormatVersion', 'Description', 'Metadata',
    'Parameters', 'Conditions', 'Resources', 'Outputs',
}


@dataclass
class ParameterDecl:
    """A declared template parameter.

    Attributes:
        name: Parameter name (Ref target)
        type: 'String' or 'Number'
        default: Value used when the caller supplies none
        allowed_values: Enumeration constraint
        allowed_pattern: Regex the whole value must match
        min_length/max_length: String length bounds
        min_value/max_value: Numeric bounds
        constraint_description: Human hint shown on violation
        description: Free text
    """
    name: str
    type: str = 'String'
    default: Any = None
    allowed_values: Optional[list] = None
    allowed_pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    constraint_description: str = ''
    description: str = ''

    @property
    def required(self) -> bool:
        return self.default is None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'ParameterDecl':
        """Create ParameterDecl from a template Parameters entry."""
        if not isinstance(data, dict):
            raise TemplateError(f"Parameter '{name}' must be a mapping")
        ptype = data.get('Type', 'String')
        if ptype not in PARAMETER_TYPES:
            raise TemplateError(
                f"Parameter '{name}' has unsupported type '{ptype}'. "
                f"Supported: {', '.join(PARAMETER_TYPES)}"
            )
        return cls(
            name=name,
            type=ptype,
            default=data.get('Default'),
            allowed_values=data.get('AllowedValues'),
            allowed_pattern=data.get('AllowedPattern'),
            min_length=data.get('MinLength'),
            max_length=data.get('MaxLength'),
            min_value=data.get('MinValue'),
            max_value=data.get('MaxValue'),
            constraint_description=(data.get('ConstraintDescription') or '').strip(),
            description=(data.get('Description') or '').strip(),
        )


@dataclass
class ResourceDecl:
    """A declared resource.

    Attributes:
        logical_id: Stable template name
        type: Resource type routed to a provider
        properties: Raw property tree (may contain expressions)
        condition: Condition gating inclusion (None = always)
        depends_on: Explicit extra dependencies
        deletion_policy: 'Delete' or 'Retain' when removed from the template
        update_replace_policy: 'Delete' or 'Retain' for the old instance on replace
    """
    logical_id: str
    type: str
    properties: dict = field(default_factory=dict)
    condition: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'
    update_replace_policy: str = 'Delete'

    @property
    def retain_on_delete(self) -> bool:
        return self.deletion_policy == 'Retain'

    @property
    def retain_on_replace(self) -> bool:
        return self.update_replace_policy == 'Retain'

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> 'ResourceDecl':
        """Create ResourceDecl from a template Resources entry."""
        if not isinstance(data, dict):
            raise TemplateError(f"Resource '{logical_id}' must be a mapping")
        if 'Type' not in data:
            raise TemplateError(f"Resource '{logical_id}' missing required field: Type")

        depends_on = data.get('DependsOn', [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        for key in ('DeletionPolicy', 'UpdateReplacePolicy'):
            value = data.get(key, 'Delete')
            if value not in DELETION_POLICIES:
                raise TemplateError(
                    f"Resource '{logical_id}' has invalid {key} '{value}'. "
                    f"Valid: {', '.join(DELETION_POLICIES)}"
                )

        properties = data.get('Properties') or {}
        if not isinstance(properties, dict):
            raise TemplateError(f"Resource '{logical_id}' Properties must be a mapping")

        return cls(
            logical_id=logical_id,
            type=data['Type'],
            properties=properties,
            condition=data.get('Condition'),
            depends_on=list(depends_on),
            deletion_policy=data.get('DeletionPolicy', 'Delete'),
            update_replace_policy=data.get('UpdateReplacePolicy', 'Delete'),
        )


@dataclass
class OutputDecl:
    """A declared stack output."""
    name: str
    value: Any
    description: str = ''
    condition: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'OutputDecl':
        if not isinstance(data, dict) or 'Value' not in data:
            raise TemplateError(f"Output '{name}' missing required field: Value")
        return cls(
            name=name,
            value=data['Value'],
            description=(data.get('Description') or '').strip(),
            condition=data.get('Condition'),
        )


@dataclass
class Template:
    """Parsed declarative stack template.

    Declaration order of parameters, conditions and resources is kept;
    it is used as the tie-breaker for deterministic ordering.
    """
    parameters: dict[str, ParameterDecl] = field(default_factory=dict)
    conditions: dict[str, Any] = field(default_factory=dict)
    resources: dict[str, ResourceDecl] = field(default_factory=dict)
    outputs: dict[str, OutputDecl] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Template':
        """Create Template from dictionary.

        Raises:
            TemplateError: If template structure is invalid
        """
        if not isinstance(data, dict):
            raise TemplateError("Template must be a mapping")

        unknown = set(data) - KNOWN_SECTIONS
        if unknown:
            raise TemplateError(f"Unknown template section(s): {', '.join(sorted(unknown))}")

        if 'Resources' not in data:
            raise TemplateError("Template missing required section: Resources")
        if not data['Resources']:
            raise TemplateError("Template must declare at least one resource")

        parameters = {
            name: ParameterDecl.from_dict(name, decl)
            for name, decl in (data.get('Parameters') or {}).items()
        }
        resources = {
            lid: ResourceDecl.from_dict(lid, decl)
            for lid, decl in data['Resources'].items()
        }
        outputs = {
            name: OutputDecl.from_dict(name, decl)
            for name, decl in (data.get('Outputs') or {}).items()
        }
        conditions = dict(data.get('Conditions') or {})

        clashes = set(parameters) & set(resources)
        if clashes:
            raise TemplateError(
                f"Names used as both parameter and resource: {', '.join(sorted(clashes))}"
            )

        for lid, res in resources.items():
            if res.condition is not None and res.condition not in conditions:
                raise TemplateError(
                    f"Resource '{lid}' references unknown condition '{res.condition}'"
                )
        for name, out in outputs.items():
            if out.condition is not None and out.condition not in conditions:
                raise TemplateError(
                    f"Output '{name}' references unknown condition '{out.condition}'"
                )

        return cls(
            parameters=parameters,
            conditions=conditions,
            resources=resources,
            outputs=outputs,
            description=(data.get('Description') or '').strip(),
            source_path=source_path,
            raw=data,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Template':
        """Create Template from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise TemplateError(f"Invalid template JSON: {e}")
        return cls.from_dict(data)


def load_template(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Template:
    """Load a template from a file (YAML or JSON) or an inline JSON string.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Template file

    Raises:
        TemplateError: If no source given, file missing or invalid
    """
    if json_str:
        return Template.from_json(json_str)
    if not file_path:
        raise TemplateError("No template specified")

    path = Path(file_path)
    if not path.exists():
        raise TemplateError(f"Template file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise TemplateError(f"Invalid YAML in template {path}: {e}")

    logger.debug(f"Loaded template from {path}")
    return Template.from_dict(data, source_path=path)
