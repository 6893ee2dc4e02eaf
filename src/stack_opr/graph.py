"""Graph module for template-based provisioning.

Builds a dependency graph from a Template's resources and computes
traversal orderings for create (dependencies first) and destroy
(dependents first).

Edges come from Ref, Fn::GetAtt, ${Res} / ${Res.Attr} placeholders and
DependsOn. Conditions are evaluated first, so resources gated off by a
false condition are not in the graph and references inside untaken
Fn::If branches do not create edges.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from errors import CyclicDependencyError, UnknownPlaceholderError, UnresolvedReferenceError
from resolver.base import NO_VALUE_REFS, collect_references
from resolver.evaluator import ExpressionEvaluator
from template import ResourceDecl, Template
from validation import validate_parameters

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        decl: The underlying ResourceDecl
        index: Declaration position (ordering tie-breaker)
        dependencies: Nodes this resource needs first
        dependents: Nodes that need this resource
    """
    decl: ResourceDecl
    index: int = 0
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)

    @property
    def logical_id(self) -> str:
        return self.decl.logical_id

    @property
    def type(self) -> str:
        return self.decl.type

    @property
    def dependency_ids(self) -> list[str]:
        return [n.logical_id for n in self.dependencies]

    def __repr__(self) -> str:
        return f"GraphNode({self.logical_id}, type={self.type}, deps={self.dependency_ids})"


class ResourceGraph:
    """Dependency-ordered resource graph for one run.

    Construction validates parameters, evaluates conditions and sorts the
    included resources topologically. Either the full graph is built or an
    error is raised; no partial graph is ever returned.
    """

    def __init__(
        self,
        template: Template,
        parameters: Optional[dict[str, Any]] = None,
        pseudo_parameters: Optional[dict[str, Any]] = None,
    ):
        """Build the graph.

        Args:
            template: Parsed template
            parameters: Caller-supplied parameter values (defaults fill the rest)
            pseudo_parameters: Extra Ref targets such as AWS::Region

        Raises:
            ParameterValidationError: If a parameter violates a constraint
            ResolutionError: On unresolved references or condition errors
            CyclicDependencyError: If resources reference each other in a cycle
        """
        self.template = template
        self.parameters = validate_parameters(template, parameters)
        self.pseudo_parameters = dict(pseudo_parameters or {})

        self.evaluator = ExpressionEvaluator(
            self.parameters, template.conditions, self.pseudo_parameters)
        self.condition_values = self.evaluator.evaluate_conditions()

        included = [
            decl for decl in template.resources.values()
            if decl.condition is None or self.condition_values[decl.condition]
        ]
        excluded = set(template.resources) - {d.logical_id for d in included}
        for lid in sorted(excluded):
            logger.debug(f"Resource {lid} excluded by condition")

        # Only included resources may be referenced from properties
        self.evaluator.resources = {d.logical_id for d in included}

        self._nodes: dict[str, GraphNode] = {}
        self._order: list[GraphNode] = []
        self._build(included)

    def _build(self, included: list[ResourceDecl]) -> None:
        nodes = {decl.logical_id: GraphNode(decl=decl, index=i)
                 for i, decl in enumerate(included)}

        for node in nodes.values():
            for dep_id in sorted(self._dependency_ids(node.decl, nodes)):
                dep = nodes[dep_id]
                node.dependencies.append(dep)
                dep.dependents.append(node)

        self._order = _topological_sort(list(nodes.values()))
        self._nodes = nodes

    def _dependency_ids(self, decl: ResourceDecl, nodes: dict[str, GraphNode]) -> set[str]:
        """Resource ids a declaration depends on, checking every reference."""
        refs = collect_references(decl.properties, self.condition_values)
        known_values = set(self.parameters) | set(self.pseudo_parameters) | NO_VALUE_REFS

        deps: set[str] = set()
        for name in refs.refs:
            if name in nodes:
                deps.add(name)
            elif name not in known_values:
                raise UnresolvedReferenceError(name, decl.logical_id)
        for name in refs.attributes | set(decl.depends_on):
            if name not in nodes:
                raise UnresolvedReferenceError(name, decl.logical_id)
            deps.add(name)
        for name in refs.placeholders:
            target = name.split('.', 1)[0] if '.' in name else name
            if target in nodes:
                deps.add(target)
            elif '.' in name or name not in known_values:
                raise UnknownPlaceholderError(name, decl.logical_id)
        if decl.logical_id in deps:
            raise CyclicDependencyError([decl.logical_id])
        return deps

    @property
    def nodes(self) -> dict[str, GraphNode]:
        return dict(self._nodes)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, logical_id: str) -> GraphNode:
        """Get a GraphNode by logical id.

        Raises:
            KeyError: If the resource is not in the graph
        """
        return self._nodes[logical_id]

    def create_order(self) -> list[GraphNode]:
        """Nodes with every dependency before its dependents.

        Ties are broken by declaration order, so the order is stable.
        """
        return list(self._order)


def _topological_sort(nodes: list[GraphNode]) -> list[GraphNode]:
    """Kahn's algorithm with a declaration-order heap for determinism.

    Raises:
        CyclicDependencyError: Listing the resources that sit on cycles
    """
    indegree = {n.logical_id: len(n.dependencies) for n in nodes}
    ready = [(n.index, n.logical_id, n) for n in nodes if indegree[n.logical_id] == 0]
    heapq.heapify(ready)

    ordered: list[GraphNode] = []
    while ready:
        _, _, node = heapq.heappop(ready)
        ordered.append(node)
        for dependent in node.dependents:
            indegree[dependent.logical_id] -= 1
            if indegree[dependent.logical_id] == 0:
                heapq.heappush(ready, (dependent.index, dependent.logical_id, dependent))

    if len(ordered) == len(nodes):
        return ordered

    # Leftovers include nodes downstream of a cycle; peel those off so the
    # error names only cycle members.
    remaining = {n.logical_id: n for n in nodes if indegree[n.logical_id] > 0}
    changed = True
    while changed:
        changed = False
        for lid, node in list(remaining.items()):
            if not any(d.logical_id in remaining for d in node.dependents):
                del remaining[lid]
                changed = True
    raise CyclicDependencyError(list(remaining))
