"""
Build execution plans for validated graphs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .constants import RunScope
from .errors import CycleError, InvalidScopeError
from .schema import DataType, Edge, GraphValidator, Node, WorkflowGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedEdge:
    edge_id: str
    source_id: str
    target_id: str
    source_handle: str
    target_handle: str
    data_type: DataType


@dataclass
class ExecutionPlan:
    scope: RunScope
    levels: List[List[str]]
    nodes: Dict[str, Node]
    upstream: Dict[str, List[PlannedEdge]]
    downstream: Dict[str, List[PlannedEdge]]
    terminal_nodes: Set[str]

    @property
    def node_ids(self) -> List[str]:
        return [node_id for level in self.levels for node_id in level]

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def level_of(self, node_id: str) -> int:
        for index, level in enumerate(self.levels):
            if node_id in level:
                return index
        raise KeyError(node_id)

    def dependencies(self, node_id: str) -> List[str]:
        return sorted({edge.source_id for edge in self.upstream.get(node_id, [])})


class GraphCompiler:
    """Turns a raw or parsed graph into a levelled execution plan."""

    def __init__(self, validator: Optional[GraphValidator] = None):
        self.validator = validator or GraphValidator()

    def compile(
        self,
        graph: Union[Mapping[str, Any], WorkflowGraph],
        scope: Union[RunScope, str] = RunScope.FULL,
        selection: Optional[Iterable[str]] = None,
    ) -> ExecutionPlan:
        validated = self.validator.validate(graph)
        scope = self._coerce_scope(scope)
        included = self._select_nodes(validated, scope, selection)

        edges = [
            self._plan_edge(edge, validated)
            for edge in validated.edges
            if edge.source in included and edge.target in included
        ]
        upstream: Dict[str, List[PlannedEdge]] = {node_id: [] for node_id in included}
        downstream: Dict[str, List[PlannedEdge]] = {node_id: [] for node_id in included}
        for edge in edges:
            downstream[edge.source_id].append(edge)
            upstream[edge.target_id].append(edge)

        levels = self._level(included, upstream, downstream)
        terminal_nodes = {node_id for node_id in included if not downstream[node_id]}

        plan = ExecutionPlan(
            scope=scope,
            levels=levels,
            nodes={node_id: validated.nodes[node_id] for node_id in included},
            upstream=upstream,
            downstream=downstream,
            terminal_nodes=terminal_nodes,
        )
        logger.debug(
            "Compiled %s plan: %d nodes in %d levels, %d terminal",
            scope.value, plan.node_count, len(levels), len(terminal_nodes)
        )
        return plan

    @staticmethod
    def _coerce_scope(scope: Union[RunScope, str]) -> RunScope:
        try:
            return RunScope(scope)
        except ValueError:
            raise InvalidScopeError(f"Unknown run scope: {scope}")

    @staticmethod
    def _select_nodes(
        graph: WorkflowGraph,
        scope: RunScope,
        selection: Optional[Iterable[str]],
    ) -> Set[str]:
        if scope is RunScope.FULL:
            return set(graph.nodes)

        selected = {str(node_id) for node_id in (selection or [])}
        if not selected:
            raise InvalidScopeError(f"Scope '{scope.value}' requires a node selection")
        unknown = selected - set(graph.nodes)
        if unknown:
            raise InvalidScopeError(f"Selection references unknown nodes: {sorted(unknown)}")

        if scope is RunScope.SINGLE:
            if len(selected) != 1:
                raise InvalidScopeError("Scope 'single' takes exactly one node")
            return selected

        # Selected nodes need every transitive ancestor to resolve their inputs
        included: Set[str] = set()
        queue = list(selected)
        while queue:
            node_id = queue.pop()
            if node_id in included:
                continue
            included.add(node_id)
            for edge in graph.incoming(node_id):
                queue.append(edge.source)
        return included

    @staticmethod
    def _plan_edge(edge: Edge, graph: WorkflowGraph) -> PlannedEdge:
        source = graph.nodes[edge.source]
        return PlannedEdge(
            edge_id=edge.id,
            source_id=edge.source,
            target_id=edge.target,
            source_handle=edge.source_handle,
            target_handle=edge.target_handle,
            data_type=source.schema.outputs[edge.source_handle].data_type,
        )

    @staticmethod
    def _level(
        included: Set[str],
        upstream: Dict[str, List[PlannedEdge]],
        downstream: Dict[str, List[PlannedEdge]],
    ) -> List[List[str]]:
        # Kahn leveling over distinct dependencies; parallel edges count once
        remaining = {
            node_id: len({edge.source_id for edge in upstream[node_id]})
            for node_id in included
        }
        levels: List[List[str]] = []
        current = sorted(node_id for node_id, degree in remaining.items() if degree == 0)

        while current:
            levels.append(current)
            for node_id in current:
                del remaining[node_id]
            ready = set()
            for node_id in current:
                for dependent in {edge.target_id for edge in downstream[node_id]}:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        ready.add(dependent)
            current = sorted(ready)

        if remaining:
            raise CycleError(remaining)
        return levels


def compile_graph(
    graph: Union[Mapping[str, Any], WorkflowGraph],
    scope: Union[RunScope, str] = RunScope.FULL,
    selection: Optional[Iterable[str]] = None,
) -> ExecutionPlan:
    return GraphCompiler().compile(graph, scope, selection)
