"""
Graph Converter - turns an authored FlowSpec into an ExecutableGraph.

The executable graph is an arena: nodes are addressed by id and successor
links are stored as ordered ``label -> target id`` entries beside the nodes,
never as object references. Cloning a graph is copying the arena.

Conversion steps:
1. One RuntimeNode per authored node, with its property bag parsed into the
   typed model for its kind.
2. Each routing edge becomes a successor entry on its source, keyed by the
   edge's action label (the edge id unless ``action`` is set).
3. Each tool-binding edge copies the ToolProvider's binding into the Process
   node's ``tool_provider_refs`` (either direction, deduplicated by id).
4. Exactly one Start node must exist.

The authored flow is never mutated.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from dataclasses import dataclass, field

from pydantic import BaseModel, ValidationError

from flowrun.errors import (
    FlowError,
    GraphError,
    GraphErrorCode,
    NodeError,
    NodeErrorCode,
    Result,
)
from flowrun.graph.flow import (
    PROPERTY_MODELS,
    FlowEdge,
    FlowSpec,
    NodeKind,
    NodeSpec,
    ProcessProperties,
    ToolProviderProperties,
    ToolProviderRef,
)

logger = logging.getLogger(__name__)


@dataclass
class Successor:
    """A routing link from a node, keyed by its action label."""

    label: str
    target_id: str
    edge_id: str
    priority: int = 0


@dataclass
class RuntimeNode:
    """A converted node: identity, kind and its typed (immutable by contract) properties."""

    id: str
    kind: NodeKind
    name: str
    properties: BaseModel


@dataclass
class ExecutableGraph:
    flow_id: str
    start_node_id: str
    nodes: dict[str, RuntimeNode] = field(default_factory=dict)
    successors: dict[str, list[Successor]] = field(default_factory=dict)

    @property
    def start_node(self) -> RuntimeNode:
        return self.nodes[self.start_node_id]

    def get_node(self, node_id: str) -> RuntimeNode | None:
        return self.nodes.get(node_id)

    def successors_of(self, node_id: str) -> list[Successor]:
        return list(self.successors.get(node_id, []))

    def successor(self, node_id: str, label: str) -> Successor | None:
        for succ in self.successors.get(node_id, []):
            if succ.label == label:
                return succ
        return None

    def select_default_successor(self, node_id: str) -> Successor | None:
        """
        Successor used when a node's finalize does not choose one by content.

        Successors are ordered by priority (highest first) then authoring
        order, so the first entry wins. Several successors on one node are
        logged since only one of them is ever taken this way.
        """
        successors = self.successors.get(node_id, [])
        if not successors:
            return None
        if len(successors) > 1:
            logger.warning(
                f"Node '{node_id}' has {len(successors)} successors; "
                f"taking '{successors[0].label}' (priority {successors[0].priority})"
            )
        return successors[0]

    def find_node(self, node_id: str) -> RuntimeNode | None:
        """Breadth-first search from the Start node along successor links."""
        visited: set[str] = set()
        queue: deque[str] = deque([self.start_node_id])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            if current == node_id:
                return self.nodes.get(current)
            for succ in self.successors.get(current, []):
                if succ.target_id not in visited:
                    queue.append(succ.target_id)
        return None

    def clone(self) -> ExecutableGraph:
        return ExecutableGraph(
            flow_id=self.flow_id,
            start_node_id=self.start_node_id,
            nodes={
                node_id: RuntimeNode(
                    id=node.id,
                    kind=node.kind,
                    name=node.name,
                    properties=node.properties.model_copy(deep=True),
                )
                for node_id, node in self.nodes.items()
            },
            successors={
                node_id: [copy.copy(s) for s in succs] for node_id, succs in self.successors.items()
            },
        )


class GraphConverter:
    """Converts authored flows into executable graphs."""

    def convert(self, flow: FlowSpec) -> Result[ExecutableGraph]:
        try:
            graph = self._convert(flow)
        except FlowError as e:
            logger.error(f"Failed to convert flow '{flow.id}': {e.message}")
            return Result.fail(e)
        logger.debug(
            f"Converted flow '{flow.id}': {len(graph.nodes)} nodes, "
            f"{sum(len(s) for s in graph.successors.values())} successor links"
        )
        return Result.ok(graph)

    def _convert(self, flow: FlowSpec) -> ExecutableGraph:
        nodes: dict[str, RuntimeNode] = {}
        for spec in flow.nodes:
            if spec.id in nodes:
                raise GraphError(
                    GraphErrorCode.DUPLICATE_NODE,
                    f"Duplicate node id: {spec.id}",
                    details={"node_id": spec.id},
                )
            nodes[spec.id] = self._build_node(spec)

        start_ids = [node.id for node in nodes.values() if node.kind == NodeKind.START]
        if not start_ids:
            raise GraphError(GraphErrorCode.NO_START_NODE, "Flow must have a start node")
        if len(start_ids) > 1:
            raise GraphError(
                GraphErrorCode.AMBIGUOUS_START_NODE,
                f"Flow has {len(start_ids)} start nodes: {', '.join(start_ids)}",
                details={"start_node_ids": start_ids},
            )

        successors: dict[str, list[Successor]] = {}
        for edge in flow.routing_edges():
            self._add_successor(successors, nodes, edge)
        for succs in successors.values():
            # Stable: equal priorities keep authoring order
            succs.sort(key=lambda s: -s.priority)

        for edge in flow.binding_edges():
            self._bind_tool_provider(nodes, edge)

        return ExecutableGraph(
            flow_id=flow.id,
            start_node_id=start_ids[0],
            nodes=nodes,
            successors=successors,
        )

    def _build_node(self, spec: NodeSpec) -> RuntimeNode:
        try:
            kind = NodeKind(spec.kind)
        except ValueError:
            raise NodeError(
                NodeErrorCode.UNKNOWN_NODE_KIND,
                f"Unknown node type: {spec.kind}",
                node_id=spec.id,
                node_kind=spec.kind,
            ) from None

        try:
            properties = PROPERTY_MODELS[kind].model_validate(copy.deepcopy(spec.properties))
        except ValidationError as e:
            raise NodeError(
                NodeErrorCode.INVALID_PROPERTY,
                f"Invalid properties on node '{spec.id}': {e.error_count()} error(s)",
                node_id=spec.id,
                node_kind=kind,
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e

        return RuntimeNode(id=spec.id, kind=kind, name=spec.name, properties=properties)

    def _add_successor(
        self,
        successors: dict[str, list[Successor]],
        nodes: dict[str, RuntimeNode],
        edge: FlowEdge,
    ) -> None:
        missing = [end for end in (edge.source, edge.target) if end not in nodes]
        if missing:
            raise GraphError(
                GraphErrorCode.DANGLING_EDGE,
                f"Edge '{edge.id}' references missing node(s): {', '.join(missing)}",
                details={"edge_id": edge.id, "missing": missing},
            )

        label = edge.action_label
        entries = successors.setdefault(edge.source, [])
        if any(s.label == label for s in entries):
            raise GraphError(
                GraphErrorCode.DUPLICATE_ACTION,
                f"Action {label} already exists on node '{edge.source}'",
                details={"edge_id": edge.id, "node_id": edge.source},
            )
        entries.append(
            Successor(
                label=label,
                target_id=edge.target,
                edge_id=edge.id,
                priority=edge.priority,
            )
        )

    def _bind_tool_provider(self, nodes: dict[str, RuntimeNode], edge: FlowEdge) -> None:
        source, target = nodes.get(edge.source), nodes.get(edge.target)
        pair = {n.kind: n for n in (source, target) if n is not None}
        process = pair.get(NodeKind.PROCESS)
        provider = pair.get(NodeKind.TOOL_PROVIDER)
        if process is None or provider is None:
            logger.warning(
                f"Tool-binding edge '{edge.id}' does not join a process node "
                f"and a tool provider node; ignoring it"
            )
            return

        process_props: ProcessProperties = process.properties  # type: ignore[assignment]
        provider_props: ToolProviderProperties = provider.properties  # type: ignore[assignment]
        refs = process_props.tool_provider_refs
        if any(ref.id == provider.id for ref in refs):
            return
        refs.append(
            ToolProviderRef(
                id=provider.id,
                bound_provider=provider_props.bound_provider,
                enabled_tools=list(provider_props.enabled_tools),
                env=dict(provider_props.env),
            )
        )
