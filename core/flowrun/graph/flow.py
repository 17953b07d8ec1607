"""
Flow Model - the authored graph before conversion.

A flow is a directed graph of typed nodes joined by two kinds of edges:

- routing: source -> target traversal, labelled by an action (defaults to the
  edge id). Node finalize phases return this label to pick a successor.
- tool_binding: joins a Process node to a ToolProvider node. Never traversed;
  the converter copies the provider binding into the Process node instead.

These models carry no behavior. See ``flowrun.graph.converter`` for the
executable form.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NodeKind(StrEnum):
    START = "start"
    PROCESS = "process"
    TOOL_PROVIDER = "tool_provider"
    FINISH = "finish"


class EdgeKind(StrEnum):
    ROUTING = "routing"
    TOOL_BINDING = "tool_binding"


# Property bags accept both snake_case and the camelCase names authored flows use
_PROPERTY_CONFIG = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)


class ToolProviderRef(BaseModel):
    """A ToolProvider node's binding as copied into a Process node."""

    model_config = _PROPERTY_CONFIG

    id: str
    bound_provider: str = ""
    enabled_tools: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class StartProperties(BaseModel):
    model_config = _PROPERTY_CONFIG

    prompt_template: str = ""


class ProcessProperties(BaseModel):
    model_config = _PROPERTY_CONFIG

    prompt_template: str = ""
    bound_model: str = ""
    allowed_tools: list[str] = Field(default_factory=list)
    tool_provider_refs: list[ToolProviderRef] = Field(default_factory=list)
    exclude_model_prompt: bool = False
    exclude_start_prompt: bool = False
    require_approval: bool = False


class ToolProviderProperties(BaseModel):
    model_config = _PROPERTY_CONFIG

    bound_provider: str = ""
    enabled_tools: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class FinishProperties(BaseModel):
    model_config = _PROPERTY_CONFIG


PROPERTY_MODELS: dict[NodeKind, type[BaseModel]] = {
    NodeKind.START: StartProperties,
    NodeKind.PROCESS: ProcessProperties,
    NodeKind.TOOL_PROVIDER: ToolProviderProperties,
    NodeKind.FINISH: FinishProperties,
}


class NodeSpec(BaseModel):
    """
    An authored node.

    ``kind`` stays a plain string so an unknown kind survives parsing and is
    reported by the converter.
    """

    id: str
    label: str = ""
    kind: str = Field(description="One of NodeKind")
    properties: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def name(self) -> str:
        return self.label or self.id


class FlowEdge(BaseModel):
    """
    An authored edge.

    Examples:
        # Plain routing; the action label is the edge id
        FlowEdge(id="start-to-agent", source="start", target="agent")

        # Bind a tool provider to a Process node
        FlowEdge(id="e-tools", source="agent", target="search",
                 kind=EdgeKind.TOOL_BINDING)
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    kind: EdgeKind = EdgeKind.ROUTING
    action: str | None = Field(default=None, description="Routing label, defaults to the id")

    # Higher priority successors are selected first when a node has several
    priority: int = 0
    description: str = ""

    model_config = {"extra": "allow"}

    @property
    def action_label(self) -> str:
        return self.action or self.id


class FlowSpec(BaseModel):
    """A complete authored flow."""

    id: str
    name: str = ""
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def routing_edges(self) -> list[FlowEdge]:
        return [e for e in self.edges if e.kind == EdgeKind.ROUTING]

    def binding_edges(self) -> list[FlowEdge]:
        return [e for e in self.edges if e.kind == EdgeKind.TOOL_BINDING]
