"""Flow graph: authored model, converter and node runtime."""

from flowrun.graph.converter import ExecutableGraph, GraphConverter, RuntimeNode, Successor
from flowrun.graph.flow import (
    EdgeKind,
    FlowEdge,
    FlowSpec,
    NodeKind,
    NodeSpec,
    ProcessProperties,
    StartProperties,
    ToolProviderProperties,
    ToolProviderRef,
)

__all__ = [
    "EdgeKind",
    "ExecutableGraph",
    "FlowEdge",
    "FlowSpec",
    "GraphConverter",
    "NodeKind",
    "NodeSpec",
    "ProcessProperties",
    "RuntimeNode",
    "StartProperties",
    "Successor",
    "ToolProviderProperties",
    "ToolProviderRef",
]
