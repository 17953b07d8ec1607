"""
flowrun - turn authored agent flows into resumable, step-executed conversations.

The main entry points:
- GraphConverter: authored FlowSpec -> ExecutableGraph
- StepExecutor: run exactly one node turn of a conversation
- ConversationRunner: multi-step turns, tool approval and debugging
"""

from flowrun.errors import FlowError, Result
from flowrun.graph.converter import ExecutableGraph, GraphConverter
from flowrun.graph.flow import FlowEdge, FlowSpec, NodeSpec
from flowrun.runtime.conversation_runner import ConversationRunner
from flowrun.runtime.step_executor import StepExecutor
from flowrun.schemas.conversation_state import ConversationState, ExecutionStatus

__version__ = "0.1.0"

__all__ = [
    "ConversationRunner",
    "ConversationState",
    "ExecutableGraph",
    "ExecutionStatus",
    "FlowEdge",
    "FlowError",
    "FlowSpec",
    "GraphConverter",
    "NodeSpec",
    "Result",
    "StepExecutor",
]
