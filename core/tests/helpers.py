"""Fakes and flow builders shared by the flowrun tests."""

from collections.abc import Awaitable, Callable
from typing import Any

from flowrun.config import RuntimeConfig
from flowrun.errors import MCPError, MCPErrorCode, Result
from flowrun.graph.flow import EdgeKind, FlowEdge, FlowSpec, NodeSpec
from flowrun.llm.mock import MockCompletionProvider
from flowrun.runner.provider_service import MCPTool, ProviderStatus, ToolProviderService
from flowrun.runner.tool_orchestrator import ToolOrchestrator
from flowrun.runtime.conversation_runner import ConversationRunner
from flowrun.runtime.step_executor import StepExecutor
from flowrun.storage.flow_store import InMemoryFlowStore
from flowrun.storage.state_store import InMemoryStateStore, StateStore


# ---- Fake tool-provider service (counts every call) ----
class FakeToolProviderService(ToolProviderService):
    def __init__(
        self,
        tools: dict[str, list[MCPTool]] | None = None,
        results: dict[tuple[str, str], Any] | None = None,
        fail_connect: set[str] | None = None,
        fail_list: set[str] | None = None,
    ):
        self.tools = tools or {}
        self.results = results or {}
        self.fail_connect = fail_connect or set()
        self.fail_list = fail_list or set()
        self.connected: set[str] = set()
        self.connect_attempts: list[str] = []
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.on_call: Callable[[str, str, dict[str, Any]], Awaitable[None]] | None = None

    async def get_status(self, provider: str) -> ProviderStatus:
        if provider in self.connected:
            return ProviderStatus.CONNECTED
        return ProviderStatus.DISCONNECTED

    async def connect(self, provider: str, env: dict[str, str] | None = None) -> Result[None]:
        self.connect_attempts.append(provider)
        if provider in self.fail_connect or provider not in self.tools:
            return Result.fail(
                MCPError(
                    MCPErrorCode.SERVER_CONNECTION_FAILED,
                    f"Cannot connect to {provider}",
                    server_name=provider,
                    operation="connect",
                )
            )
        self.connected.add(provider)
        return Result.ok()

    async def list_tools(self, provider: str) -> Result[list[MCPTool]]:
        if provider in self.fail_list:
            return Result.fail(
                MCPError(
                    MCPErrorCode.LIST_TOOLS_FAILED,
                    f"Listing failed on {provider}",
                    server_name=provider,
                    operation="list_tools",
                )
            )
        return Result.ok(list(self.tools.get(provider, [])))

    async def call_tool(self, provider: str, tool: str, arguments: dict[str, Any]) -> Result[Any]:
        self.calls.append((provider, tool, dict(arguments)))
        if self.on_call is not None:
            await self.on_call(provider, tool, arguments)
        return Result.ok(self.results.get((provider, tool), f"{tool} result"))


def make_tool(name: str, server: str, description: str = "", **properties: Any) -> MCPTool:
    return MCPTool(
        name=name,
        description=description or f"The {name} tool",
        input_schema={"type": "object", "properties": properties},
        server_name=server,
    )


# ---- Flow builders ----
def linear_flow(
    flow_id: str = "flow-1",
    process_props: dict[str, Any] | None = None,
    start_prompt: str = "You are helpful.",
    extra_nodes: list[NodeSpec] | None = None,
    extra_edges: list[FlowEdge] | None = None,
) -> FlowSpec:
    """Start -> Process(agent) -> Finish, with the Process node bound to model ``m``."""
    return FlowSpec(
        id=flow_id,
        name="Linear",
        nodes=[
            NodeSpec(
                id="start",
                label="Start",
                kind="start",
                properties={"promptTemplate": start_prompt},
            ),
            NodeSpec(
                id="agent",
                label="Agent",
                kind="process",
                properties={"boundModel": "m", **(process_props or {})},
            ),
            NodeSpec(id="finish", label="Finish", kind="finish"),
            *(extra_nodes or []),
        ],
        edges=[
            FlowEdge(id="start-agent", source="start", target="agent"),
            FlowEdge(id="agent-finish", source="agent", target="finish"),
            *(extra_edges or []),
        ],
    )


def tool_flow(flow_id: str = "tool-flow", require_approval: bool = False) -> FlowSpec:
    """Linear flow whose Process node is bound to provider ``search`` (tool ``lookup``)."""
    return linear_flow(
        flow_id=flow_id,
        process_props={"requireApproval": require_approval},
        extra_nodes=[
            NodeSpec(
                id="tools",
                label="Search",
                kind="tool_provider",
                properties={"boundProvider": "search", "enabledTools": ["lookup"]},
            ),
        ],
        extra_edges=[
            FlowEdge(
                id="agent-tools", source="agent", target="tools", kind=EdgeKind.TOOL_BINDING
            ),
        ],
    )


class Harness:
    """A fully wired executor and runner over in-memory stores."""

    def __init__(
        self,
        flow: FlowSpec,
        model: MockCompletionProvider | None = None,
        service: FakeToolProviderService | None = None,
        config: RuntimeConfig | None = None,
        states: StateStore | None = None,
    ):
        self.flow = flow
        self.model = model or MockCompletionProvider()
        self.service = service or FakeToolProviderService()
        self.states = states or InMemoryStateStore()
        self.orchestrator = ToolOrchestrator(self.service)
        self.executor = StepExecutor(
            flow_store=InMemoryFlowStore([flow]),
            state_store=self.states,
            model=self.model,
            orchestrator=self.orchestrator,
            config=config or RuntimeConfig(models={}),
        )
        self.runner = ConversationRunner(self.executor)

