"""
Process node: one model-driven turn with an internal tool-call loop.

A single step of a Process node runs this loop:

    ┌──────────────► call model ──── plain answer ───► FINAL_RESPONSE
    │                    │
    │              tool calls
    │                    │
    │     handoff ───────┼──── gated (approval) ───► TOOL_CALL (paused)
    │   (route edge)     │
    │                 execute, append results
    └────────────────────┘

The loop position is persisted as ``state.process_phase`` so a turn paused at
the approval gate resumes at the model call once every pending call has been
approved or rejected. Cancellation is polled before every model call and
every tool call; a cancelled turn keeps the messages it already appended and
returns STAY_ON_NODE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from flowrun.errors import NodeError, NodeErrorCode
from flowrun.graph.flow import NodeKind, ProcessProperties, StartProperties
from flowrun.graph.node import (
    FINAL_RESPONSE,
    STAY_ON_NODE,
    TOOL_CALL,
    NodeContext,
    NodeHandler,
)
from flowrun.graph.prompt_composer import compose_system_prompt, render_tool_pills
from flowrun.llm.provider import Tool
from flowrun.runner.tool_orchestrator import (
    is_handoff_tool,
    parse_tool_name,
    tool_result_message,
)
from flowrun.schemas.conversation_state import (
    ChatMessage,
    ExecutionStatus,
    HandoffRequest,
    LastResponse,
    ProcessTurnPhase,
    ToolCallRequest,
)

if TYPE_CHECKING:
    from flowrun.graph.converter import RuntimeNode, Successor
    from flowrun.schemas.tool import ToolDefinition

logger = logging.getLogger(__name__)

HANDOFF_TO_PREFIX = "handoff_to_"
MAX_ITERATIONS_MESSAGE = (
    "Maximum tool call iterations reached. Please try again with a more specific request."
)


@dataclass
class ProcessPrep:
    model_id: str
    system_prompt: str
    tools: list[Tool] = field(default_factory=list)
    handoff_routes: dict[str, str] = field(default_factory=dict)  # tool name -> target node id
    require_approval: bool = False
    max_iterations: int = 30


@dataclass
class ProcessOutcome:
    kind: Literal["final", "awaiting_approval", "handoff", "cancelled"]
    content: str | None = None
    handoff_label: str | None = None
    iterations: int = 0
    tool_calls: int = 0


def handoff_tool(target_id: str, target_name: str) -> Tool:
    return Tool(
        name=f"{HANDOFF_TO_PREFIX}{target_id}",
        description=f"Hand the conversation off to '{target_name}'.",
        parameters={
            "type": "object",
            "properties": {
                "confirm": {
                    "type": "boolean",
                    "description": "Set to true to confirm the handoff",
                }
            },
            "required": ["confirm"],
        },
    )


class ProcessNode(NodeHandler):
    kind = NodeKind.PROCESS

    async def prepare(self, node: RuntimeNode, ctx: NodeContext) -> ProcessPrep:
        props: ProcessProperties = node.properties  # type: ignore[assignment]
        if not props.bound_model:
            raise NodeError(
                NodeErrorCode.MISSING_REQUIRED_PROPERTY,
                f"Process node '{node.id}' has no bound model",
                node_id=node.id,
                node_kind=self.kind,
                details={"property": "bound_model"},
            )

        definitions: list[ToolDefinition] = []
        if props.tool_provider_refs:
            definitions = (await ctx.tools.discover_tools(props.tool_provider_refs)).unwrap()
            for provider in {d.provider for d in definitions}:
                ctx.state.tool_cache[provider] = [d for d in definitions if d.provider == provider]
        if props.allowed_tools:
            allowed = set(props.allowed_tools)
            definitions = [
                d for d in definitions if d.name in allowed or d.original_name in allowed
            ]

        tools = ctx.tools.prepare_tools(definitions).unwrap()

        handoff_routes: dict[str, str] = {}
        for succ in ctx.graph.successors_of(node.id):
            target = ctx.graph.get_node(succ.target_id)
            if target is None:
                continue
            tool = handoff_tool(target.id, target.name)
            handoff_routes[tool.name] = target.id
            tools.append(tool)

        return ProcessPrep(
            model_id=props.bound_model,
            system_prompt=self._system_prompt(props, definitions, ctx),
            tools=tools,
            handoff_routes=handoff_routes,
            require_approval=props.require_approval or ctx.state.require_approval,
            max_iterations=ctx.config.max_tool_iterations,
        )

    def _system_prompt(
        self, props: ProcessProperties, definitions: list[ToolDefinition], ctx: NodeContext
    ) -> str:
        start_props: StartProperties = ctx.graph.start_node.properties  # type: ignore[assignment]
        start_prompt = None if props.exclude_start_prompt else start_props.prompt_template

        model_prompt = None
        if not props.exclude_model_prompt:
            info = ctx.model.describe_model(props.bound_model)
            model_prompt = info.prompt if info else None

        prompt = compose_system_prompt(start_prompt, model_prompt, props.prompt_template)
        return render_tool_pills(prompt, definitions)

    async def execute(
        self, node: RuntimeNode, prep: ProcessPrep, ctx: NodeContext
    ) -> ProcessOutcome:
        state = ctx.state

        if state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL:
            pending = len(state.pending_tool_calls)
            logger.info(f"Node '{node.id}' still has {pending} pending tool call(s)")
            return ProcessOutcome(kind="awaiting_approval")

        # A handoff requested alongside gated calls is routed once they resolve
        pending_handoff = state.handoff_requested
        if pending_handoff is not None and pending_handoff.source_node_id == node.id:
            state.handoff_requested = None
            state.process_phase = ProcessTurnPhase.DONE
            return ProcessOutcome(kind="handoff", handoff_label=pending_handoff.action)

        state.process_phase = ProcessTurnPhase.AWAITING_MODEL
        outcome = ProcessOutcome(kind="final")

        while outcome.iterations < prep.max_iterations:
            if await ctx.is_cancelled():
                logger.info(f"Node '{node.id}' cancelled before model call")
                outcome.kind = "cancelled"
                return outcome

            outcome.iterations += 1
            response = (
                await ctx.model.generate(prep.model_id, self._llm_messages(prep, ctx), prep.tools)
            ).unwrap()
            state.add_message(
                ChatMessage(
                    role="assistant",
                    content=response.content,
                    tool_calls=response.tool_calls,
                    node_id=node.id,
                )
            )

            if not response.tool_calls:
                state.process_phase = ProcessTurnPhase.DONE
                outcome.content = response.content
                return outcome

            gated: list[ToolCallRequest] = []
            handoff: HandoffRequest | None = None
            for call in response.tool_calls:
                if await ctx.is_cancelled():
                    logger.info(f"Node '{node.id}' cancelled before tool call '{call.name}'")
                    outcome.kind = "cancelled"
                    return outcome

                if is_handoff_tool(call.name):
                    request = await self._handoff(node, call, prep, ctx)
                    if request is not None and handoff is None:
                        handoff = request
                    continue

                # Malformed names fail immediately and are never gated
                if prep.require_approval and parse_tool_name(call.name).success:
                    gated.append(call)
                    continue

                tool_outcome = await ctx.tools.invoke_tool_call(call, node.id)
                state.add_message(tool_outcome.message)
                outcome.tool_calls += 1

            if handoff is not None:
                state.handoff_requested = handoff

            if gated:
                logger.info(f"Node '{node.id}' awaiting approval for {len(gated)} tool call(s)")
                state.await_approval(gated)
                outcome.kind = "awaiting_approval"
                return outcome

            if handoff is not None:
                state.handoff_requested = None
                state.process_phase = ProcessTurnPhase.DONE
                outcome.kind = "handoff"
                outcome.handoff_label = handoff.action
                return outcome

        logger.warning(f"Node '{node.id}' hit the tool iteration limit ({prep.max_iterations})")
        state.add_message(
            ChatMessage(role="assistant", content=MAX_ITERATIONS_MESSAGE, node_id=node.id)
        )
        state.process_phase = ProcessTurnPhase.DONE
        outcome.content = MAX_ITERATIONS_MESSAGE
        return outcome

    def _llm_messages(self, prep: ProcessPrep, ctx: NodeContext) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if prep.system_prompt:
            messages.append({"role": "system", "content": prep.system_prompt})
        messages.extend(m.to_llm_dict() for m in ctx.state.messages if m.role != "system")
        return messages

    async def _handoff(
        self, node: RuntimeNode, call: ToolCallRequest, prep: ProcessPrep, ctx: NodeContext
    ) -> HandoffRequest | None:
        """Append the handoff's tool result and return the routing request, if valid."""
        succ = self._handoff_successor(node, call, prep, ctx)
        if succ is None:
            ctx.state.add_message(
                tool_result_message(call.id, f"Error: Unknown handoff target: {call.name}", node.id)
            )
            return None
        if call.arguments.get("confirm") is False:
            ctx.state.add_message(tool_result_message(call.id, "Handoff not confirmed", node.id))
            return None

        tool_outcome = await ctx.tools.invoke_tool_call(call, node.id)
        ctx.state.add_message(tool_outcome.message)
        logger.info(f"Node '{node.id}' handing off to '{succ.target_id}' via '{succ.label}'")
        return HandoffRequest(
            edge_id=succ.edge_id,
            action=succ.label,
            target_node_id=succ.target_id,
            source_node_id=node.id,
        )

    def _handoff_successor(
        self, node: RuntimeNode, call: ToolCallRequest, prep: ProcessPrep, ctx: NodeContext
    ) -> Successor | None:
        successors = ctx.graph.successors_of(node.id)
        target_id = prep.handoff_routes.get(call.name)
        if target_id is not None:
            return next((s for s in successors if s.target_id == target_id), None)
        edge_id = call.arguments.get("edge_id") or call.arguments.get("edgeId")
        if edge_id:
            return next((s for s in successors if edge_id in (s.edge_id, s.label)), None)
        return None

    async def finalize(
        self, node: RuntimeNode, prep: ProcessPrep, result: ProcessOutcome, ctx: NodeContext
    ) -> str:
        if result.kind == "awaiting_approval":
            return TOOL_CALL
        if result.kind == "handoff" and result.handoff_label:
            return result.handoff_label
        if result.kind == "cancelled":
            return STAY_ON_NODE
        ctx.state.last_response = LastResponse(success=True, content=result.content)
        return FINAL_RESPONSE
