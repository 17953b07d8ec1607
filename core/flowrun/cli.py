"""
Command-line interface for flowrun.

Usage:
    flowrun validate flows/support.json
    flowrun run flows/support.json --message "hi"
    flowrun run flows/support.json --message "and now?" --conversation <id>
    flowrun run flows/support.json --message "search it" --approve-all
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from flowrun.config import RuntimeConfig, get_mcp_server_configs
from flowrun.errors import FlowError
from flowrun.graph.converter import GraphConverter
from flowrun.graph.hitl import ApprovalDecision
from flowrun.observability.logging import configure_logging
from flowrun.storage.flow_store import InMemoryFlowStore, load_flow_file


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        flow = load_flow_file(args.flow)
    except (OSError, ValueError) as e:
        print(f"Could not load {args.flow}: {e}", file=sys.stderr)
        return 1

    result = GraphConverter().convert(flow)
    if not result.success:
        error = result.error
        print(f"Invalid flow '{flow.id}': [{error.code}] {error.message}", file=sys.stderr)
        if error.details:
            print(json.dumps(error.details, indent=2, default=str), file=sys.stderr)
        return 1

    graph = result.value
    print(f"Flow '{flow.id}' is valid ({len(graph.nodes)} nodes)")
    for node in graph.nodes.values():
        marker = "*" if node.id == graph.start_node_id else " "
        print(f" {marker} {node.id} [{node.kind}] {node.name}")
        for succ in graph.successors_of(node.id):
            print(f"      --{succ.label}--> {succ.target_id}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    # Imported here so `validate` works without model/tool-provider extras configured
    from flowrun.llm.litellm import LiteLLMProvider
    from flowrun.runner.mcp_client import MCPProviderPool
    from flowrun.runner.tool_orchestrator import ToolOrchestrator
    from flowrun.runtime.conversation_runner import ConversationRunner
    from flowrun.runtime.step_executor import StepExecutor
    from flowrun.schemas.conversation_state import ExecutionStatus
    from flowrun.storage.state_store import FileStateStore

    config = RuntimeConfig()
    flow = load_flow_file(args.flow)
    pool = MCPProviderPool.from_config(get_mcp_server_configs())
    executor = StepExecutor(
        flow_store=InMemoryFlowStore([flow]),
        state_store=FileStateStore(args.storage or config.storage_path),
        model=LiteLLMProvider(config.models),
        orchestrator=ToolOrchestrator(pool),
        config=config,
    )
    runner = ConversationRunner(executor)

    try:
        conversation_id = args.conversation
        if conversation_id is None or await runner.get_state(conversation_id) is None:
            state = await runner.start_conversation(flow.id, conversation_id=conversation_id)
            conversation_id = state.conversation_id

        seen = len((await runner.get_state(conversation_id)).messages)
        turn = (await runner.send_message(conversation_id, args.message)).unwrap()
        state = turn.state

        while state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL and args.approve_all:
            call = state.pending_tool_calls[0]
            print(f"[approving {call.name}]")
            state = (
                await runner.respond_to_tool_call(
                    conversation_id, call.id, ApprovalDecision.APPROVE
                )
            ).unwrap()

        for message in state.messages[seen:]:
            if message.role == "assistant" and message.content:
                print(message.content)

        if state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL:
            names = ", ".join(c.name for c in state.pending_tool_calls)
            print(f"Waiting for approval of: {names}")
        print(f"conversation: {conversation_id} ({state.status})")
        if state.last_response and not state.last_response.success:
            print(f"Error: {state.last_response.error}", file=sys.stderr)
            return 1
        return 0
    except FlowError as e:
        print(f"Error: [{e.code}] {e.message}", file=sys.stderr)
        return 1
    finally:
        await pool.close()


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args))


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Convert a flow and report problems")
    validate_parser.add_argument("flow", type=Path, help="Path to a flow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Send one message through a flow")
    run_parser.add_argument("flow", type=Path, help="Path to a flow JSON file")
    run_parser.add_argument("--message", "-m", required=True, help="User message to send")
    run_parser.add_argument("--conversation", "-c", help="Resume this conversation id")
    run_parser.add_argument(
        "--approve-all",
        action="store_true",
        help="Approve every gated tool call without prompting",
    )
    run_parser.add_argument(
        "--storage",
        type=Path,
        help="Conversation storage directory (defaults to the configured path)",
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="flowrun",
        description="flowrun - Run authored agent flows as resumable conversations",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(args.log_level or RuntimeConfig().log_level)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
