"""Prompt composition for Process nodes.

The system prompt a Process node sends is layered:

  1. Start node prompt    (omitted when ``exclude_start_prompt``)
  2. Bound model prompt   (omitted when ``exclude_model_prompt``)
  3. Process node prompt

Authored prompts may reference tools with pills of the form
``${-_-_-<provider>-_-_-<tool>}``; these are rendered into a sentence the
model can read, using the tools discovered for the node.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flowrun.schemas.tool import ToolDefinition

logger = logging.getLogger(__name__)

TOOL_PILL_PATTERN = re.compile(r"\$\{-_-_-(.+?)-_-_-(.+?)\}")


def compose_system_prompt(
    start_prompt: str | None,
    model_prompt: str | None,
    node_prompt: str | None,
) -> str:
    """Join the non-empty layers, separated by blank lines."""
    parts = [p.strip() for p in (start_prompt, model_prompt, node_prompt) if p and p.strip()]
    return "\n\n".join(parts)


def _format_parameters(tool: ToolDefinition) -> str:
    properties = tool.input_schema.get("properties") or {}
    params: list[str] = []
    for key, prop in properties.items():
        description = prop.get("description") if isinstance(prop, dict) else None
        params.append(f"`{key}` ({description})" if description else f"`{key}`")
    return f" with parameters {', '.join(params)}" if params else ""


def describe_tool_reference(tool: ToolDefinition) -> str:
    return (
        f"[The user is referencing a tool `{tool.provider}:{tool.original_name}` "
        f"({tool.description or 'No description'}){_format_parameters(tool)}]"
    )


def render_tool_pills(prompt: str, tools: list[ToolDefinition]) -> str:
    """Replace tool pills with readable references; unknown pills stay as written."""
    if "${" not in prompt:
        return prompt

    by_key = {(t.provider, t.original_name): t for t in tools}

    def _replace(match: re.Match[str]) -> str:
        tool = by_key.get((match.group(1), match.group(2)))
        if tool is None:
            logger.warning(f"Could not resolve tool pill {match.group(0)}")
            return match.group(0)
        return describe_tool_reference(tool)

    return TOOL_PILL_PATTERN.sub(_replace, prompt)
