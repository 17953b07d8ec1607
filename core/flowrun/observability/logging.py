"""
Structured logging with conversation-scoped context.

The step executor sets ``conversation_id``, ``flow_id`` and a per-step
``trace_id`` in a ContextVar at the start of every step; the node driver adds
``node_id``. Any ``logger.info(...)`` call made while that step runs
(including inside nodes, the tool orchestrator and the capability adapters)
picks these fields up without passing them around.

    StepExecutor.execute_step() -> set_log_context(conversation_id, flow_id, trace_id)
        run_node()               -> set_log_context(node_id)
            logger.warning(...)  -> carries all four fields
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

log_context: ContextVar[dict[str, Any] | None] = ContextVar("flowrun_log_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes copied into JSON output when passed via ``extra=``
_EXTRA_FIELDS = ("event", "action", "tool_name", "provider", "model", "latency_ms")


def strip_ansi_codes(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """JSON lines formatter: timestamp, level, logger, message, context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        entry.update(log_context.get() or {})

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line formatter for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = log_context.get() or {}

        prefix_parts = []
        if context.get("conversation_id"):
            prefix_parts.append(f"conv:{str(context['conversation_id'])[-8:]}")
        if context.get("flow_id"):
            prefix_parts.append(f"flow:{context['flow_id']}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"
        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Configure root logging once at process start (CLI entry point, tests).

    Args:
        level: Log level name.
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, otherwise human).
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Route chatty client libraries through the root handler
    for logger_name in ("LiteLLM", "httpx", "httpcore", "mcp"):
        third_party = logging.getLogger(logger_name)
        third_party.handlers.clear()
        third_party.propagate = True
        if format == "json":
            third_party.setLevel(max(root_logger.level, logging.WARNING))


def set_log_context(**kwargs: Any) -> None:
    """Merge fields into the current log context."""
    current = log_context.get() or {}
    log_context.set({**current, **kwargs})


def get_log_context() -> dict[str, Any]:
    return (log_context.get() or {}).copy()


def clear_log_context() -> None:
    log_context.set(None)
