"""
Observability helpers: structured logging with per-conversation context.

- JSON output for production, colorized lines for development
- Conversation, flow and node ids attached to every record automatically
"""

from flowrun.observability.logging import (
    clear_log_context,
    configure_logging,
    get_log_context,
    set_log_context,
)

__all__ = [
    "configure_logging",
    "get_log_context",
    "set_log_context",
    "clear_log_context",
]
