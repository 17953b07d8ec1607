import json
import logging

from flowrun.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_log_context,
    get_log_context,
    set_log_context,
)


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("flowrun.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_merges_and_clears():
    clear_log_context()
    set_log_context(conversation_id="c1", flow_id="f1")
    set_log_context(node_id="agent")

    assert get_log_context() == {"conversation_id": "c1", "flow_id": "f1", "node_id": "agent"}
    clear_log_context()
    assert get_log_context() == {}


def test_structured_formatter_includes_context_and_extras():
    clear_log_context()
    set_log_context(conversation_id="c1", node_id="agent")
    try:
        line = StructuredFormatter().format(
            make_record("\x1b[31mcalled\x1b[0m", tool_name="lookup")
        )
    finally:
        clear_log_context()

    entry = json.loads(line)
    assert entry["message"] == "called"
    assert entry["level"] == "info"
    assert entry["conversation_id"] == "c1"
    assert entry["node_id"] == "agent"
    assert entry["tool_name"] == "lookup"


def test_human_formatter_prefixes_context():
    clear_log_context()
    set_log_context(conversation_id="conversation-12345678", flow_id="f1")
    try:
        line = HumanReadableFormatter().format(make_record("hello"))
    finally:
        clear_log_context()

    assert "[conv:12345678 | flow:f1]" in line
    assert line.endswith("hello")
