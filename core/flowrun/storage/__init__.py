"""Persistence for conversation state and authored flows."""

from flowrun.storage.flow_store import FileFlowStore, FlowStore, InMemoryFlowStore, load_flow_file
from flowrun.storage.state_store import FileStateStore, InMemoryStateStore, StateStore

__all__ = [
    "FileFlowStore",
    "FileStateStore",
    "FlowStore",
    "InMemoryFlowStore",
    "InMemoryStateStore",
    "StateStore",
    "load_flow_file",
]
