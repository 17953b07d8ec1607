"""Sources of authored flows, looked up by flow id."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from flowrun.graph.flow import FlowSpec

logger = logging.getLogger(__name__)


class FlowStore(ABC):
    @abstractmethod
    async def get_flow(self, flow_id: str) -> FlowSpec | None: ...


class InMemoryFlowStore(FlowStore):
    def __init__(self, flows: list[FlowSpec] | None = None):
        self._flows: dict[str, FlowSpec] = {}
        for flow in flows or []:
            self.add(flow)

    def add(self, flow: FlowSpec) -> None:
        self._flows[flow.id] = flow

    async def get_flow(self, flow_id: str) -> FlowSpec | None:
        return self._flows.get(flow_id)


def load_flow_file(path: Path | str) -> FlowSpec:
    """Parse an authored flow document (JSON)."""
    with open(path, encoding="utf-8-sig") as f:
        return FlowSpec.model_validate(json.load(f))


class FileFlowStore(FlowStore):
    """Flows stored as ``{flows_dir}/{flow_id}.json``."""

    def __init__(self, flows_dir: Path | str):
        self.flows_dir = Path(flows_dir)

    async def get_flow(self, flow_id: str) -> FlowSpec | None:
        path = self.flows_dir / f"{flow_id}.json"
        if not path.exists():
            logger.warning(f"No flow file at {path}")
            return None
        return await asyncio.to_thread(load_flow_file, path)
