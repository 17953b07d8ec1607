"""
Conversation state storage.

Layout of the file-backed store:
  {base_path}/conversations/{conversation_id}/state.json
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from flowrun.schemas.conversation_state import ConversationState
from flowrun.utils.io import atomic_write

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Reads and writes whole ConversationState documents by id."""

    @abstractmethod
    async def get(self, conversation_id: str) -> ConversationState | None: ...

    @abstractmethod
    async def put(self, state: ConversationState) -> None: ...

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool: ...

    @abstractmethod
    async def list_ids(self) -> list[str]: ...


class InMemoryStateStore(StateStore):
    """Process-local store. Keeps deep copies so callers never share objects with it."""

    def __init__(self):
        self._states: dict[str, ConversationState] = {}

    async def get(self, conversation_id: str) -> ConversationState | None:
        state = self._states.get(conversation_id)
        return state.model_copy(deep=True) if state else None

    async def put(self, state: ConversationState) -> None:
        self._states[state.conversation_id] = state.model_copy(deep=True)

    async def delete(self, conversation_id: str) -> bool:
        return self._states.pop(conversation_id, None) is not None

    async def list_ids(self) -> list[str]:
        return sorted(self._states)


class FileStateStore(StateStore):
    """One state.json per conversation, written atomically."""

    def __init__(self, base_path: Path | str):
        """
        Initialize the store.

        Args:
            base_path: Storage root (e.g., ~/.flowrun/data)
        """
        self.base_path = Path(base_path)
        self.conversations_dir = self.base_path / "conversations"

    def get_state_path(self, conversation_id: str) -> Path:
        return self.conversations_dir / conversation_id / "state.json"

    async def get(self, conversation_id: str) -> ConversationState | None:
        def _read():
            state_path = self.get_state_path(conversation_id)
            if not state_path.exists():
                return None
            return ConversationState.model_validate_json(state_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def put(self, state: ConversationState) -> None:
        def _write():
            state_path = self.get_state_path(state.conversation_id)
            state_path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(state_path) as f:
                f.write(state.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote state.json for conversation {state.conversation_id}")

    async def delete(self, conversation_id: str) -> bool:
        def _delete():
            state_path = self.get_state_path(conversation_id)
            if not state_path.exists():
                return False
            state_path.unlink()
            try:
                state_path.parent.rmdir()
            except OSError:
                # Directory holds other files; leave it
                pass
            return True

        return await asyncio.to_thread(_delete)

    async def list_ids(self) -> list[str]:
        def _scan():
            if not self.conversations_dir.exists():
                return []
            return sorted(
                d.name
                for d in self.conversations_dir.iterdir()
                if d.is_dir() and (d / "state.json").exists()
            )

        return await asyncio.to_thread(_scan)
