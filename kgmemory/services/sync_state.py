"""
Checkpoint of the last knowledge graph sync pass.
"""

import json
import os
from pathlib import Path
from typing import Iterable, Optional

from ..models.core import SyncState
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_iso

logger = get_logger(__name__)


class SyncStateStore:
    """Reads and writes the ``{lastSyncTimestamp, lastProcessedIds}`` document."""

    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> Optional[SyncState]:
        """
        Load the checkpoint.

        Returns:
            SyncState, or None if no pass has completed yet or the file is unreadable
        """
        if not self.path.exists():
            return None
        try:
            return SyncState.from_dict(json.loads(self.path.read_text(encoding='utf-8')))
        except (OSError, json.JSONDecodeError, AttributeError) as e:
            logger.warning(f'Ignoring unreadable sync state {self.path}: {e}')
            return None

    def write(self, state: SyncState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f'{self.path.name}.tmp')
        tmp_path.write_text(json.dumps(state.to_dict(), indent=2), encoding='utf-8')
        os.replace(tmp_path, self.path)
        logger.debug(f'Wrote sync state to {self.path}')

    def record_pass(self,
                    chat_messages: Iterable[str] = (),
                    conscious_memories: Iterable[str] = (),
                    rag_memories: Iterable[str] = (),
                    reset: bool = False) -> SyncState:
        """
        Store the ids handled by a pass together with a fresh timestamp.

        Args:
            reset: Replace the previous id lists instead of extending them (full resync)
        """
        state = SyncState() if reset else (self.read() or SyncState())
        for ids, current in ((chat_messages, state.chat_messages), (conscious_memories, state.conscious_memories),
                             (rag_memories, state.rag_memories)):
            known = set(current)
            for item_id in ids:
                if item_id not in known:
                    known.add(item_id)
                    current.append(item_id)
        state.last_sync_timestamp = now_iso()
        self.write(state)
        return state
