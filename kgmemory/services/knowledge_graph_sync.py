"""
Knowledge graph sync: extract entities from chat history and stored memories
and upsert them into the graph, checkpointing what was processed.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import List, Sequence, Set

from ..models.core import (SYNC_CHAT, SYNC_FULL, SYNC_MEMORY, ChatMessage, ConsciousMemory, ExtractionResult,
                           SyncMetrics, SyncRequest)
from ..utils.logging_config import get_logger
from .extraction_pipeline import merge_extractions, validate_extraction

logger = get_logger(__name__)

SOURCE_CHAT = 'chat'
SOURCE_MEMORY = 'memory'
ALL_SOURCES = (SOURCE_CHAT, SOURCE_MEMORY)
RAG_SCAN_LIMIT = 1000


class KnowledgeGraphSyncError(Exception):
    """Custom exception for knowledge graph sync errors."""
    pass


class FileChatSource:
    """Chat messages exported by the transcript owner as a JSON list."""

    def __init__(self, path: str):
        self.path = Path(path)

    def list_messages(self) -> List[ChatMessage]:
        if not self.path.exists():
            logger.debug(f'No chat export at {self.path}')
            return []

        data = json.loads(self.path.read_text(encoding='utf-8') or '[]')
        if isinstance(data, dict):
            data = data.get('messages', [])

        messages = []
        for item in data:
            if not item.get('id') or not item.get('content'):
                continue
            messages.append(
                ChatMessage(id=str(item['id']),
                            content=item['content'],
                            role=item.get('role', 'user'),
                            session_id=item.get('sessionId', item.get('session_id', 'default')),
                            created_at=item.get('createdAt', item.get('created_at')),
                            tool_invocations=item.get('toolInvocations', item.get('tool_invocations', [])) or []))
        return messages


class KnowledgeGraphSyncService:
    """Runs sync passes over chat messages, saved notes and plain memories."""

    def __init__(self,
                 graph_store,
                 pipeline,
                 memory_service=None,
                 vector_store=None,
                 chat_source=None,
                 state_store=None):
        """
        Initialize the sync service.

        Args:
            graph_store: NeptuneGraphStore receiving the upserts
            pipeline: ExtractionPipeline
            memory_service: ConsciousMemoryService listing saved notes
            vector_store: OpenSearchVectorStore listing plain memories
            chat_source: Object with ``list_messages() -> List[ChatMessage]``
            state_store: SyncStateStore holding the checkpoint
        """
        self.graph_store = graph_store
        self.pipeline = pipeline
        self.memory_service = memory_service
        self.vector_store = vector_store
        self.chat_source = chat_source
        self.state_store = state_store

    def sync_knowledge_graph(self, force_full_resync: bool = False,
                             sources: Sequence[str] = ALL_SOURCES) -> SyncMetrics:
        """
        Run one sync pass.

        Args:
            force_full_resync: Reprocess everything and reset the checkpoint
            sources: Any of ``chat`` and ``memory``

        Returns:
            SyncMetrics for the pass

        Raises:
            KnowledgeGraphSyncError: If nothing could be written to the graph
        """
        metrics = SyncMetrics()
        state = None if force_full_resync or self.state_store is None else self.state_store.read()
        logger.info(f'Starting {"full" if force_full_resync else "incremental"} knowledge graph sync '
                    f'over {", ".join(sources)}')

        results: List[ExtractionResult] = []
        chat_ids: List[str] = []
        conscious_ids: List[str] = []
        rag_ids: List[str] = []

        if SOURCE_CHAT in sources:
            done = set(state.chat_messages) if state else set()
            for message in self._chat_messages(metrics):
                if message.id not in done and self._extract(message, results, metrics):
                    chat_ids.append(message.id)

        if SOURCE_MEMORY in sources:
            done = set(state.conscious_memories) if state else set()
            for memory in self._conscious_memories(metrics):
                if memory.id not in done and self._extract(memory, results, metrics):
                    conscious_ids.append(memory.id)

            done = set(state.rag_memories) if state else set()
            for memory_id, text in self._rag_memories(metrics):
                if memory_id not in done and self._extract(text, results, metrics):
                    rag_ids.append(memory_id)

        extraction = validate_extraction(merge_extractions(results))
        attempted = self._write(extraction, metrics)

        metrics.end_time = datetime.now()
        if attempted and metrics.entities_processed == 0:
            metrics.status = 'failed'
            logger.error(f'Knowledge graph sync failed: no entity could be written ({metrics.errors} errors)')
            raise KnowledgeGraphSyncError(f'Sync pass wrote nothing to the graph ({metrics.errors} errors)')

        if self.state_store is not None:
            self.state_store.record_pass(chat_messages=chat_ids,
                                         conscious_memories=conscious_ids,
                                         rag_memories=rag_ids,
                                         reset=force_full_resync)

        metrics.status = 'completed'
        logger.info(f'Knowledge graph sync completed in {metrics.duration_seconds:.2f}s: '
                    f'{metrics.entities_processed} entities, {metrics.relationships_processed} relationships, '
                    f'{metrics.errors} errors')
        return metrics

    def process_request(self, request: SyncRequest) -> SyncMetrics:
        """Handle one queued sync request."""
        if request.type == SYNC_FULL:
            return self.sync_knowledge_graph(force_full_resync=True)
        if request.type == SYNC_CHAT:
            return self.sync_knowledge_graph(sources=(SOURCE_CHAT,))
        if request.type == SYNC_MEMORY:
            return self.sync_knowledge_graph(sources=(SOURCE_MEMORY,))
        raise KnowledgeGraphSyncError(f'Unknown sync request type: {request.type}')

    def _extract(self, unit, results: List[ExtractionResult], metrics: SyncMetrics) -> bool:
        try:
            results.append(self.pipeline.extract(unit))
            return True
        except Exception as e:
            metrics.errors += 1
            logger.warning(f'Extraction failed for {getattr(unit, "id", "text unit")}: {e}')
            return False

    def _write(self, extraction: ExtractionResult, metrics: SyncMetrics) -> bool:
        written: Set[str] = set()
        for entity in extraction.entities:
            try:
                self.graph_store.upsert_node(entity)
                written.add(entity.id)
                metrics.entities_processed += 1
            except Exception as e:
                metrics.errors += 1
                logger.warning(f'Failed to upsert node {entity.id}: {e}')

        for rel in extraction.relationships:
            if rel.source_id not in written or rel.target_id not in written:
                continue
            try:
                if self.graph_store.upsert_relationship(rel):
                    metrics.relationships_processed += 1
            except Exception as e:
                metrics.errors += 1
                logger.warning(f'Failed to upsert relationship {rel.id}: {e}')

        return bool(extraction.entities)

    def _chat_messages(self, metrics: SyncMetrics) -> List[ChatMessage]:
        if self.chat_source is None:
            return []
        try:
            return self.chat_source.list_messages()
        except Exception as e:
            metrics.errors += 1
            logger.error(f'Failed to load chat messages: {e}')
            return []

    def _conscious_memories(self, metrics: SyncMetrics) -> List[ConsciousMemory]:
        if self.memory_service is not None:
            return self.memory_service.list_conscious_memories()
        if self.vector_store is None:
            return []
        try:
            return [ConsciousMemory.from_result(r) for r in self.vector_store.list_all(limit=RAG_SCAN_LIMIT)
                    if r.is_conscious]
        except Exception as e:
            metrics.errors += 1
            logger.error(f'Failed to list conscious memories: {e}')
            return []

    def _rag_memories(self, metrics: SyncMetrics) -> List[tuple]:
        if self.vector_store is None:
            return []
        try:
            return [(r.id, r.text) for r in self.vector_store.list_all(limit=RAG_SCAN_LIMIT) if not r.is_conscious]
        except Exception as e:
            metrics.errors += 1
            logger.error(f'Failed to list memories: {e}')
            return []
