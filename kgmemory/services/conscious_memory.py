"""
Conscious memory service: explicitly saved, tagged notes.

The vector store is the primary record. Every write is projected into the
knowledge graph on a background worker pool; a failed projection is handed to
the retry queue and never undoes or delays the primary write.
"""

import dataclasses
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from ..models.core import (MEMORY_SOURCES, ConsciousMemory, ConsciousMemoryMetadata, RetrievalResult, RetryItem,
                           SearchOptions)
from ..utils.config import RetryConfig, SearchConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import VectorStoreError
from ..utils.resilience import RetryQueue
from ..utils.timestamp_utils import now_iso, parse_iso
from .hybrid_search import HybridRetriever
from .rule_extraction import extract_from_conscious_memory, generate_entity_id

logger = get_logger(__name__)

CONSCIOUS_MEMORY_LABEL = 'ConsciousMemory'


class ConsciousMemoryError(Exception):
    """Custom exception for conscious memory errors."""
    pass


def _validate_importance(importance: Any) -> int:
    if isinstance(importance, bool) or not isinstance(importance, int) or not 1 <= importance <= 10:
        raise ValueError(f'importance must be an integer between 1 and 10, got {importance!r}')
    return importance


def _clean_tags(tags: Optional[Sequence[str]]) -> List[str]:
    cleaned = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class ConsciousMemoryService:
    """Save, update, delete and search tagged notes, keeping the graph eventually in step."""

    def __init__(self,
                 vector_store,
                 graph_store=None,
                 search_config: Optional[SearchConfig] = None,
                 retry_config: Optional[RetryConfig] = None,
                 projection_workers: int = 4,
                 start_retry_timer: bool = True):
        """
        Initialize the service.

        Args:
            vector_store: OpenSearchVectorStore holding the notes
            graph_store: Optional NeptuneGraphStore; without it nothing is projected
            search_config: Retrieval thresholds
            retry_config: Retry policy for failed projections
            projection_workers: Size of the projection worker pool
            start_retry_timer: Start the periodic retry flush
        """
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.retriever = HybridRetriever(vector_store, search_config)
        self.retry_queue = RetryQueue(retry_config, sync_fn=self._replay)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        if graph_store is not None:
            self._executor = ThreadPoolExecutor(max_workers=projection_workers, thread_name_prefix='graph-projection')
            if start_retry_timer:
                self.retry_queue.start()

        logger.info('Initialized ConsciousMemoryService')

    # Graph projection

    def project_memory(self, memory: ConsciousMemory) -> int:
        """
        Upsert a note and its tags, session and links into the graph.

        Returns:
            Number of relationships skipped because an endpoint is not in the graph yet

        Raises:
            GraphStoreError: If the graph rejects a write
        """
        extraction = extract_from_conscious_memory(memory)
        for entity in extraction.entities:
            self.graph_store.upsert_node(entity)

        skipped = 0
        for rel in extraction.relationships:
            if not self.graph_store.upsert_relationship(rel):
                skipped += 1
        if skipped:
            logger.debug(f'Projected memory {memory.id} with {skipped} dangling relationships skipped')
        return skipped

    def _apply(self, operation: str, payload: Dict[str, Any]) -> None:
        if operation == 'delete':
            self.graph_store.delete_node(generate_entity_id(CONSCIOUS_MEMORY_LABEL, payload['memory_id']))
        else:
            self.project_memory(ConsciousMemory(**payload['memory']))

    def _replay(self, item: RetryItem) -> None:
        self._apply(item.operation, item.payload)

    def _run_projection(self, operation: str, payload: Dict[str, Any]) -> None:
        try:
            self._apply(operation, payload)
        except Exception as e:
            logger.warning(f'Graph projection ({operation}) failed, queueing retry: {e}')
            self.retry_queue.push(RetryItem(operation=operation, payload=payload, last_error=str(e)))

    def _schedule(self, operation: str, payload: Dict[str, Any]) -> Optional[Future]:
        if self._executor is None:
            return None

        future = self._executor.submit(self._run_projection, operation, payload)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_projections(self, timeout: Optional[float] = None) -> bool:
        """Block until scheduled projections finish. Returns False on timeout."""
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # Writes

    def save_memory(self,
                    content: str,
                    tags: Optional[Sequence[str]] = None,
                    importance: int = 5,
                    context: Optional[str] = None,
                    session_id: str = 'default',
                    source: str = 'explicit',
                    related_memory_ids: Optional[Sequence[str]] = None,
                    message_type: str = 'assistant') -> str:
        """
        Save a note.

        Args:
            content: Note text
            tags: Free-form tags, kept verbatim
            importance: 1 (trivial) to 10 (critical)
            context: Optional free-text context
            session_id: Conversation the note belongs to
            source: explicit, suggested or derived
            related_memory_ids: Ids of notes this one refers to
            message_type: user or assistant

        Returns:
            The new memory id

        Raises:
            ValueError: If content, importance or source is invalid
            ConsciousMemoryError: If the vector store write fails
        """
        if not content or not content.strip():
            raise ValueError('content must not be empty')
        _validate_importance(importance)
        if source not in MEMORY_SOURCES:
            raise ValueError(f'source must be one of {MEMORY_SOURCES}, got {source!r}')

        now = now_iso()
        metadata = ConsciousMemoryMetadata(session_id=session_id or 'default',
                                           message_type=message_type,
                                           timestamp=now,
                                           tags=_clean_tags(tags),
                                           importance=importance,
                                           source=source,
                                           context=context,
                                           related_memory_ids=[str(i) for i in related_memory_ids or []],
                                           created_at=now)
        try:
            memory_id = self.vector_store.store(content, metadata)
        except VectorStoreError as e:
            logger.error(f'Failed to save conscious memory: {e}')
            raise ConsciousMemoryError(f'Save failed: {e}') from e

        memory = ConsciousMemory.from_result(RetrievalResult(id=memory_id, text=content, score=1.0, metadata=metadata))
        self._schedule('save', {'memory': dataclasses.asdict(memory)})

        logger.info(f'Saved conscious memory {memory_id} (importance {importance}, tags {metadata.tags})')
        return memory_id

    def update_memory(self,
                      memory_id: str,
                      content: Optional[str] = None,
                      tags: Optional[Sequence[str]] = None,
                      importance: Optional[int] = None,
                      context: Optional[str] = None,
                      related_memory_ids: Optional[Sequence[str]] = None) -> bool:
        """
        Change a note in place. Source, session and creation time never change.

        Returns:
            True if the note was rewritten, False if it doesn't exist or the store failed

        Raises:
            ValueError: If importance is out of range
        """
        if importance is not None:
            _validate_importance(importance)

        try:
            existing = self.vector_store.get_by_id(memory_id)
        except VectorStoreError as e:
            logger.error(f'Failed to load memory {memory_id} for update: {e}')
            return False
        if existing is None or not existing.is_conscious:
            logger.warning(f'Conscious memory {memory_id} not found for update')
            return False

        current = existing.metadata
        metadata = dataclasses.replace(
            current,
            tags=_clean_tags(tags) if tags is not None else list(current.tags),
            importance=importance if importance is not None else current.importance,
            context=context if context is not None else current.context,
            related_memory_ids=[str(i) for i in related_memory_ids] if related_memory_ids is not None else list(
                current.related_memory_ids),
            updated_at=now_iso(),
            extra=dict(current.extra))
        text = content if content and content.strip() else existing.text

        try:
            self.vector_store.store(text, metadata, memory_id=memory_id)
        except VectorStoreError as e:
            logger.error(f'Failed to update memory {memory_id}: {e}')
            return False

        memory = ConsciousMemory.from_result(RetrievalResult(id=memory_id, text=text, score=1.0, metadata=metadata))
        self._schedule('update', {'memory': dataclasses.asdict(memory)})
        logger.info(f'Updated conscious memory {memory_id}')
        return True

    def delete_memory(self, memory_id: str) -> bool:
        return self.delete_memories([memory_id])

    def delete_memories(self, memory_ids: Sequence[str]) -> bool:
        """
        Delete notes and, in the background, their graph nodes.

        Returns:
            True if anything was deleted
        """
        memory_ids = [i for i in memory_ids if i]
        if not memory_ids:
            return False

        try:
            deleted = self.vector_store.delete(memory_ids)
        except VectorStoreError as e:
            logger.error(f'Failed to delete memories {memory_ids}: {e}')
            return False

        if deleted:
            for memory_id in memory_ids:
                self._schedule('delete', {'memory_id': memory_id})
            logger.info(f'Deleted {len(memory_ids)} conscious memories')
        return deleted

    def clear_all_memories(self) -> bool:
        """
        Wipe every memory and the ConsciousMemory graph nodes.

        Returns:
            True if the vector store was cleared; graph failures are only logged
        """
        try:
            self.vector_store.clear_all()
        except VectorStoreError as e:
            logger.error(f'Failed to clear memories: {e}')
            return False

        if self.graph_store is not None:
            try:
                self.graph_store.delete_nodes_by_type(CONSCIOUS_MEMORY_LABEL)
            except Exception as e:
                logger.warning(f'Memories cleared but graph cleanup failed: {e}')
        return True

    # Reads

    def search_memories(self, query: str, options: Optional[SearchOptions] = None) -> List[RetrievalResult]:
        return self.retriever.search(query, options)

    def list_conscious_memories(self, limit: Optional[int] = None) -> List[ConsciousMemory]:
        limit = limit or self.retriever.config.keyword_scan_limit
        results = self.retriever.search('', SearchOptions(limit=limit, conscious_only=True))
        return [ConsciousMemory.from_result(r) for r in results]

    def search_by_time_range(self,
                             query: str,
                             options: Optional[SearchOptions] = None,
                             start: Optional[datetime] = None,
                             end: Optional[datetime] = None,
                             page: int = 1,
                             page_size: int = 20) -> Dict[str, Any]:
        """
        Search notes created within a window, one page at a time.

        Returns:
            Dict with results, total, page, page_size and has_more
        """
        options = options or SearchOptions()
        options = dataclasses.replace(options, limit=options.limit or self.retriever.config.list_all_limit)

        in_range = []
        for result in self.retriever.search(query, options):
            created = parse_iso(getattr(result.metadata, 'created_at', None) or result.metadata.timestamp)
            if created is None:
                continue
            if start is not None and created < _aware(start):
                continue
            if end is not None and created > _aware(end):
                continue
            in_range.append(result)

        page = max(1, page)
        offset = (page - 1) * page_size
        return {
            'results': in_range[offset:offset + page_size],
            'total': len(in_range),
            'page': page,
            'page_size': page_size,
            'has_more': offset + page_size < len(in_range),
        }

    def get_all_tags(self) -> List[str]:
        tags = set()
        for memory in self.list_conscious_memories():
            tags.update(memory.tags)
        return sorted(tags, key=lambda tag: (tag.lower(), tag))

    def get_related_memories(self, memory_id: str, limit: int = 5) -> List[RetrievalResult]:
        """Explicitly linked notes first, then the most similar ones. Empty on store errors."""
        try:
            memory = self.vector_store.get_by_id(memory_id)
            if memory is None:
                return []

            related: Dict[str, RetrievalResult] = {}
            for related_id in getattr(memory.metadata, 'related_memory_ids', []):
                linked = self.vector_store.get_by_id(related_id)
                if linked is not None:
                    related[linked.id] = linked
        except VectorStoreError as e:
            logger.error(f'Failed to load related memories for {memory_id}: {e}')
            return []

        for result in self.retriever.search(memory.text, SearchOptions(limit=limit + 1, conscious_only=True)):
            if result.id != memory_id and result.id not in related:
                related[result.id] = result

        return list(related.values())[:limit]

    def get_stats(self) -> Dict[str, Any]:
        memories = self.list_conscious_memories()
        tag_counts = Counter(tag for memory in memories for tag in memory.tags)
        importance = Counter(memory.importance for memory in memories)
        sources = Counter(memory.source for memory in memories)
        return {
            'total_conscious_memories': len(memories),
            'total_memories': self.vector_store.count(),
            'average_importance': round(sum(m.importance for m in memories) / len(memories), 2) if memories else 0.0,
            'tags': dict(tag_counts.most_common()),
            'importance_distribution': {str(k): importance[k] for k in sorted(importance)},
            'sources': dict(sources),
            'pending_retries': self.retry_queue.size(),
        }

    def health_check(self) -> bool:
        return self.vector_store.health_check()

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the retry timer and let running projections finish."""
        self.retry_queue.stop(timeout)
        if self._executor is not None:
            self.wait_for_projections(timeout)
            self._executor.shutdown(wait=True)
            self._executor = None


def _aware(value: datetime) -> datetime:
    return parse_iso(value.isoformat()) if value.tzinfo is None else value
