"""
MCP Interface Layer using fastmcp: exposes the memory system as agent tools.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import RetrievalResult, SearchOptions
from .services.conscious_memory import ConsciousMemoryError, ConsciousMemoryService
from .services.entity_extraction import ModelExtractor
from .services.extraction_pipeline import ExtractionPipeline
from .services.knowledge_graph_sync import FileChatSource, KnowledgeGraphSyncService
from .services.sync_queue import SyncQueue
from .services.sync_state import SyncStateStore
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.config import AppConfig, config
from .utils.hash_embed import HashEmbed
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger
from .utils.neptune_client import NeptuneGraphStore
from .utils.opensearch_client import OpenSearchVectorStore

logger = get_logger(__name__)


@dataclass
class MemorySystem:
    """Every long-lived collaborator of one process."""
    vector_store: Any
    memory_service: ConsciousMemoryService
    sync_service: KnowledgeGraphSyncService
    sync_queue: SyncQueue
    embedder: Any
    llm: Optional[BedrockLLM] = None
    graph_store: Optional[NeptuneGraphStore] = None

    def health_components(self) -> Dict[str, Any]:
        return {
            'embedder': self.embedder,
            'llm': self.llm,
            'vector_store': self.vector_store,
            'graph_store': self.graph_store,
        }

    def close(self) -> None:
        self.memory_service.close()
        if self.graph_store is not None:
            self.graph_store.close()


def build_system(app_config: AppConfig = config) -> MemorySystem:
    """Construct the memory system from configuration.

    The embedding provider is Bedrock unless ``embed_provider`` is ``hash``, in
    which case model-based extraction is disabled as well. The graph store is
    only connected when a Neptune endpoint is configured.
    """
    if app_config.embed_provider == 'hash':
        embedder = HashEmbed(app_config.opensearch.dimension)
        llm = None
    else:
        embedder = BedrockEmbed(app_config.bedrock_embed)
        llm = BedrockLLM(app_config.bedrock_llm)

    vector_store = OpenSearchVectorStore(app_config.opensearch, embedder,
                                         default_min_score=app_config.search.default_min_score)
    graph_store = NeptuneGraphStore(app_config.neptune) if app_config.neptune.endpoint else None
    if graph_store is None:
        logger.warning('NEPTUNE_ENDPOINT not set, knowledge graph projection disabled')

    memory_service = ConsciousMemoryService(vector_store,
                                            graph_store=graph_store,
                                            search_config=app_config.search,
                                            retry_config=app_config.retry,
                                            projection_workers=app_config.sync.projection_workers)
    pipeline = ExtractionPipeline(ModelExtractor(llm) if llm is not None else None)
    sync_service = KnowledgeGraphSyncService(graph_store,
                                             pipeline,
                                             memory_service=memory_service,
                                             vector_store=vector_store,
                                             chat_source=FileChatSource(app_config.sync.chat_path),
                                             state_store=SyncStateStore(app_config.sync.state_path))

    return MemorySystem(vector_store=vector_store,
                        memory_service=memory_service,
                        sync_service=sync_service,
                        sync_queue=SyncQueue(config=app_config.sync),
                        embedder=embedder,
                        llm=llm,
                        graph_store=graph_store)


def result_to_dict(result: RetrievalResult) -> Dict[str, Any]:
    return {
        'id': result.id,
        'text': result.text,
        'score': round(result.score, 4),
        'search_type': result.search_type,
        'keyword_matches': result.keyword_matches,
        'metadata': result.metadata.to_document(),
    }


class MemoryTools:
    """The operations published over MCP."""

    def __init__(self, system: MemorySystem):
        self.system = system

    def save_memory(self,
                    content: str,
                    tags: Optional[List[str]] = None,
                    importance: int = 5,
                    context: Optional[str] = None,
                    session_id: str = 'default',
                    source: str = 'explicit',
                    related_memory_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Save a tagged note to long-term memory.

        Args:
            content: The note
            tags: Tags for later filtering
            importance: 1 (trivial) to 10 (critical), default 5
            context: Optional context the note was taken in
            session_id: Conversation id
            source: explicit, suggested or derived
            related_memory_ids: Ids of related notes

        Returns:
            The saved note's id
        """
        try:
            memory_id = self.system.memory_service.save_memory(content,
                                                               tags=tags,
                                                               importance=importance,
                                                               context=context,
                                                               session_id=session_id,
                                                               source=source,
                                                               related_memory_ids=related_memory_ids)
        except ConsciousMemoryError as e:
            logger.error(f'Memory save failed in MCP tool: {e}')
            raise Exception(f'Memory save failed: {e}')
        return {'id': memory_id, 'saved': True}

    def search_memories(self,
                        query: str = '',
                        limit: Optional[int] = None,
                        tags: Optional[List[str]] = None,
                        importance_min: Optional[int] = None,
                        importance_max: Optional[int] = None,
                        source: Optional[str] = None,
                        session_id: Optional[str] = None,
                        conscious_only: bool = False) -> List[Dict[str, Any]]:
        """Search memories. An empty query lists the newest ones.

        Returns:
            Ranked results with id, text, score, search_type and metadata
        """
        options = SearchOptions(limit=limit,
                                session_id=session_id,
                                tags=tags or [],
                                importance_min=importance_min,
                                importance_max=importance_max,
                                source=source,
                                conscious_only=conscious_only)
        results = self.system.memory_service.search_memories(query, options)
        logger.debug(f'MCP search returned {len(results)} memories')
        return [result_to_dict(r) for r in results]

    def update_memory(self,
                      memory_id: str,
                      content: Optional[str] = None,
                      tags: Optional[List[str]] = None,
                      importance: Optional[int] = None,
                      context: Optional[str] = None) -> Dict[str, Any]:
        """Update a saved note's content, tags, importance or context."""
        updated = self.system.memory_service.update_memory(memory_id,
                                                           content=content,
                                                           tags=tags,
                                                           importance=importance,
                                                           context=context)
        return {'id': memory_id, 'updated': updated}

    def delete_memory(self, memory_id: str) -> Dict[str, Any]:
        """Delete a saved note."""
        return {'id': memory_id, 'deleted': self.system.memory_service.delete_memory(memory_id)}

    def get_memory_stats(self) -> Dict[str, Any]:
        """Counts of saved notes by tag, importance and source."""
        return self.system.memory_service.get_stats()

    def get_all_tags(self) -> List[str]:
        """Every tag in use."""
        return self.system.memory_service.get_all_tags()

    def request_sync(self, sync_type: str = 'incremental', priority: Optional[int] = None) -> Dict[str, Any]:
        """Queue a knowledge graph sync (full, incremental, chat or memory)."""
        return self.system.sync_queue.add_sync_request(sync_type, priority).to_dict()

    def process_sync_queue(self) -> Dict[str, Any]:
        """Run every queued knowledge graph sync now."""
        if self.system.graph_store is None:
            raise Exception('Knowledge graph is not configured')
        processed = self.system.sync_queue.drain_all(self.system.sync_service.process_request)
        return {'processed': processed, 'remaining': self.system.sync_queue.size()}

    def health(self) -> Dict[str, Any]:
        """Health of every backing service."""
        return get_health_status(self.system.health_components())


def create_app(tools: MemoryTools) -> FastMCP:
    mcp = FastMCP('Knowledge Graph Memory')
    for name in ('save_memory', 'search_memories', 'update_memory', 'delete_memory', 'get_memory_stats',
                 'get_all_tags', 'request_sync', 'process_sync_queue', 'health'):
        mcp.tool()(getattr(tools, name))
    return mcp


def main() -> None:
    system = build_system(config)
    mcp = create_app(MemoryTools(system))
    try:
        if config.mcp.transport == 'stdio':
            mcp.run(transport='stdio')
        else:
            mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        system.close()


if __name__ == '__main__':
    main()
