"""
Core data models for the memory subsystem.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.json_utils import dump_list, load_list

MESSAGE_TYPES = ('user', 'assistant')
MEMORY_SOURCES = ('explicit', 'suggested', 'derived')
CONSCIOUS = 'conscious'

SEMANTIC = 'semantic'
KEYWORD = 'keyword'

SYNC_FULL = 'full'
SYNC_CHAT = 'chat'
SYNC_MEMORY = 'memory'
SYNC_TYPES = (SYNC_FULL, SYNC_CHAT, SYNC_MEMORY)


@dataclass
class MemoryMetadata:
    """Metadata persisted next to every memory vector.

    Known fields are typed; anything else a caller attaches is carried in ``extra``
    and written back unchanged.
    """
    session_id: str = 'default'
    message_type: str = 'assistant'
    text_length: int = 0
    timestamp: str = ''
    memory_type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KEYS = ('sessionId', 'messageType', 'textLength', 'timestamp', 'memoryType')

    def to_document(self) -> Dict[str, Any]:
        document = dict(self.extra)
        document.update({
            'sessionId': self.session_id,
            'messageType': self.message_type,
            'textLength': self.text_length,
            'timestamp': self.timestamp,
        })
        if self.memory_type:
            document['memoryType'] = self.memory_type
        return document

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> 'MemoryMetadata':
        """Build typed metadata from a stored document, picking the subtype by ``memoryType``."""
        document = dict(document or {})
        if document.get('memoryType') == CONSCIOUS:
            return ConsciousMemoryMetadata._from_conscious_document(document)
        return cls(session_id=document.get('sessionId') or 'default',
                   message_type=document.get('messageType') or 'assistant',
                   text_length=int(document.get('textLength') or 0),
                   timestamp=document.get('timestamp') or '',
                   memory_type=document.get('memoryType'),
                   extra={k: v for k, v in document.items() if k not in cls._KEYS})

    @property
    def is_conscious(self) -> bool:
        return self.memory_type == CONSCIOUS


@dataclass
class ConsciousMemoryMetadata(MemoryMetadata):
    """Metadata of an explicitly saved, tagged note."""
    memory_type: Optional[str] = CONSCIOUS
    tags: List[str] = field(default_factory=list)
    importance: int = 5
    source: str = 'explicit'
    context: Optional[str] = None
    related_memory_ids: List[str] = field(default_factory=list)
    created_at: str = ''
    updated_at: Optional[str] = None

    _CONSCIOUS_KEYS = ('tags', 'importance', 'source', 'context', 'relatedMemoryIds', 'createdAt', 'updatedAt')

    def to_document(self) -> Dict[str, Any]:
        document = super().to_document()
        # List fields cross the store boundary as JSON strings
        document.update({
            'memoryType': CONSCIOUS,
            'tags': dump_list(self.tags),
            'importance': self.importance,
            'source': self.source,
            'relatedMemoryIds': dump_list(self.related_memory_ids),
            'createdAt': self.created_at,
        })
        if self.context:
            document['context'] = self.context
        if self.updated_at:
            document['updatedAt'] = self.updated_at
        return document

    @classmethod
    def _from_conscious_document(cls, document: Dict[str, Any]) -> 'ConsciousMemoryMetadata':
        known = MemoryMetadata._KEYS + cls._CONSCIOUS_KEYS
        try:
            importance = int(document.get('importance') or 5)
        except (TypeError, ValueError):
            importance = 5
        return cls(session_id=document.get('sessionId') or 'default',
                   message_type=document.get('messageType') or 'assistant',
                   text_length=int(document.get('textLength') or 0),
                   timestamp=document.get('timestamp') or '',
                   tags=[str(tag) for tag in load_list(document.get('tags'))],
                   importance=importance,
                   source=document.get('source') or 'explicit',
                   context=document.get('context') or None,
                   related_memory_ids=[str(i) for i in load_list(document.get('relatedMemoryIds'))],
                   created_at=document.get('createdAt') or document.get('timestamp') or '',
                   updated_at=document.get('updatedAt') or None,
                   extra={k: v for k, v in document.items() if k not in known})


@dataclass
class RetrievalResult:
    """A memory returned by a query; never persisted."""
    id: str
    text: str
    score: float
    metadata: MemoryMetadata
    search_type: str = SEMANTIC
    keyword_matches: int = 0

    @property
    def is_conscious(self) -> bool:
        return self.metadata.is_conscious

    @property
    def tags(self) -> List[str]:
        return list(getattr(self.metadata, 'tags', []))

    @property
    def importance(self) -> Optional[int]:
        return getattr(self.metadata, 'importance', None)

    @property
    def source(self) -> Optional[str]:
        return getattr(self.metadata, 'source', None)


@dataclass
class ConsciousMemory:
    """A saved note as seen by callers and the graph projection."""
    id: str
    content: str
    tags: List[str]
    importance: int
    session_id: str
    source: str
    created_at: str
    context: Optional[str] = None
    related_memory_ids: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    @classmethod
    def from_result(cls, result: RetrievalResult) -> 'ConsciousMemory':
        metadata = result.metadata
        return cls(id=result.id,
                   content=result.text,
                   tags=list(getattr(metadata, 'tags', [])),
                   importance=getattr(metadata, 'importance', 5),
                   session_id=metadata.session_id,
                   source=getattr(metadata, 'source', 'explicit'),
                   created_at=getattr(metadata, 'created_at', '') or metadata.timestamp,
                   context=getattr(metadata, 'context', None),
                   related_memory_ids=list(getattr(metadata, 'related_memory_ids', [])),
                   updated_at=getattr(metadata, 'updated_at', None))


@dataclass
class SearchOptions:
    """Filters and limits for memory search."""
    limit: Optional[int] = None
    session_id: Optional[str] = None
    min_score: Optional[float] = None
    message_type: Optional[str] = None  # user | assistant | both
    tags: List[str] = field(default_factory=list)
    importance_min: Optional[int] = None
    importance_max: Optional[int] = None
    source: Optional[str] = None
    conscious_only: bool = False


@dataclass
class Entity:
    """A node candidate produced by extraction, and its persisted counterpart in the graph."""
    id: str
    label: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Relationship:
    """An edge between two entities, merged on (source_id, type, target_id)."""
    source_id: str
    target_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = f'{self.source_id}_{self.type}_{self.target_id}'

    @property
    def key(self) -> tuple:
        return (self.source_id, self.type, self.target_id)


@dataclass
class ExtractionResult:
    """Entities and relationships produced from one text unit."""
    entities: List[Entity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)

    def extend(self, other: 'ExtractionResult') -> None:
        self.entities.extend(other.entities)
        self.relationships.extend(other.relationships)

    def is_empty(self) -> bool:
        return not self.entities and not self.relationships


@dataclass
class ChatMessage:
    """A chat turn as handed to the sync pass by the transcript owner."""
    id: str
    content: str
    role: str = 'user'
    session_id: str = 'default'
    created_at: Optional[str] = None
    tool_invocations: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncRequest:
    """An entry in the durable sync queue."""
    id: str
    timestamp: int
    type: str
    priority: int

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'timestamp': self.timestamp, 'type': self.type, 'priority': self.priority}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncRequest':
        return cls(id=str(data['id']),
                   timestamp=int(data.get('timestamp') or 0),
                   type=str(data.get('type') or SYNC_CHAT),
                   priority=int(data.get('priority') or 0))


@dataclass
class SyncState:
    """Checkpoint of the last completed sync pass."""
    last_sync_timestamp: Optional[str] = None
    chat_messages: List[str] = field(default_factory=list)
    conscious_memories: List[str] = field(default_factory=list)
    rag_memories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lastSyncTimestamp': self.last_sync_timestamp,
            'lastProcessedIds': {
                'chatMessages': list(self.chat_messages),
                'consciousMemories': list(self.conscious_memories),
                'ragMemories': list(self.rag_memories),
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncState':
        processed = data.get('lastProcessedIds') or {}
        return cls(last_sync_timestamp=data.get('lastSyncTimestamp'),
                   chat_messages=list(processed.get('chatMessages') or []),
                   conscious_memories=list(processed.get('consciousMemories') or []),
                   rag_memories=list(processed.get('ragMemories') or []))


@dataclass
class RetryItem:
    """A graph projection waiting to be retried. Lives in memory only."""
    operation: str  # save | update | delete
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: f'retry_{uuid.uuid4().hex[:12]}')
    retry_count: int = 0
    last_error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SyncMetrics:
    """Counters for one sync pass."""
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    entities_processed: int = 0
    relationships_processed: int = 0
    errors: int = 0
    status: str = 'running'  # running | completed | failed

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds,
            'entities_processed': self.entities_processed,
            'relationships_processed': self.relationships_processed,
            'errors': self.errors,
            'status': self.status,
        }
