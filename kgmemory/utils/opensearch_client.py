"""
OpenSearch-backed vector store for memories.
"""

import re
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import MemoryMetadata, RetrievalResult, SearchOptions
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso, now_ms

logger = get_logger(__name__)

MAX_QUERY_CHARS = 500
SENTENCE_BREAK = re.compile(r'(?<=[.!?])\s+')


class VectorStoreError(Exception):
    """Custom exception for vector store errors."""
    pass


def preprocess_query(query: str) -> str:
    """Reduce a long conversational query to its most recent clauses.

    Queries up to 500 characters are returned verbatim. Longer ones keep their
    last five sentences, shortened down to the last three while the result is
    still over 500 characters. Without sentence breaks the trailing 500
    characters are used.
    """
    query = (query or '').strip()
    if len(query) <= MAX_QUERY_CHARS:
        return query

    sentences = [s.strip() for s in SENTENCE_BREAK.split(query) if s.strip()]
    if len(sentences) < 2:
        return query[-MAX_QUERY_CHARS:]

    count = min(5, len(sentences))
    tail = ' '.join(sentences[-count:])
    while len(tail) > MAX_QUERY_CHARS and count > 3:
        count -= 1
        tail = ' '.join(sentences[-count:])
    return tail


def dynamic_min_score(base: float, query_length: int) -> float:
    """Lower the score threshold for longer queries.

    No change under 200 characters, then -0.05 up to 500, -0.10 up to 1000 and
    -0.15 beyond. An adjusted threshold never goes below 0.3, and a base already
    under 0.3 is left alone.
    """
    if query_length < 200:
        adjustment = 0.0
    elif query_length <= 500:
        adjustment = 0.05
    elif query_length <= 1000:
        adjustment = 0.10
    else:
        adjustment = 0.15

    if adjustment == 0.0:
        return base
    return max(base - adjustment, min(base, 0.3))


def knn_score_to_similarity(score: float) -> float:
    """Convert an OpenSearch cosinesimil k-NN score into ``1 - cosine distance``, clamped to [0, 1].

    The nmslib/faiss engines report ``1 / (1 + distance)``.
    """
    if score <= 0:
        return 0.0
    distance = 1.0 / score - 1.0
    return max(0.0, min(1.0, 1.0 - distance))


def generate_memory_id() -> str:
    return f'mem_{now_ms()}_{uuid.uuid4().hex[:9]}'


class OpenSearchVectorStore:
    """Persists (vector, text, metadata) documents and answers nearest-neighbour queries."""

    def __init__(self, config: OpenSearchConfig, embedder, client: Optional[OpenSearch] = None, default_min_score: float = 0.5):
        """
        Initialize the vector store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            embedder: Embedding provider exposing embed_document/embed_query
            client: Optional pre-built OpenSearch client
            default_min_score: Threshold used when a query gives none

        Raises:
            VectorStoreError: If no endpoint or AWS credentials are available
        """
        self.config = config
        self.embedder = embedder
        self.index_name = config.index_name
        self.default_min_score = default_min_score
        self.client = client or self._connect()
        self.ensure_index()

        logger.info(f'Initialized vector store on index {self.index_name}')

    def _connect(self) -> OpenSearch:
        if not self.config.endpoint:
            raise VectorStoreError('OPENSEARCH_ENDPOINT is not configured')

        credentials = boto3.Session().get_credentials()
        if credentials is None:
            raise VectorStoreError('No AWS credentials found for OpenSearch')
        auth = AWS4Auth(region=self.config.region, service=self.config.service, refreshable_credentials=credentials)

        endpoint = self.config.endpoint
        if '://' in endpoint:
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': self.config.port
        }],
                          http_auth=auth,
                          use_ssl=True,
                          verify_certs=True,
                          connection_class=RequestsHttpConnection)

    def ensure_index(self) -> bool:
        """
        Create the k-NN index if it doesn't exist.

        Returns:
            True if the index was created, False if it already existed

        Raises:
            VectorStoreError: If the index cannot be created
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return False

            index_body = {
                'mappings': {
                    'properties': {
                        'text': {
                            'type': 'text'
                        },
                        'timestamp': {
                            'type': 'date'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'metadata': {
                            'properties': {
                                'sessionId': {
                                    'type': 'keyword'
                                },
                                'messageType': {
                                    'type': 'keyword'
                                },
                                'memoryType': {
                                    'type': 'keyword'
                                },
                                'textLength': {
                                    'type': 'integer'
                                }
                            }
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            if self.config.index_settle_seconds > 0:
                logger.info(f'Waiting {self.config.index_settle_seconds}s for index {self.index_name} sync-up...')
                time.sleep(self.config.index_settle_seconds)
            return True

        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise VectorStoreError(f'Failed to create index: {e}') from e

    def store(self, text: str, metadata: Optional[MemoryMetadata] = None, memory_id: Optional[str] = None) -> str:
        """
        Embed and persist a memory. Storing an existing id overwrites it.

        Args:
            text: Memory text
            metadata: Typed metadata; text length and timestamp are filled in here
            memory_id: Id to write under, generated when absent

        Returns:
            The memory id

        Raises:
            VectorStoreError: If embedding or indexing fails
        """
        memory_id = memory_id or generate_memory_id()
        metadata = metadata or MemoryMetadata()
        metadata.text_length = len(text)
        metadata.timestamp = metadata.timestamp or now_iso()

        try:
            embedding = self.embedder.embed_document(text)
        except Exception as e:
            logger.error(f'Failed to embed memory {memory_id}: {e}')
            raise VectorStoreError(f'Embedding failed for memory {memory_id}: {e}') from e

        document = {'text': text, 'embedding': embedding, 'timestamp': metadata.timestamp, 'metadata': metadata.to_document()}

        try:
            response = self.client.index(index=self.index_name, body=document, id=memory_id)
        except OpenSearchException as e:
            logger.error(f'Error indexing memory {memory_id}: {e}')
            raise VectorStoreError(f'Failed to store memory: {e}') from e

        if response.get('result') not in ('created', 'updated'):
            logger.warning(f'Unexpected result indexing memory {memory_id}: {response}')
        logger.debug(f'Stored memory {memory_id} ({len(text)} chars)')
        return memory_id

    @staticmethod
    def _to_result(hit: Dict[str, Any], score: float) -> RetrievalResult:
        source = hit.get('_source', {})
        return RetrievalResult(id=hit['_id'],
                               text=source.get('text', ''),
                               score=score,
                               metadata=MemoryMetadata.from_document(source.get('metadata')))

    @staticmethod
    def _matches(result: RetrievalResult, session_id: Optional[str], message_type: Optional[str]) -> bool:
        if session_id and result.metadata.session_id != session_id:
            return False
        if message_type and message_type != 'both' and result.metadata.message_type != message_type:
            return False
        return True

    def retrieve(self, query: str, options: Optional[SearchOptions] = None) -> List[RetrievalResult]:
        """
        Nearest-neighbour search.

        Never raises: any failure is logged and yields an empty list.

        Args:
            query: Natural language query
            options: Limit, min score, session and message-type filters

        Returns:
            Results sorted by descending score
        """
        options = options or SearchOptions()
        limit = options.limit or 10
        base_score = self.default_min_score if options.min_score is None else options.min_score

        try:
            processed = preprocess_query(query)
            min_score = dynamic_min_score(base_score, len(processed))
            candidates = max(limit * 3, 15)

            search_body = {
                'size': candidates,
                'query': {
                    'knn': {
                        'embedding': {
                            'vector': self.embedder.embed_query(processed),
                            'k': candidates
                        }
                    }
                },
                '_source': {
                    'excludes': ['embedding']
                }
            }
            response = self.client.search(index=self.index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                result = self._to_result(hit, knn_score_to_similarity(hit.get('_score') or 0.0))
                if result.score >= min_score and self._matches(result, options.session_id, options.message_type):
                    results.append(result)

            results.sort(key=lambda r: r.score, reverse=True)
            logger.debug(f'Retrieved {len(results[:limit])} memories (min score {min_score:.2f}) for query: {processed[:50]}')
            return results[:limit]

        except Exception as e:
            logger.error(f'Memory retrieval failed: {e}')
            return []

    def list_all(self, limit: int = 100, session_id: Optional[str] = None) -> List[RetrievalResult]:
        """
        Most recent memories first, without relevance scoring.

        Raises:
            VectorStoreError: If the scan fails
        """
        search_body = {
            'size': limit,
            'query': {
                'match_all': {}
            },
            'sort': [{
                'timestamp': {
                    'order': 'desc'
                }
            }],
            '_source': {
                'excludes': ['embedding']
            }
        }
        if session_id:
            search_body['query'] = {'bool': {'filter': [{'term': {'metadata.sessionId': session_id}}]}}

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error listing memories: {e}')
            raise VectorStoreError(f'Failed to list memories: {e}') from e

        return [self._to_result(hit, 1.0) for hit in response['hits']['hits']]

    def get_by_id(self, memory_id: str) -> Optional[RetrievalResult]:
        """
        Fetch one memory.

        Returns:
            The memory with score 1.0, or None if it does not exist

        Raises:
            VectorStoreError: On store errors other than not-found
        """
        try:
            hit = self.client.get(index=self.index_name, id=memory_id, _source_excludes=['embedding'])
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting memory {memory_id}: {e}')
            raise VectorStoreError(f'Failed to get memory: {e}') from e

        if not hit.get('found', True):
            return None
        return self._to_result(hit, 1.0)

    def count(self) -> int:
        try:
            return int(self.client.count(index=self.index_name)['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting memories: {e}')
            raise VectorStoreError(f'Failed to count memories: {e}') from e

    def delete(self, memory_ids: Union[str, Sequence[str]]) -> bool:
        """
        Delete one memory or a batch.

        Returns:
            True if anything was deleted
        """
        ids = [memory_ids] if isinstance(memory_ids, str) else list(memory_ids)
        if not ids:
            return False

        try:
            response = self.client.delete_by_query(index=self.index_name, body={'query': {'ids': {'values': ids}}})
        except OpenSearchException as e:
            logger.error(f'Error deleting memories {ids}: {e}')
            raise VectorStoreError(f'Failed to delete memories: {e}') from e

        deleted = int(response.get('deleted', 0))
        if deleted < len(ids):
            logger.warning(f'Deleted {deleted} of {len(ids)} requested memories')
        return deleted > 0

    def clear_all(self) -> int:
        """
        Delete every memory in the index.

        Returns:
            Number of deleted documents
        """
        try:
            response = self.client.delete_by_query(index=self.index_name, body={'query': {'match_all': {}}})
        except OpenSearchException as e:
            logger.error(f'Error clearing index {self.index_name}: {e}')
            raise VectorStoreError(f'Failed to clear memories: {e}') from e

        deleted = int(response.get('deleted', 0))
        logger.info(f'Cleared {deleted} memories from {self.index_name}')
        return deleted

    def health_check(self) -> bool:
        """
        Perform a health check on OpenSearch.

        Returns:
            True if the index is reachable, False otherwise
        """
        try:
            return bool(self.client.indices.exists(index=self.index_name))
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
