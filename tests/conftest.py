"""
Shared fixtures: in-memory doubles of the OpenSearch client and the Gremlin
traversal source, plus a controllable embedder.
"""

import copy
import itertools
import math
from typing import Dict, List, Optional

import pytest
from gremlin_python.process.traversal import Cardinality, T
from opensearchpy.exceptions import NotFoundError, TransportError

from kgmemory.services.conscious_memory import ConsciousMemoryService
from kgmemory.utils.config import NeptuneConfig, OpenSearchConfig, RetryConfig, SearchConfig, SyncConfig
from kgmemory.utils.neptune_client import NeptuneGraphStore
from kgmemory.utils.opensearch_client import OpenSearchVectorStore


class StubEmbed:
    """Returns preset vectors; unknown texts get the default vector."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = dict(vectors or {})
        self.default = default or [0.0, 0.0, 1.0]
        self.fail = False

    def _embed(self, text: str) -> List[float]:
        if self.fail:
            raise RuntimeError('embedding service unavailable')
        return list(self.vectors.get(text, self.default))

    def embed_document(self, text: str) -> List[float]:
        return self._embed(text)

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)

    def dimensions(self) -> int:
        return len(self.default)

    def ready(self) -> bool:
        return True

    def health_check(self) -> bool:
        return not self.fail


def _cosine(a: List[float], b: List[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / norm


class FakeIndices:

    def __init__(self):
        self.created: Dict[str, dict] = {}

    def exists(self, index):
        return index in self.created

    def create(self, index, body):
        self.created[index] = body
        return {'acknowledged': True}


class FakeOpenSearch:
    """The subset of ``opensearchpy.OpenSearch`` the vector store calls, over a dict."""

    def __init__(self):
        self.indices = FakeIndices()
        self.docs: Dict[str, dict] = {}
        self.fail_on = set()
        self.search_calls: List[dict] = []

    def _check(self, operation):
        if operation in self.fail_on:
            raise TransportError(500, 'internal_error', {'operation': operation})

    @staticmethod
    def _hit(doc_id, doc, score):
        source = {k: copy.deepcopy(v) for k, v in doc.items() if k != 'embedding'}
        return {'_id': doc_id, '_score': score, '_source': source}

    def index(self, index, body, id):
        self._check('index')
        result = 'updated' if id in self.docs else 'created'
        self.docs[id] = copy.deepcopy(body)
        return {'_id': id, 'result': result}

    def get(self, index, id, **kwargs):
        self._check('get')
        if id not in self.docs:
            raise NotFoundError(404, 'not_found', {'found': False})
        hit = self._hit(id, self.docs[id], None)
        hit['found'] = True
        return hit

    def search(self, index, body):
        self._check('search')
        self.search_calls.append(body)
        query = body.get('query', {})
        size = body.get('size', 10)

        if 'knn' in query:
            vector = query['knn']['embedding']['vector']
            scored = [(doc_id, 1.0 / (2.0 - _cosine(vector, doc['embedding']))) for doc_id, doc in self.docs.items()]
            scored.sort(key=lambda item: item[1], reverse=True)
            hits = [self._hit(doc_id, self.docs[doc_id], score) for doc_id, score in scored[:size]]
            return {'hits': {'hits': hits}}

        items = list(self.docs.items())
        if 'bool' in query:
            session_id = query['bool']['filter'][0]['term']['metadata.sessionId']
            items = [(doc_id, doc) for doc_id, doc in items if doc['metadata'].get('sessionId') == session_id]
        items.sort(key=lambda item: item[1].get('timestamp', ''), reverse=True)
        return {'hits': {'hits': [self._hit(doc_id, doc, None) for doc_id, doc in items[:size]]}}

    def count(self, index):
        self._check('count')
        return {'count': len(self.docs)}

    def delete_by_query(self, index, body):
        self._check('delete_by_query')
        query = body['query']
        if 'ids' in query:
            targets = [doc_id for doc_id in query['ids']['values'] if doc_id in self.docs]
        else:
            targets = list(self.docs)
        for doc_id in targets:
            del self.docs[doc_id]
        return {'deleted': len(targets)}


class FakeElement:
    _ids = itertools.count(1)

    def __init__(self, label: str):
        self.id = next(self._ids)
        self.label = label
        self.properties: Dict[str, object] = {}


class FakeVertex(FakeElement):
    pass


class FakeEdge(FakeElement):

    def __init__(self, label: str, out_v: FakeVertex, in_v: FakeVertex):
        super().__init__(label)
        self.out_v = out_v
        self.in_v = in_v


class FakeTraversal:
    """Eagerly evaluated traversal over a FakeGraph."""

    def __init__(self, graph: 'FakeGraph', elements: list):
        self.graph = graph
        self.elements = elements
        self._edge_label = None

    def has(self, key, value):
        return FakeTraversal(self.graph, [e for e in self.elements if e.properties.get(key) == value])

    def has_label(self, label):
        return FakeTraversal(self.graph, [e for e in self.elements if e.label == label])

    def limit(self, n):
        return FakeTraversal(self.graph, self.elements[:n])

    def count(self):
        return FakeTraversal(self.graph, [len(self.elements)])

    def drop(self):
        for element in self.elements:
            self.graph.remove(element)
        return FakeTraversal(self.graph, [])

    def property(self, *args):
        if isinstance(args[0], Cardinality):
            args = args[1:]
        key, value = args
        for element in self.elements:
            element.properties[key] = value
        return self

    def addE(self, label):
        self._edge_label = label
        return self

    def to(self, vertex):
        edges = [self.graph.add_edge(self._edge_label, source, vertex) for source in self.elements]
        return FakeTraversal(self.graph, edges)

    def value_map(self, include_tokens=False):
        rows = []
        for element in self.elements:
            if isinstance(element, FakeVertex):
                row = {key: [value] for key, value in element.properties.items()}
            else:
                row = dict(element.properties)
            if include_tokens:
                row[T.id] = element.id
                row[T.label] = element.label
            rows.append(row)
        return FakeTraversal(self.graph, rows)

    def next(self):
        if not self.elements:
            raise StopIteration
        return self.elements[0]

    def to_list(self):
        return list(self.elements)

    def iterate(self):
        return self


class FakeGraph:
    """In-memory stand-in for a Gremlin traversal source."""

    def __init__(self):
        self.vertices: Dict[int, FakeVertex] = {}
        self.edges: Dict[int, FakeEdge] = {}

    def _resolve(self, pool, refs):
        return [pool[ref.id if isinstance(ref, FakeElement) else ref] for ref in refs]

    def V(self, *refs):
        return FakeTraversal(self, self._resolve(self.vertices, refs) if refs else list(self.vertices.values()))

    def E(self, *refs):
        return FakeTraversal(self, self._resolve(self.edges, refs) if refs else list(self.edges.values()))

    def addV(self, label):
        vertex = FakeVertex(label)
        self.vertices[vertex.id] = vertex
        return FakeTraversal(self, [vertex])

    def add_edge(self, label, out_v, in_v):
        edge = FakeEdge(label, out_v, in_v)
        self.edges[edge.id] = edge
        return edge

    def remove(self, element):
        if isinstance(element, FakeVertex):
            self.vertices.pop(element.id, None)
            for edge in list(self.edges.values()):
                if edge.out_v is element or edge.in_v is element:
                    self.edges.pop(edge.id)
        else:
            self.edges.pop(element.id, None)

    def vertices_with(self, key, value):
        return [v for v in self.vertices.values() if v.properties.get(key) == value]


class FlakyGraphStore:
    """Graph store whose writes fail a configurable number of times."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.nodes: Dict[str, object] = {}
        self.relationships = []
        self.deleted: List[str] = []

    def _maybe_fail(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError('graph unavailable')

    def upsert_node(self, node):
        self._maybe_fail()
        self.nodes[node.id] = node
        return True

    def upsert_relationship(self, rel):
        if rel.source_id not in self.nodes or rel.target_id not in self.nodes:
            return False
        self.relationships.append(rel)
        return True

    def delete_node(self, node_id):
        self._maybe_fail()
        self.deleted.append(node_id)
        return self.nodes.pop(node_id, None) is not None

    def delete_nodes_by_type(self, label):
        doomed = [node_id for node_id, node in self.nodes.items() if node.label == label]
        for node_id in doomed:
            del self.nodes[node_id]
        return len(doomed)

    def health_check(self):
        return True

    def close(self):
        pass


@pytest.fixture
def opensearch_config():
    return OpenSearchConfig(endpoint='',
                            port=443,
                            region='us-east-1',
                            service='es',
                            index_name='test_memories',
                            dimension=3,
                            index_settle_seconds=0)


@pytest.fixture
def fake_client():
    return FakeOpenSearch()


@pytest.fixture
def embedder():
    return StubEmbed()


@pytest.fixture
def vector_store(opensearch_config, embedder, fake_client):
    return OpenSearchVectorStore(opensearch_config, embedder, client=fake_client)


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def graph_store(fake_graph):
    return NeptuneGraphStore(NeptuneConfig(endpoint='', port=8182, region='us-east-1'), g=fake_graph)


@pytest.fixture
def search_config():
    return SearchConfig()


@pytest.fixture
def retry_config():
    return RetryConfig(max_retries=3, backoff_seconds=0, max_total_attempts=10, flush_interval_seconds=3600)


@pytest.fixture
def sync_config(tmp_path):
    return SyncConfig(queue_path=str(tmp_path / 'queue.json'),
                      state_path=str(tmp_path / 'state.json'),
                      item_timeout_seconds=0.5,
                      projection_workers=2,
                      chat_path=str(tmp_path / 'chat.json'))


@pytest.fixture
def memory_service(vector_store, search_config, retry_config):
    service = ConsciousMemoryService(vector_store, search_config=search_config, retry_config=retry_config)
    yield service
    service.close()


@pytest.fixture
def flaky_graph():
    return FlakyGraphStore()
