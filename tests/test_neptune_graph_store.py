"""
Tests for the Neptune graph store against the in-memory traversal source.
"""

from datetime import datetime

import pytest

from kgmemory.models.core import Entity, Relationship
from kgmemory.utils.config import NeptuneConfig
from kgmemory.utils.neptune_client import GraphStoreError, NeptuneGraphStore, sanitize_properties


class TestSanitizeProperties:

    def test_converts_values(self):
        properties = sanitize_properties({
            'when': datetime(2024, 1, 2, 3, 4, 5),
            'tags': ['a', 'b'],
            'meta': {'k': 1},
            'gone': None,
            'count': 3,
        })
        assert properties == {'when': '2024-01-02T03:04:05', 'tags': '["a", "b"]', 'meta': '{"k": 1}', 'count': 3}


class TestNodeUpsert:
    """Tests for merge-on-id node writes."""

    def test_upsert_twice_keeps_one_node_with_latest_values(self, graph_store, fake_graph):
        graph_store.upsert_node(Entity('tag-python', 'Tag', {'name': 'python', 'uses': 1}))
        graph_store.upsert_node(Entity('tag-python', 'Tag', {'name': 'Python', 'uses': 2}))

        vertices = fake_graph.vertices_with('id', 'tag-python')
        assert len(vertices) == 1
        assert vertices[0].properties['name'] == 'Python'
        assert vertices[0].properties['uses'] == 2

    def test_created_at_survives_updates(self, graph_store, fake_graph):
        graph_store.upsert_node(Entity('n1', 'Thing', {}))
        created = fake_graph.vertices_with('id', 'n1')[0].properties['created_at']
        graph_store.upsert_node(Entity('n1', 'Thing', {'created_at': 'overwritten?'}))

        properties = fake_graph.vertices_with('id', 'n1')[0].properties
        assert properties['created_at'] == created
        assert properties['updated_at'] >= created

    def test_find_node(self, graph_store):
        graph_store.upsert_node(Entity('cm-1', 'ConsciousMemory', {'tags': ['x'], 'importance': 4}))

        node = graph_store.find_node('cm-1')

        assert node.label == 'ConsciousMemory'
        assert node.properties['tags'] == '["x"]'
        assert node.properties['importance'] == 4
        assert graph_store.find_node('missing') is None


class TestRelationshipUpsert:
    """Tests for merge-on-(source, type, target) edge writes."""

    @pytest.fixture
    def endpoints(self, graph_store):
        graph_store.upsert_node(Entity('a', 'Thing', {}))
        graph_store.upsert_node(Entity('b', 'Thing', {}))

    def test_upsert_twice_keeps_one_edge(self, graph_store, fake_graph, endpoints):
        assert graph_store.upsert_relationship(Relationship('a', 'b', 'LINKS', {'weight': 1}))
        assert graph_store.upsert_relationship(Relationship('a', 'b', 'LINKS', {'weight': 5}))

        assert len(fake_graph.edges) == 1
        assert graph_store.find_relationship('a', 'LINKS', 'b')['weight'] == 5

    def test_distinct_types_are_distinct_edges(self, graph_store, fake_graph, endpoints):
        graph_store.upsert_relationship(Relationship('a', 'b', 'LINKS'))
        graph_store.upsert_relationship(Relationship('a', 'b', 'MENTIONS'))
        assert len(fake_graph.edges) == 2

    def test_missing_endpoint_is_a_no_op(self, graph_store, fake_graph, endpoints):
        assert graph_store.upsert_relationship(Relationship('a', 'nowhere', 'LINKS')) is False
        assert fake_graph.edges == {}

    def test_delete_relationship(self, graph_store, endpoints):
        graph_store.upsert_relationship(Relationship('a', 'b', 'LINKS'))
        assert graph_store.delete_relationship('a', 'LINKS', 'b') is True
        assert graph_store.delete_relationship('a', 'LINKS', 'b') is False
        assert graph_store.find_relationship('a', 'LINKS', 'b') is None


class TestDeletes:

    def test_delete_node_detaches_edges(self, graph_store, fake_graph):
        for node_id in ('a', 'b'):
            graph_store.upsert_node(Entity(node_id, 'Thing', {}))
        graph_store.upsert_relationship(Relationship('a', 'b', 'LINKS'))

        assert graph_store.delete_node('a') is True
        assert fake_graph.edges == {}
        assert graph_store.find_node('b') is not None
        assert graph_store.delete_node('a') is False

    def test_delete_nodes_by_type(self, graph_store):
        graph_store.upsert_node(Entity('cm-1', 'ConsciousMemory', {}))
        graph_store.upsert_node(Entity('cm-2', 'ConsciousMemory', {}))
        graph_store.upsert_node(Entity('tag-a', 'Tag', {}))

        assert graph_store.delete_nodes_by_type('ConsciousMemory') == 2
        assert graph_store.delete_nodes_by_type('ConsciousMemory') == 0
        assert graph_store.get_statistics(['Tag']) == {'nodes': 1, 'relationships': 0, 'Tag': 1}

    def test_clear_graph(self, graph_store, fake_graph):
        graph_store.upsert_node(Entity('a', 'Thing', {}))
        assert graph_store.clear_graph() is True
        assert fake_graph.vertices == {}


class TestConnection:

    def test_missing_endpoint_is_fatal(self):
        with pytest.raises(GraphStoreError):
            NeptuneGraphStore(NeptuneConfig(endpoint='', port=8182, region='us-east-1'))

    def test_driver_errors_are_wrapped(self, graph_store):

        class BrokenTraversalSource:

            def V(self, *args):
                raise RuntimeError('server returned 500')

        graph_store.g = BrokenTraversalSource()
        with pytest.raises(GraphStoreError):
            graph_store.upsert_node(Entity('a', 'Thing', {}))
        assert graph_store.health_check() is False

    def test_health_check(self, graph_store):
        assert graph_store.health_check() is True
