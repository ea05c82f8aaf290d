"""
Tests for the MCP tool layer and the sync command line.
"""

import pytest

from kgmemory.mcp_interface import MemorySystem, MemoryTools, create_app
from kgmemory.services.extraction_pipeline import ExtractionPipeline
from kgmemory.services.knowledge_graph_sync import KnowledgeGraphSyncService
from kgmemory.services.sync_queue import SyncQueue
from kgmemory.services.sync_state import SyncStateStore
from kgmemory.sync_worker import parse_args
from kgmemory.utils.health_check import check_health, get_health_status


@pytest.fixture
def system(vector_store, graph_store, memory_service, embedder, sync_config):
    sync_service = KnowledgeGraphSyncService(graph_store,
                                             ExtractionPipeline(),
                                             memory_service=memory_service,
                                             vector_store=vector_store,
                                             state_store=SyncStateStore(sync_config.state_path))
    return MemorySystem(vector_store=vector_store,
                        memory_service=memory_service,
                        sync_service=sync_service,
                        sync_queue=SyncQueue(config=sync_config),
                        embedder=embedder,
                        graph_store=graph_store)


@pytest.fixture
def tools(system):
    return MemoryTools(system)


class TestMemoryTools:

    def test_save_then_search(self, tools):
        saved = tools.save_memory('The staging database is Postgres 15', tags=['infra'], importance=6)

        results = tools.search_memories('', tags=['infra'])

        assert saved['saved'] is True
        assert [r['id'] for r in results] == [saved['id']]
        assert results[0]['metadata']['importance'] == 6
        assert results[0]['metadata']['tags'] == '["infra"]'
        assert results[0]['search_type'] == 'semantic'

    def test_invalid_save_raises(self, tools):
        with pytest.raises(ValueError):
            tools.save_memory('note', importance=0)

    def test_update_and_delete(self, tools):
        memory_id = tools.save_memory('draft')['id']

        assert tools.update_memory(memory_id, content='final') == {'id': memory_id, 'updated': True}
        assert tools.search_memories('')[0]['text'] == 'final'
        assert tools.delete_memory(memory_id) == {'id': memory_id, 'deleted': True}
        assert tools.delete_memory(memory_id)['deleted'] is False

    def test_stats_and_tags(self, tools):
        tools.save_memory('one', tags=['b', 'a'])
        tools.save_memory('two', tags=['a'], importance=9)

        assert tools.get_all_tags() == ['a', 'b']
        stats = tools.get_memory_stats()
        assert stats['total_conscious_memories'] == 2
        assert stats['tags'] == {'a': 2, 'b': 1}

    def test_request_and_process_sync(self, tools, system):
        tools.save_memory('sync me', tags=['graph'])

        request = tools.request_sync('full')
        assert request['type'] == 'full'
        assert request['priority'] == 2

        assert tools.process_sync_queue() == {'processed': 1, 'remaining': 0}
        assert system.graph_store.find_node('tag-graph') is not None

    def test_process_sync_requires_graph(self, tools, system):
        system.graph_store = None
        with pytest.raises(Exception):
            tools.process_sync_queue()

    def test_health(self, tools):
        health = tools.health()
        assert health['vector_store']['healthy'] is True
        assert health['graph_store']['healthy'] is True
        assert health['llm'] == {'healthy': True, 'service': 'Amazon Bedrock LLM', 'configured': False}

    def test_app_registers_tools(self, tools):
        assert create_app(tools) is not None


class TestHealthCheck:

    def test_unhealthy_component_reported(self, embedder, vector_store):
        embedder.fail = True

        status = get_health_status({'embedder': embedder, 'vector_store': vector_store})

        assert status['embedder']['healthy'] is False
        assert status['vector_store']['healthy'] is True
        assert check_health({'embedder': embedder}) is False

    def test_raising_component(self):

        class Exploding:

            def health_check(self):
                raise RuntimeError('no route to host')

        status = get_health_status({'graph_store': Exploding()})
        assert status['graph_store'] == {
            'healthy': False,
            'service': 'Amazon Neptune',
            'configured': True,
            'error': 'no route to host'
        }


class TestSyncWorkerArgs:

    def test_parses_actions(self):
        assert parse_args(['--full-resync']).full_resync is True
        assert parse_args(['--drain', '--requeue-failed']).requeue_failed is True
        args = parse_args(['--enqueue', 'memory', '--priority', '3'])
        assert (args.enqueue, args.priority) == ('memory', 3)

    def test_rejects_conflicting_actions(self):
        with pytest.raises(SystemExit):
            parse_args(['--drain', '--full-resync'])

    def test_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            parse_args(['--enqueue', 'weekly'])
