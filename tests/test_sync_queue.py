"""
Tests for the durable sync queue and the sync state checkpoint.
"""

import json
import threading

import pytest

from kgmemory.models.core import SyncRequest
from kgmemory.services.sync_queue import SyncQueue
from kgmemory.services.sync_state import SyncStateStore


def _request(request_id, priority, request_type='chat'):
    return SyncRequest(id=request_id, timestamp=0, type=request_type, priority=priority)


@pytest.fixture
def queue(sync_config):
    return SyncQueue(config=sync_config)


class TestOrdering:

    def test_priority_then_insertion_order(self, queue):
        queue.enqueue(_request('first', 1))
        queue.enqueue(_request('second', 1))
        queue.enqueue(_request('urgent', 2, 'full'))

        assert [queue.dequeue_next().id for _ in range(3)] == ['urgent', 'first', 'second']
        assert queue.dequeue_next() is None

    def test_peek_does_not_remove(self, queue):
        queue.enqueue(_request('only', 1))
        assert queue.peek_next().id == 'only'
        assert queue.size() == 1

    def test_add_sync_request_defaults(self, queue):
        full = queue.add_sync_request('full')
        incremental = queue.add_sync_request('incremental')
        memory = queue.add_sync_request('memory', priority=5)

        assert full.priority == 2
        assert incremental.type == 'chat'
        assert incremental.priority == 1
        assert memory.priority == 5
        assert full.id.startswith('sync_')

    def test_unknown_type_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.add_sync_request('everything')


class TestDurability:

    def test_survives_new_instance(self, queue, sync_config):
        queue.enqueue(_request('a', 1))
        queue.enqueue(_request('b', 3))

        reopened = SyncQueue(config=sync_config)

        assert reopened.size() == 2
        assert reopened.dequeue_next().id == 'b'

    def test_file_format(self, queue, sync_config):
        queue.enqueue(_request('a', 1))
        with open(sync_config.queue_path, encoding='utf-8') as f:
            data = json.load(f)
        assert data == {'requests': [{'id': 'a', 'timestamp': 0, 'type': 'chat', 'priority': 1}]}

    def test_corrupt_file_reads_as_empty(self, queue, sync_config):
        with open(sync_config.queue_path, 'w', encoding='utf-8') as f:
            f.write('{not json')
        assert queue.size() == 0
        queue.enqueue(_request('a', 1))
        assert queue.size() == 1

    def test_clear(self, queue):
        queue.enqueue(_request('a', 1))
        queue.clear()
        assert queue.size() == 0


class TestDrain:
    """Tests for draining with failures and timeouts."""

    def test_drains_in_order(self, queue):
        for request_id, priority in (('low', 1), ('high', 2), ('low2', 1)):
            queue.enqueue(_request(request_id, priority))
        seen = []

        assert queue.drain_all(lambda request: seen.append(request.id)) == 3
        assert seen == ['high', 'low', 'low2']
        assert queue.size() == 0

    def test_error_does_not_stop_drain(self, queue):
        queue.enqueue(_request('bad', 2))
        queue.enqueue(_request('good', 1))
        seen = []

        def processor(request):
            if request.id == 'bad':
                raise RuntimeError('boom')
            seen.append(request.id)

        assert queue.drain_all(processor) == 1
        assert seen == ['good']
        assert queue.size() == 0

    def test_timeout_does_not_stop_drain(self, queue):
        release = threading.Event()
        queue.enqueue(_request('slow', 2))
        queue.enqueue(_request('fast', 1))
        seen = []

        def processor(request):
            if request.id == 'slow':
                release.wait(5)
                return
            seen.append(request.id)

        try:
            assert queue.drain_all(processor) == 1
        finally:
            release.set()
        assert seen == ['fast']
        assert queue.size() == 0

    def test_requeue_failed_lowers_priority(self, queue):
        queue.enqueue(_request('bad', 2, 'full'))

        def processor(request):
            raise RuntimeError('graph down')

        assert queue.drain_all(processor, requeue_failed=True) == 0
        requeued = queue.peek_next()
        assert requeued.id == 'bad'
        assert requeued.priority == 1

    def test_item_is_kept_while_processing(self, queue):
        queue.enqueue(_request('a', 1))
        sizes = []

        queue.drain_all(lambda request: sizes.append(queue.size()))

        assert sizes == [1]
        assert queue.size() == 0

    def test_reentrant_drain_is_ignored(self, queue):
        queue.enqueue(_request('a', 1))
        inner = []

        queue.drain_all(lambda request: inner.append(queue.drain_all(lambda r: None)))

        assert inner == [0]


class TestSyncStateStore:

    def test_missing_state_reads_none(self, tmp_path):
        assert SyncStateStore(str(tmp_path / 'state.json')).read() is None

    def test_record_pass_extends_and_deduplicates(self, tmp_path):
        store = SyncStateStore(str(tmp_path / 'state.json'))
        store.record_pass(chat_messages=['m1', 'm2'], conscious_memories=['c1'])
        state = store.record_pass(chat_messages=['m2', 'm3', 'm3'], rag_memories=['r1'])

        assert state.chat_messages == ['m1', 'm2', 'm3']
        assert state.conscious_memories == ['c1']
        assert state.rag_memories == ['r1']
        assert state.last_sync_timestamp

    def test_reset_replaces_ids(self, tmp_path):
        store = SyncStateStore(str(tmp_path / 'state.json'))
        store.record_pass(chat_messages=['m1'])
        state = store.record_pass(chat_messages=['m9'], reset=True)
        assert state.chat_messages == ['m9']

    def test_document_shape(self, tmp_path):
        path = tmp_path / 'state.json'
        SyncStateStore(str(path)).record_pass(conscious_memories=['c1'])

        data = json.loads(path.read_text(encoding='utf-8'))

        assert set(data) == {'lastSyncTimestamp', 'lastProcessedIds'}
        assert data['lastProcessedIds'] == {'chatMessages': [], 'consciousMemories': ['c1'], 'ragMemories': []}
