"""
Durable, priority-ordered queue of knowledge graph sync requests.

The queue lives in a JSON file shaped ``{"requests": [...]}``. Every mutation
reads the whole file, changes it and writes it back through a temp file and
``os.replace`` so a crash never leaves a half-written queue. Within a process a
lock makes the queue object the single writer; separate processes sharing one
file are not supported.
"""

import json
import os
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..models.core import SYNC_CHAT, SYNC_FULL, SYNC_TYPES, SyncRequest
from ..utils.config import SyncConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_ms

logger = get_logger(__name__)


class SyncQueueError(Exception):
    """Custom exception for sync queue errors."""
    pass


def default_priority(sync_type: str) -> int:
    return 2 if sync_type == SYNC_FULL else 1


class SyncQueue:
    """File-backed sync request queue with at-least-once draining."""

    def __init__(self, path: Optional[str] = None, config: Optional[SyncConfig] = None):
        """
        Args:
            path: Queue file, defaults to ``config.queue_path``
            config: SyncConfig with the per-item timeout
        """
        self.config = config or SyncConfig()
        self.path = Path(path or self.config.queue_path)
        self.processing = False
        self._lock = threading.RLock()

    def _load(self) -> List[SyncRequest]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or '{}')
        except json.JSONDecodeError as e:
            logger.error(f'Sync queue file {self.path} is corrupt, starting empty: {e}')
            return []
        except OSError as e:
            raise SyncQueueError(f'Failed to read sync queue {self.path}: {e}') from e

        requests = []
        for item in data.get('requests', []):
            try:
                requests.append(SyncRequest.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f'Skipping malformed sync request {item!r}: {e}')
        return requests

    def _save(self, requests: List[SyncRequest]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f'{self.path.name}.tmp')
            tmp_path.write_text(json.dumps({'requests': [r.to_dict() for r in requests]}, indent=2), encoding='utf-8')
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise SyncQueueError(f'Failed to write sync queue {self.path}: {e}') from e

    @staticmethod
    def _next_index(requests: List[SyncRequest]) -> int:
        # Highest priority wins; the earliest entry wins among equals
        best = 0
        for index, request in enumerate(requests):
            if request.priority > requests[best].priority:
                best = index
        return best

    def enqueue(self, request: SyncRequest) -> SyncRequest:
        if request.type not in SYNC_TYPES:
            raise ValueError(f'Unknown sync type: {request.type}')
        with self._lock:
            requests = self._load()
            requests.append(request)
            self._save(requests)
        logger.info(f'Queued {request.type} sync request {request.id} (priority {request.priority})')
        return request

    def add_sync_request(self, sync_type: str = SYNC_CHAT, priority: Optional[int] = None) -> SyncRequest:
        """
        Build and enqueue a request.

        Args:
            sync_type: full, chat, memory, or incremental (an alias for chat)
            priority: Defaults to 2 for full syncs and 1 otherwise

        Returns:
            The queued request
        """
        if sync_type == 'incremental':
            sync_type = SYNC_CHAT
        timestamp = now_ms()
        request = SyncRequest(id=f'sync_{timestamp}_{random.randint(0, 0xFFFFFF):06x}',
                              timestamp=timestamp,
                              type=sync_type,
                              priority=default_priority(sync_type) if priority is None else priority)
        return self.enqueue(request)

    def peek_next(self) -> Optional[SyncRequest]:
        with self._lock:
            requests = self._load()
            return requests[self._next_index(requests)] if requests else None

    def dequeue_next(self) -> Optional[SyncRequest]:
        """Remove and return the highest-priority request, or None when empty."""
        with self._lock:
            requests = self._load()
            if not requests:
                return None
            request = requests.pop(self._next_index(requests))
            self._save(requests)
            return request

    def _remove(self, request_id: str) -> None:
        with self._lock:
            requests = self._load()
            remaining = [r for r in requests if r.id != request_id]
            if len(remaining) != len(requests):
                self._save(remaining)

    def _run_with_timeout(self, processor: Callable[[SyncRequest], Any], request: SyncRequest) -> Any:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='sync-request')
        try:
            future = executor.submit(processor, request)
            return future.result(timeout=self.config.item_timeout_seconds)
        finally:
            # A timed-out processor is abandoned, not waited for
            executor.shutdown(wait=False)

    def drain_all(self, processor: Callable[[SyncRequest], Any], requeue_failed: bool = False) -> int:
        """
        Process queued requests in priority order until the queue is empty.

        A request leaves the file only after its processor has finished or
        failed, so a crash mid-request replays it on the next drain. Failures
        and timeouts are logged and never stop the loop.

        Args:
            processor: Callable handling one request
            requeue_failed: Put failed requests back with priority lowered by one

        Returns:
            Number of requests processed successfully
        """
        if self.processing:
            logger.info('Sync queue drain already in progress')
            return 0

        self.processing = True
        processed = 0
        failed: List[SyncRequest] = []
        try:
            while True:
                request = self.peek_next()
                if request is None:
                    break

                try:
                    self._run_with_timeout(processor, request)
                    processed += 1
                    logger.info(f'Processed sync request {request.id} ({request.type})')
                except FutureTimeoutError:
                    logger.error(f'Sync request {request.id} timed out after {self.config.item_timeout_seconds}s')
                    failed.append(request)
                except Exception as e:
                    logger.error(f'Sync request {request.id} failed: {e}')
                    failed.append(request)
                finally:
                    self._remove(request.id)
        finally:
            self.processing = False

        if requeue_failed:
            for request in failed:
                self.enqueue(SyncRequest(id=request.id, timestamp=request.timestamp, type=request.type,
                                         priority=max(0, request.priority - 1)))
        return processed

    def size(self) -> int:
        with self._lock:
            return len(self._load())

    def clear(self) -> None:
        with self._lock:
            self._save([])
        logger.info('Cleared sync queue')
