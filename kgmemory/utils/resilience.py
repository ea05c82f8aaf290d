"""
Bounded retries for best-effort side effects such as graph projection.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..models.core import RetryItem
from .config import RetryConfig
from .logging_config import get_logger

logger = get_logger(__name__)


def with_retry(fn: Callable[[], Any],
               max_retries: int = 3,
               backoff_seconds: float = 1.0,
               on_retry: Optional[Callable[[int, Exception], None]] = None,
               sleep: Callable[[float], None] = time.sleep) -> Any:
    """Call ``fn`` until it succeeds or ``max_retries`` attempts have failed.

    Waits ``backoff_seconds * attempt`` between attempts. ``on_retry`` is called
    after every failed attempt with the attempt number and the error.

    Raises:
        The last exception raised by ``fn`` once attempts are exhausted
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if on_retry is not None:
                on_retry(attempt, e)
            if attempt < max_retries:
                logger.debug(f'Attempt {attempt}/{max_retries} failed, retrying in {backoff_seconds * attempt}s: {e}')
                sleep(backoff_seconds * attempt)

    if last_error is None:
        raise ValueError('max_retries must be at least 1')
    raise last_error


class RetryQueue:
    """In-memory queue of failed projections, flushed on a timer.

    Every failed attempt counts towards ``max_total_attempts``; an item that
    reaches it is dropped and logged. Nothing here survives a restart.
    """

    def __init__(self, config: Optional[RetryConfig] = None, sync_fn: Optional[Callable[[RetryItem], Any]] = None):
        self.config = config or RetryConfig()
        self.sync_fn = sync_fn
        self.processing = False
        self._items: List[RetryItem] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

    def push(self, item: RetryItem) -> None:
        with self._lock:
            self._items.append(item)
        logger.info(f'Queued {item.operation} for retry ({item.id}, attempts so far: {item.retry_count})')

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def items(self) -> List[RetryItem]:
        with self._lock:
            return list(self._items)

    def flush(self, sync_fn: Optional[Callable[[RetryItem], Any]] = None) -> Dict[str, int]:
        """
        Retry every queued item once through ``with_retry``.

        Args:
            sync_fn: Callable performing the side effect, defaults to the one given at construction

        Returns:
            Counts of succeeded, requeued and dropped items
        """
        summary = {'succeeded': 0, 'requeued': 0, 'dropped': 0}
        sync_fn = sync_fn or self.sync_fn
        if sync_fn is None:
            raise ValueError('No sync function configured for retry queue')

        if self.processing:
            logger.debug('Retry flush already in progress, skipping')
            return summary

        self.processing = True
        try:
            with self._lock:
                batch, self._items = self._items, []

            for item in batch:
                remaining = self.config.max_total_attempts - item.retry_count
                if remaining <= 0:
                    self._drop(item)
                    summary['dropped'] += 1
                    continue

                def on_retry(attempt: int, error: Exception, item: RetryItem = item) -> None:
                    item.retry_count += 1
                    item.last_error = str(error)

                try:
                    with_retry(lambda item=item: sync_fn(item),
                               max_retries=min(self.config.max_retries, remaining),
                               backoff_seconds=self.config.backoff_seconds,
                               on_retry=on_retry)
                    summary['succeeded'] += 1
                except Exception:
                    if item.retry_count < self.config.max_total_attempts:
                        with self._lock:
                            self._items.append(item)
                        summary['requeued'] += 1
                    else:
                        self._drop(item)
                        summary['dropped'] += 1
        finally:
            self.processing = False

        if batch:
            logger.info(f'Retry flush: {summary["succeeded"]} succeeded, {summary["requeued"]} requeued, '
                        f'{summary["dropped"]} dropped')
        return summary

    def _drop(self, item: RetryItem) -> None:
        logger.error(f'Dropping {item.operation} retry {item.id} after {item.retry_count} attempts: {item.last_error}')

    def start(self) -> None:
        """Start the background flush loop."""
        if self._timer is not None and self._timer.is_alive():
            return
        self._stop.clear()
        self._timer = threading.Thread(target=self._run, name='retry-queue-flush', daemon=True)
        self._timer.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout)
            self._timer = None

    def _run(self) -> None:
        while not self._stop.wait(self.config.flush_interval_seconds):
            if not self.size():
                continue
            try:
                self.flush()
            except Exception as e:
                logger.error(f'Retry queue flush failed: {e}')
