"""
Command line entry point for knowledge graph sync.
"""

import argparse
import json
import sys
from typing import List, Optional

from .models.core import SYNC_TYPES
from .utils.config import config
from .utils.logging_config import get_logger

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='kgmemory-sync', description='Synchronize memories into the knowledge graph')
    action = parser.add_mutually_exclusive_group()
    action.add_argument('--full-resync', action='store_true', help='Reprocess everything and reset the checkpoint')
    action.add_argument('--drain', action='store_true', help='Process every queued sync request')
    action.add_argument('--enqueue', choices=SYNC_TYPES + ('incremental', ), metavar='TYPE',
                        help='Queue a sync request (full, incremental, chat or memory)')
    parser.add_argument('--priority', type=int, default=None, help='Priority for --enqueue')
    parser.add_argument('--requeue-failed', action='store_true', help='With --drain, re-queue failed requests')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # Imported late so --help works without AWS access
    from .mcp_interface import build_system
    from .services.sync_queue import SyncQueue

    if args.enqueue:
        request = SyncQueue(config=config.sync).add_sync_request(args.enqueue, args.priority)
        print(json.dumps(request.to_dict()))
        return 0

    system = build_system(config)
    try:
        if system.graph_store is None:
            logger.error('NEPTUNE_ENDPOINT is not set, nothing to sync into')
            return 1

        if args.drain:
            processed = system.sync_queue.drain_all(system.sync_service.process_request,
                                                    requeue_failed=args.requeue_failed)
            print(json.dumps({'processed': processed, 'remaining': system.sync_queue.size()}))
            return 0

        metrics = system.sync_service.sync_knowledge_graph(force_full_resync=args.full_resync)
        print(json.dumps(metrics.to_dict()))
        return 0
    except Exception as e:
        logger.error(f'Knowledge graph sync failed: {e}')
        return 1
    finally:
        system.close()


if __name__ == '__main__':
    sys.exit(main())
