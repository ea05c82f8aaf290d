"""
Amazon Neptune graph store with Gremlin Python driver and AWS SigV4 authentication.

Nodes are keyed by an ``id`` property and merged on it. Edges carry a ``rel_key``
property built from (source id, type, target id) and are merged on that.
"""

import json
from datetime import date, datetime
from functools import wraps
from typing import Any, Dict, Iterable, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.traversal import Cardinality, T

from ..models.core import Entity, Relationship
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)

RESERVED_PROPERTIES = ('id', 'rel_key', 'created_at', 'updated_at')


class GraphStoreError(Exception):
    """Custom exception for graph store errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to reconnect once when Neptune drops the websocket."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except GraphStoreError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower() and self.connection is not None:
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise GraphStoreError(f'Failed to {func.__name__}: {retry_e}') from retry_e
            logger.error(f'Error in {func.__name__}: {e}')
            raise GraphStoreError(f'Failed to {func.__name__}: {e}') from e

    return wrapper


def sanitize_properties(properties: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Make property values storable as single-cardinality Neptune properties.

    Datetimes become ISO strings, lists and dicts become JSON strings and
    ``None`` values are dropped.
    """
    sanitized = {}
    for key, value in (properties or {}).items():
        if value is None:
            continue
        if isinstance(value, (datetime, date)):
            sanitized[key] = value.isoformat()
        elif isinstance(value, (list, tuple, set, dict)):
            sanitized[key] = json.dumps(list(value) if isinstance(value, (tuple, set)) else value, default=str)
        else:
            sanitized[key] = value
    return sanitized


def relationship_key(source_id: str, rel_type: str, target_id: str) -> str:
    return f'{source_id}|{rel_type}|{target_id}'


def _unwrap(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if len(value) == 1 else value
    return value


class NeptuneGraphStore:
    """Idempotent writes of extracted entities and relationships into Neptune."""

    def __init__(self, config: NeptuneConfig, g=None):
        """
        Initialize the graph store.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Optional traversal source; when given no connection is opened

        Raises:
            GraphStoreError: If no endpoint or AWS credentials are available
        """
        self.config = config
        self.connection = None
        self.g = g
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        if not self.config.endpoint:
            raise GraphStoreError('NEPTUNE_ENDPOINT is not configured')

        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise GraphStoreError('No AWS credentials found for Neptune')
        creds = credentials.get_frozen_credentials()
        region = self.config.region or Session().region_name or 'us-east-1'

        # Sign the websocket upgrade request
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=dict(request.headers.items()),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    @retry_on_connection_error
    def upsert_node(self, node: Entity) -> bool:
        """
        Create the node or update its properties, keyed by ``node.id``.

        Args:
            node: Entity to write

        Returns:
            True once written
        """
        now = now_iso()
        existing = self.g.V().has('id', node.id).to_list()

        if existing:
            t = self.g.V(existing[0])
        else:
            t = self.g.addV(node.label).property(Cardinality.single, 'id', node.id)\
                .property(Cardinality.single, 'created_at', now)

        for key, value in sanitize_properties(node.properties).items():
            if key in RESERVED_PROPERTIES:
                continue
            t = t.property(Cardinality.single, key, value)
        t.property(Cardinality.single, 'updated_at', now).next()

        logger.debug(f'{"Updated" if existing else "Created"} node {node.label}:{node.id}')
        return True

    @retry_on_connection_error
    def upsert_relationship(self, rel: Relationship) -> bool:
        """
        Create or update an edge merged on (source, type, target).

        Both endpoints must already exist.

        Args:
            rel: Relationship to write

        Returns:
            True once written, False if an endpoint is missing
        """
        source = self.g.V().has('id', rel.source_id).to_list()
        target = self.g.V().has('id', rel.target_id).to_list()
        if not source or not target:
            logger.debug(f'Skipping {rel.type} edge {rel.source_id} -> {rel.target_id}: endpoint missing')
            return False

        now = now_iso()
        key = relationship_key(rel.source_id, rel.type, rel.target_id)
        existing = self.g.E().has('rel_key', key).to_list()

        if existing:
            t = self.g.E(existing[0])
        else:
            t = self.g.V(source[0]).addE(rel.type).to(target[0])\
                .property('rel_key', key)\
                .property('id', rel.id)\
                .property('created_at', now)

        for prop, value in sanitize_properties(rel.properties).items():
            if prop in RESERVED_PROPERTIES:
                continue
            t = t.property(prop, value)
        t.property('updated_at', now).next()
        return True

    @retry_on_connection_error
    def find_node(self, node_id: str) -> Optional[Entity]:
        """
        Look up a node by id.

        Returns:
            Entity with all stored properties, or None
        """
        rows = self.g.V().has('id', node_id).value_map(True).to_list()
        if not rows:
            return None

        row = rows[0]
        label = row.get(T.label, '')
        properties = {key: _unwrap(value) for key, value in row.items() if isinstance(key, str) and key != 'id'}
        return Entity(id=node_id, label=label, properties=properties)

    @retry_on_connection_error
    def find_relationship(self, source_id: str, rel_type: str, target_id: str) -> Optional[Dict[str, Any]]:
        rows = self.g.E().has('rel_key', relationship_key(source_id, rel_type, target_id)).value_map().to_list()
        if not rows:
            return None
        return {key: _unwrap(value) for key, value in rows[0].items()}

    @retry_on_connection_error
    def delete_relationship(self, source_id: str, rel_type: str, target_id: str) -> bool:
        t = self.g.E().has('rel_key', relationship_key(source_id, rel_type, target_id))
        if t.count().next() == 0:
            return False
        self.g.E().has('rel_key', relationship_key(source_id, rel_type, target_id)).drop().iterate()
        return True

    @retry_on_connection_error
    def delete_node(self, node_id: str) -> bool:
        """
        Delete a node together with its incident edges.

        Returns:
            True if the node existed
        """
        if self.g.V().has('id', node_id).count().next() == 0:
            return False

        # Gremlin drop() on a vertex removes its edges too
        self.g.V().has('id', node_id).drop().iterate()
        logger.debug(f'Deleted node {node_id}')
        return True

    @retry_on_connection_error
    def delete_nodes_by_type(self, label: str) -> int:
        """
        Delete every node carrying a label, with their edges.

        Returns:
            Number of deleted nodes
        """
        count = int(self.g.V().has_label(label).count().next())
        if count:
            self.g.V().has_label(label).drop().iterate()
            logger.info(f'Deleted {count} {label} nodes')
        return count

    @retry_on_connection_error
    def get_statistics(self, labels: Iterable[str] = ()) -> Dict[str, Any]:
        stats = {'nodes': int(self.g.V().count().next()), 'relationships': int(self.g.E().count().next())}
        for label in labels:
            stats[label] = int(self.g.V().has_label(label).count().next())
        return stats

    @retry_on_connection_error
    def clear_graph(self) -> bool:
        """Drop every edge and node."""
        self.g.E().drop().iterate()
        self.g.V().drop().iterate()
        logger.info('Cleared graph')
        return True

    def health_check(self) -> bool:
        """
        Perform a health check on Neptune.

        Returns:
            True if Neptune is healthy, False otherwise
        """
        try:
            self.g.V().limit(1).count().next()
            return True
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
