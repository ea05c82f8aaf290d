"""
Health check utilities for the memory system.
"""

from typing import Any, Dict

from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE_NAMES = {
    'embedder': 'Embedding provider',
    'llm': 'Amazon Bedrock LLM',
    'vector_store': 'Amazon OpenSearch',
    'graph_store': 'Amazon Neptune',
}


def check_health(components: Dict[str, Any]) -> bool:
    """Check the health of all system components.

    Args:
        components: Mapping of component name to an object with ``health_check()``

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(components)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())
        if all_healthy:
            logger.info('All system components are healthy')
        else:
            unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
            logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(components: Dict[str, Any]) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Components set to None are reported as not configured and count as healthy.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}
    for name, component in components.items():
        service = SERVICE_NAMES.get(name, name)
        if component is None:
            health_status[name] = {'healthy': True, 'service': service, 'configured': False}
            continue
        try:
            health_status[name] = {
                'healthy': bool(component.health_check()),
                'service': service,
                'configured': True,
                'type': type(component).__name__
            }
        except Exception as e:
            health_status[name] = {'healthy': False, 'service': service, 'configured': True, 'error': str(e)}
    return health_status
