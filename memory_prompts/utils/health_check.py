"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .config import AppConfig
from .llm_gateway import LLMGateway
from .logging_config import get_logger
from .opensearch_client import OpenSearchPromptStore
from .prompt_store import PromptStore

logger = get_logger(__name__)


def check_health(config: AppConfig, gateway: Optional[LLMGateway] = None, store: Optional[PromptStore] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(config, gateway, store)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(config: AppConfig,
                      gateway: Optional[LLMGateway] = None,
                      store: Optional[PromptStore] = None) -> Dict[str, Any]:
    """Get detailed health status of the LLM gateway and the prompt store.

    Args:
        config: Application configuration
        gateway: Gateway to check (built from config if None)
        store: Store to check (an OpenSearchPromptStore built from config if None)

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    try:
        gateway = gateway or LLMGateway(config.gateway)
        health_status['llm_gateway'] = {
            'healthy': gateway.health_check(config.models.fast_model_id),
            'service': 'Amazon Bedrock',
            'model': config.models.fast_model_id
        }
    except Exception as e:
        health_status['llm_gateway'] = {'healthy': False, 'service': 'Amazon Bedrock', 'error': str(e)}

    try:
        store = store or OpenSearchPromptStore(config.opensearch)
        health_status['prompt_store'] = {
            'healthy': store.health_check(),
            'service': type(store).__name__,
            'endpoint': config.opensearch.endpoint
        }
    except Exception as e:
        health_status['prompt_store'] = {'healthy': False, 'service': 'Prompt store', 'error': str(e)}

    return health_status
