"""
Configuration management for AWS services, retrieval tuning and sync settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock model used for knowledge extraction."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock embeddings."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch vector index."""
    endpoint: str
    port: int
    region: str
    service: str
    index_name: str
    dimension: int
    index_settle_seconds: float


@dataclass
class SearchConfig:
    """Thresholds for semantic retrieval and keyword fallback."""
    default_limit: int = 10
    list_all_limit: int = 100
    default_min_score: float = 0.5
    semantic_floor: float = 0.05
    good_score: float = 0.15
    min_semantic_results: int = 3
    keyword_scan_limit: int = 1000
    tie_break_window: float = 0.1


@dataclass
class RetryConfig:
    """Retry policy for graph projection of saved memories."""
    max_retries: int = 3
    backoff_seconds: float = 1.0
    max_total_attempts: int = 10
    flush_interval_seconds: float = 60.0


@dataclass
class SyncConfig:
    """Durable sync queue and checkpoint settings."""
    queue_path: str = 'data/kg-sync-queue.json'
    state_path: str = 'data/kg-sync-state.json'
    item_timeout_seconds: float = 30.0
    projection_workers: int = 4
    chat_path: str = 'data/chat-messages.json'


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    embed_provider: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    search: SearchConfig
    retry: RetryConfig
    sync: SyncConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', ''),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector index; dimension follows the embedding model unless overridden
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', ''),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'kg_memories'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', str(bedrock_embed_config.dimension))),
                                         index_settle_seconds=float(os.getenv('OPENSEARCH_INDEX_SETTLE_SECONDS', '0')))

    search_config = SearchConfig(default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '10')),
                                 list_all_limit=int(os.getenv('SEARCH_LIST_ALL_LIMIT', '100')),
                                 default_min_score=float(os.getenv('SEARCH_MIN_SCORE', '0.5')),
                                 semantic_floor=float(os.getenv('SEARCH_SEMANTIC_FLOOR', '0.05')),
                                 good_score=float(os.getenv('SEARCH_GOOD_SCORE', '0.15')),
                                 min_semantic_results=int(os.getenv('SEARCH_MIN_SEMANTIC_RESULTS', '3')),
                                 keyword_scan_limit=int(os.getenv('SEARCH_KEYWORD_SCAN_LIMIT', '1000')),
                                 tie_break_window=float(os.getenv('SEARCH_TIE_BREAK_WINDOW', '0.1')))

    retry_config = RetryConfig(max_retries=int(os.getenv('RETRY_MAX_RETRIES', '3')),
                               backoff_seconds=float(os.getenv('RETRY_BACKOFF_SECONDS', '1.0')),
                               max_total_attempts=int(os.getenv('RETRY_MAX_TOTAL_ATTEMPTS', '10')),
                               flush_interval_seconds=float(os.getenv('RETRY_FLUSH_INTERVAL_SECONDS', '60')))

    sync_config = SyncConfig(queue_path=os.getenv('KG_SYNC_QUEUE_PATH', 'data/kg-sync-queue.json'),
                             state_path=os.getenv('KG_SYNC_STATE_PATH', 'data/kg-sync-state.json'),
                             item_timeout_seconds=float(os.getenv('KG_SYNC_ITEM_TIMEOUT_SECONDS', '30')),
                             projection_workers=int(os.getenv('KG_PROJECTION_WORKERS', '4')),
                             chat_path=os.getenv('KG_CHAT_MESSAGES_PATH', 'data/chat-messages.json'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     embed_provider=os.getenv('EMBED_PROVIDER', 'bedrock'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     search=search_config,
                     retry=retry_config,
                     sync=sync_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
