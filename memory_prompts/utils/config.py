"""
Configuration management for the LLM gateway, prompt lifecycle and storage.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MILESTONES = frozenset({1, 2, 3, 4, 7, 10, 15, 20, 30, 50, 100})


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class GatewayConfig:
    """Configuration for the Amazon Bedrock gateway client."""
    region: str
    endpoint_url: str
    timeout_seconds: float
    max_retries: int
    retry_delay: float


@dataclass
class ModelConfig:
    """Model identifiers per capability level."""
    fast_model_id: str
    standard_model_id: str
    reasoning_model_id: str


@dataclass
class FeatureFlags:
    """Feature flags consumed by the model selector."""
    tier3_reasoning_model: bool
    deep_insights: bool


@dataclass
class PromptConfig:
    """Configuration for prompt generation and lifecycle."""
    tier1_expiration_days: int
    tier3_expiration_days: int
    max_prompt_words: int
    echo_context_words: int
    echo_max_chars: int
    milestones: FrozenSet[int] = field(default_factory=lambda: DEFAULT_MILESTONES)


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch prompt store."""
    endpoint: str
    port: int
    region: str
    index_prefix: str


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
    gateway: GatewayConfig
    models: ModelConfig
    flags: FeatureFlags
    prompts: PromptConfig
    opensearch: OpenSearchConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock gateway configuration
    gateway_config = GatewayConfig(region=os.getenv('BEDROCK_REGION', 'us-east-1'),
                                   endpoint_url=os.getenv('BEDROCK_ENDPOINT_URL', ''),
                                   timeout_seconds=float(os.getenv('LLM_TIMEOUT_SECONDS', '60')),
                                   max_retries=int(os.getenv('LLM_MAX_RETRIES', '3')),
                                   retry_delay=float(os.getenv('LLM_RETRY_DELAY', '1.0')))

    model_config = ModelConfig(fast_model_id=os.getenv('FAST_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                               standard_model_id=os.getenv('STANDARD_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                               reasoning_model_id=os.getenv('REASONING_MODEL_ID', 'openai.gpt-oss-120b-1:0'))

    flags = FeatureFlags(tier3_reasoning_model=_env_flag('ENABLE_TIER3_REASONING_MODEL'),
                         deep_insights=_env_flag('ENABLE_DEEP_INSIGHTS'))

    prompt_config = PromptConfig(tier1_expiration_days=int(os.getenv('TIER1_EXPIRATION_DAYS', '7')),
                                 tier3_expiration_days=int(os.getenv('TIER3_EXPIRATION_DAYS', '30')),
                                 max_prompt_words=int(os.getenv('MAX_PROMPT_WORDS', '30')),
                                 echo_context_words=int(os.getenv('ECHO_CONTEXT_WORDS', '300')),
                                 echo_max_chars=int(os.getenv('ECHO_MAX_CHARS', '150')))

    # Prompt store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'memory_prompts'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     gateway=gateway_config,
                     models=model_config,
                     flags=flags,
                     prompts=prompt_config,
                     opensearch=opensearch_config,
                     mcp=mcp_config)
