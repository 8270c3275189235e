"""
Amazon Bedrock gateway client: uniform chat requests over the Converse API with
timeout, retry and usage extraction.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .config import GatewayConfig
from .logging_config import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class LLMGatewayError(Exception):
    """Raised when the provider fails after retries or returns a non-retryable error."""
    pass


class LLMGatewayConfigError(LLMGatewayError):
    """Raised at construction when the gateway cannot be configured (e.g. no credentials)."""
    pass


@dataclass
class ChatMessage:
    role: str  # system, user or assistant
    content: str


@dataclass
class ChatRequest:
    model: str
    messages: List[ChatMessage]
    reasoning_effort: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = None


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class ChatResponse:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_used: str = ''
    reasoning_effort: Optional[str] = None
    latency_ms: int = 0


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, (ReadTimeoutError, ConnectTimeoutError)):
        return True
    if isinstance(error, ClientError):
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        return status in RETRYABLE_STATUS_CODES
    return False


class LLMGateway:
    """Bedrock Converse client with retry logic and error handling."""

    def __init__(self, config: GatewayConfig, client: Any = None):
        """
        Initialize the gateway.

        Args:
            config: GatewayConfig with region, timeout and retry parameters
            client: Pre-built bedrock-runtime client (skips credential resolution)

        Raises:
            LLMGatewayConfigError: If no AWS credentials can be resolved
        """
        self.config = config

        if client is None:
            session = boto3.Session(region_name=config.region)
            if session.get_credentials() is None:
                raise LLMGatewayConfigError('No AWS credentials found for the Bedrock gateway')

            client_kwargs: Dict[str, Any] = {
                'config':
                    BotoConfig(connect_timeout=10,
                               read_timeout=config.timeout_seconds,
                               retries={'max_attempts': 0})  # We handle retries manually
            }
            if config.endpoint_url:
                client_kwargs['endpoint_url'] = config.endpoint_url
            client = session.client('bedrock-runtime', **client_kwargs)

        self.client = client
        logger.info(f'Initialized LLM gateway in region {config.region}')

    def _build_converse_args(self, request: ChatRequest) -> Dict[str, Any]:
        system = [{'text': m.content} for m in request.messages if m.role == 'system']
        messages = [{
            'role': m.role,
            'content': [{
                'text': m.content
            }]
        } for m in request.messages if m.role != 'system']

        inference_config: Dict[str, Any] = {'temperature': request.temperature}
        if request.max_tokens:
            inference_config['maxTokens'] = request.max_tokens

        args: Dict[str, Any] = {'modelId': request.model, 'messages': messages, 'inferenceConfig': inference_config}
        if system:
            args['system'] = system
        if request.reasoning_effort:
            args['additionalModelRequestFields'] = {'reasoning_effort': request.reasoning_effort}
        return args

    def chat(self, request: ChatRequest) -> ChatResponse:
        """
        Send a chat request with retry on 5xx responses and transport timeouts.

        Args:
            request: ChatRequest to send

        Returns:
            ChatResponse with the concatenated text blocks and token usage

        Raises:
            LLMGatewayError: If all retry attempts fail or the error is not retryable
        """
        args = self._build_converse_args(request)
        attempts = self.config.max_retries + 1

        for attempt in range(attempts):
            started = time.monotonic()
            try:
                logger.debug(f'LLM request to {request.model} attempt {attempt + 1}/{attempts}')
                response = self.client.converse(**args)

            except (ClientError, BotoCoreError) as e:
                if not _is_retryable(e):
                    logger.error(f'LLM request to {request.model} failed: {e}')
                    raise LLMGatewayError(f'LLM request failed: {e}') from e

                logger.warning(f'LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                    continue
                raise LLMGatewayError(f'LLM request failed after {attempts} attempts: {e}') from e

            except Exception as e:
                logger.error(f'Unexpected error in LLM gateway: {e}')
                raise LLMGatewayError(f'Unexpected LLM gateway error: {e}') from e

            return self._to_chat_response(request, response, started)

        raise LLMGatewayError(f'LLM request failed after {attempts} attempts')

    def _to_chat_response(self, request: ChatRequest, response: Dict[str, Any], started: float) -> ChatResponse:
        # Reasoning models interleave reasoningContent blocks; keep only text
        blocks = response.get('output', {}).get('message', {}).get('content', [])
        text = ''.join(block['text'] for block in blocks if 'text' in block)

        raw_usage = response.get('usage', {})
        usage = TokenUsage(input=raw_usage.get('inputTokens', 0),
                           output=raw_usage.get('outputTokens', 0),
                           total=raw_usage.get('totalTokens', 0))
        latency_ms = response.get('metrics', {}).get('latencyMs')
        if latency_ms is None:
            latency_ms = int((time.monotonic() - started) * 1000)

        logger.debug(f'LLM response from {request.model} (length: {len(text)}, tokens: {usage.total})')
        return ChatResponse(text=text,
                            usage=usage,
                            model_used=request.model,
                            reasoning_effort=request.reasoning_effort,
                            latency_ms=latency_ms)

    def health_check(self, model: str) -> bool:
        """
        Perform a health check against a model.

        Returns:
            True if the model answered, False otherwise
        """
        try:
            response = self.chat(
                ChatRequest(model=model,
                            messages=[
                                ChatMessage(role='system', content="Respond with just 'OK'."),
                                ChatMessage(role='user', content='Hi')
                            ],
                            temperature=0.0,
                            max_tokens=10))
            return len(response.text.strip()) > 0

        except LLMGatewayError as e:
            logger.error(f'LLM gateway health check failed: {e}')
            return False
