import json
import random

import pytest

from memory_prompts.models.core import Story
from memory_prompts.utils.config import (DEFAULT_MILESTONES, AppConfig, FeatureFlags, GatewayConfig, MCPConfig, ModelConfig,
                                         OpenSearchConfig, PromptConfig)
from memory_prompts.utils.llm_gateway import LLMGateway
from memory_prompts.utils.prompt_store import InMemoryPromptStore


class FakeConverseClient:
    """Stands in for a bedrock-runtime client; replies are served in order."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def converse(self, **kwargs):
        self.calls.append(kwargs)
        if not self.replies:
            raise AssertionError('Unexpected converse call')
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def converse_reply(text, input_tokens=10, output_tokens=5, latency_ms=120):
    return {
        'output': {
            'message': {
                'role': 'assistant',
                'content': [{
                    'text': text
                }]
            }
        },
        'usage': {
            'inputTokens': input_tokens,
            'outputTokens': output_tokens,
            'totalTokens': input_tokens + output_tokens
        },
        'metrics': {
            'latencyMs': latency_ms
        },
        'stopReason': 'end_turn',
    }


def json_reply(payload):
    return converse_reply('```json\n' + json.dumps(payload) + '\n```')


def build_config(tier3_reasoning=False, deep_insights=False):
    return AppConfig(environment='test',
                     log_level='DEBUG',
                     gateway=GatewayConfig(region='us-east-1',
                                           endpoint_url='',
                                           timeout_seconds=60,
                                           max_retries=3,
                                           retry_delay=0.0),
                     models=ModelConfig(fast_model_id='fast-model',
                                        standard_model_id='standard-model',
                                        reasoning_model_id='reasoning-model'),
                     flags=FeatureFlags(tier3_reasoning_model=tier3_reasoning, deep_insights=deep_insights),
                     prompts=PromptConfig(tier1_expiration_days=7,
                                          tier3_expiration_days=30,
                                          max_prompt_words=30,
                                          echo_context_words=300,
                                          echo_max_chars=150,
                                          milestones=DEFAULT_MILESTONES),
                     opensearch=OpenSearchConfig(endpoint='localhost', port=443, region='us-east-1', index_prefix='test'),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))


@pytest.fixture
def config():
    return build_config()


@pytest.fixture
def fake_client():
    return FakeConverseClient()


@pytest.fixture
def gateway(config, fake_client):
    return LLMGateway(config.gateway, client=fake_client)


@pytest.fixture
def store():
    return InMemoryPromptStore()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr('memory_prompts.utils.llm_gateway.time.sleep', lambda seconds: None)


WORKSHOP_STORY = Story(id='s1',
                       transcript=('My father built everything in his workshop behind the garage. '
                                   'Coach Thompson said I was "housebroken by love" the summer of 1962. '
                                   'I still have my old workbench from those Sunday mornings.'),
                       story_year=1962)

DOG_STORY = Story(id='s2',
                  transcript='Chewy was the dog who followed me to school every day in Dayton Ohio.',
                  story_year=1958)

GENERIC_STORY = Story(id='s3', transcript='The girl sat in the chair in the room.')
