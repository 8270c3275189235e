"""
OpenSearch-backed prompt store.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import CharacterInsight, Prompt
from .config import OpenSearchConfig
from .logging_config import get_logger
from .prompt_store import DuplicatePromptError, PromptStore, PromptStoreError, history_record
from .timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

MAX_PROMPTS_PER_USER = 1000

_KEYWORD = {'type': 'keyword'}
_DATE = {'type': 'date'}

INDEX_MAPPINGS = {
    'active_prompts': {
        'properties': {
            'user_id': _KEYWORD,
            'anchor_hash': _KEYWORD,
            'prompt_text': {
                'type': 'text'
            },
            'tier': _KEYWORD,
            'memory_type': _KEYWORD,
            'anchor_entity': {
                'type': 'text'
            },
            'prompt_score': {
                'type': 'integer'
            },
            'is_locked': {
                'type': 'boolean'
            },
            'shown_count': {
                'type': 'integer'
            },
            'last_shown_at': _DATE,
            'expires_at': _DATE,
            'created_at': _DATE,
        }
    },
    'prompt_history': {
        'properties': {
            'user_id': _KEYWORD,
            'anchor_hash': _KEYWORD,
            'outcome': _KEYWORD,
            'prompt_text': {
                'type': 'text'
            },
            'retired_at': _DATE,
        }
    },
    'character_insights': {
        'properties': {
            'user_id': _KEYWORD,
            'story_count': {
                'type': 'integer'
            },
            'analyzed_at': _DATE,
        }
    },
}


class OpenSearchPromptStore(PromptStore):
    """Prompt store on OpenSearch with AWS authentication and error handling.

    Active prompts use the document id `{user_id}:{anchor_hash}` and are
    written with op_type=create, so the index itself enforces uniqueness.
    """

    def __init__(self, config: OpenSearchConfig, client: Any = None):
        """
        Initialize the store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (skips AWS authentication)
        """
        self.config = config

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)

        self.client = client
        self.active_index = f'{config.index_prefix}_active_prompts'
        self.history_index = f'{config.index_prefix}_prompt_history'
        self.insights_index = f'{config.index_prefix}_character_insights'

        logger.info(f'Initialized OpenSearch prompt store for endpoint: {config.endpoint}')

    def create_indices_if_not_exist(self) -> Dict[str, str]:
        """
        Create the active, history and insight indices that do not exist yet.

        Returns:
            Mapping of index name to 'exists' or 'created'
        """
        status = {}
        created = False
        for suffix, mappings in INDEX_MAPPINGS.items():
            index_name = f'{self.config.index_prefix}_{suffix}'
            try:
                if self.client.indices.exists(index=index_name):
                    logger.debug(f'Index {index_name} already exists')
                    status[index_name] = 'exists'
                    continue
                self.client.indices.create(index=index_name, body={'mappings': mappings})
            except OpenSearchException as e:
                logger.error(f'Error creating index {index_name}: {e}')
                raise PromptStoreError(f'Failed to create index: {e}') from e

            logger.info(f'Created index {index_name}')
            status[index_name] = 'created'
            created = True

        if created:
            logger.info('Waiting 15s for index sync-up...')
            time.sleep(15)
        return status

    def insert_prompt(self, user_id: str, prompt: Prompt) -> None:
        doc_id = f'{user_id}:{prompt.anchor_hash}'
        try:
            self.client.index(index=self.active_index, id=doc_id, body=prompt.to_record(user_id), op_type='create')
        except ConflictError as e:
            raise DuplicatePromptError(f'Prompt with anchor hash {prompt.anchor_hash} already exists') from e
        except OpenSearchException as e:
            logger.error(f'Error inserting prompt {doc_id}: {e}')
            raise PromptStoreError(f'Failed to insert prompt: {e}') from e
        logger.debug(f'Indexed prompt {doc_id}')

    def upsert_character_insight(self, user_id: str, insight: CharacterInsight) -> None:
        doc_id = f'{user_id}:{insight.story_count}'
        try:
            self.client.index(index=self.insights_index, id=doc_id, body=insight.to_record(user_id))
        except OpenSearchException as e:
            logger.error(f'Error storing character insight {doc_id}: {e}')
            raise PromptStoreError(f'Failed to store character insight: {e}') from e

    def list_prompts(self, user_id: str) -> List[Prompt]:
        search_body = {'size': MAX_PROMPTS_PER_USER, 'query': {'bool': {'filter': [{'term': {'user_id': user_id}}]}}}
        try:
            response = self.client.search(index=self.active_index, body=search_body)
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error listing prompts for user {user_id}: {e}')
            raise PromptStoreError(f'Failed to list prompts: {e}') from e

        return [Prompt.from_record(hit['_source']) for hit in response['hits']['hits']]

    def retire_prompt(self, user_id: str, anchor_hash: str, outcome: str) -> bool:
        doc_id = f'{user_id}:{anchor_hash}'
        try:
            record = self.client.get(index=self.active_index, id=doc_id)['_source']
        except NotFoundError:
            logger.warning(f'Prompt {doc_id} not found for retirement')
            return False
        except OpenSearchException as e:
            logger.error(f'Error reading prompt {doc_id}: {e}')
            raise PromptStoreError(f'Failed to read prompt: {e}') from e

        try:
            self.client.index(index=self.history_index, body=history_record(user_id, record, outcome))
            self.client.delete(index=self.active_index, id=doc_id)
        except NotFoundError:
            # Retired concurrently; the history entry is already written
            logger.warning(f'Prompt {doc_id} disappeared during retirement')
            return False
        except OpenSearchException as e:
            logger.error(f'Error retiring prompt {doc_id}: {e}')
            raise PromptStoreError(f'Failed to retire prompt: {e}') from e

        logger.debug(f'Moved prompt {doc_id} to history ({outcome})')
        return True

    def record_shown(self, user_id: str, anchor_hash: str) -> Optional[int]:
        doc_id = f'{user_id}:{anchor_hash}'
        try:
            record = self.client.get(index=self.active_index, id=doc_id)['_source']
            shown_count = int(record.get('shown_count', 0)) + 1
            self.client.update(index=self.active_index,
                               id=doc_id,
                               body={'doc': {
                                   'shown_count': shown_count,
                                   'last_shown_at': to_iso(utc_now())
                               }})
        except NotFoundError:
            logger.warning(f'Prompt {doc_id} not found to record a showing')
            return None
        except OpenSearchException as e:
            logger.error(f'Error recording showing of prompt {doc_id}: {e}')
            raise PromptStoreError(f'Failed to record prompt showing: {e}') from e
        return shown_count

    def get_character_insight(self, user_id: str, story_count: int) -> Optional[CharacterInsight]:
        doc_id = f'{user_id}:{story_count}'
        try:
            response = self.client.get(index=self.insights_index, id=doc_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error reading character insight {doc_id}: {e}')
            raise PromptStoreError(f'Failed to read character insight: {e}') from e
        return CharacterInsight.from_record(response['_source'])

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.active_index)
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
