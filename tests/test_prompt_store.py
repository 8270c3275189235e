from datetime import datetime, timedelta, timezone

import pytest
from opensearchpy.exceptions import ConflictError, NotFoundError, TransportError

from memory_prompts.models.core import (CharacterInsight, Contradiction, MemoryType, Prompt, PromptTier, Trait,
                                        anchor_hash)
from memory_prompts.utils.config import OpenSearchConfig
from memory_prompts.utils.opensearch_client import OpenSearchPromptStore
from memory_prompts.utils.prompt_store import DuplicatePromptError, InMemoryPromptStore, PromptStoreError

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_prompt(text='Who taught Coach Thompson to whistle like that?', anchor='Coach Thompson', **overrides):
    fields = dict(prompt_text=text,
                  tier=PromptTier.TIER_1,
                  memory_type=MemoryType.PERSON_EXPANSION,
                  anchor_entity=anchor,
                  anchor_hash=anchor_hash('person_expansion', anchor, 1962),
                  context_note='Based on your 1962 story',
                  score=55,
                  model_version='tier1-templates-v2',
                  expires_at=CREATED + timedelta(days=7),
                  anchor_year=1962,
                  created_at=CREATED)
    fields.update(overrides)
    return Prompt(**fields)


def make_insight(story_count=10):
    return CharacterInsight(traits=[Trait(trait='loyal', confidence=0.8, evidence=['stayed with Coach'])],
                            invisible_rules=['Family comes first'],
                            contradictions=[Contradiction(stated='I hate change', lived='moved five times', tension='')],
                            core_lessons=['Show up'],
                            story_count=story_count,
                            analyzed_at=CREATED)


def test_in_memory_rejects_duplicate_anchor():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', make_prompt())
    with pytest.raises(DuplicatePromptError):
        store.insert_prompt('u1', make_prompt(text='Where did Coach Thompson grow up?'))
    # Same hash for another user is fine
    store.insert_prompt('u2', make_prompt())


def test_in_memory_list_keeps_prompt_fields():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', make_prompt())
    store.insert_prompt('u2', make_prompt(anchor='Chewy', anchor_hash=anchor_hash('person_expansion', 'Chewy')))

    prompts = store.list_prompts('u1')

    assert len(prompts) == 1
    prompt = prompts[0]
    assert prompt.tier == PromptTier.TIER_1
    assert prompt.memory_type == MemoryType.PERSON_EXPANSION
    assert prompt.created_at == CREATED
    assert prompt.expires_at == CREATED + timedelta(days=7)
    assert prompt.anchor_year == 1962


def test_in_memory_retire_moves_to_history():
    store = InMemoryPromptStore()
    prompt = make_prompt()
    store.insert_prompt('u1', prompt)

    assert store.retire_prompt('u1', prompt.anchor_hash, 'retired')
    assert not store.retire_prompt('u1', prompt.anchor_hash, 'retired')

    assert store.list_prompts('u1') == []
    assert store.history[0]['outcome'] == 'retired'
    assert store.history[0]['anchor_hash'] == prompt.anchor_hash
    # The anchor can be used again once retired
    store.insert_prompt('u1', prompt)


def test_in_memory_record_shown_counts_up():
    store = InMemoryPromptStore()
    prompt = make_prompt()
    store.insert_prompt('u1', prompt)

    assert store.record_shown('u1', prompt.anchor_hash) == 1
    assert store.record_shown('u1', prompt.anchor_hash) == 2

    assert store.list_prompts('u1')[0].shown_count == 2
    assert store.record_shown('u2', prompt.anchor_hash) is None


def test_in_memory_insight_upsert_overwrites():
    store = InMemoryPromptStore()
    store.upsert_character_insight('u1', make_insight())
    replacement = make_insight()
    replacement.core_lessons = ['Measure twice']
    store.upsert_character_insight('u1', replacement)

    insight = store.get_character_insight('u1', 10)

    assert insight.core_lessons == ['Measure twice']
    assert insight.traits[0].evidence == ['stayed with Coach']
    assert insight.analyzed_at == CREATED
    assert store.get_character_insight('u1', 20) is None


class FakeIndices:

    def __init__(self, existing=()):
        self.existing = set(existing)
        self.created = []

    def exists(self, index):
        return index in self.existing

    def create(self, index, body):
        self.created.append((index, body))
        self.existing.add(index)


class FakeOpenSearch:
    """Just enough of the OpenSearch client for the prompt store."""

    def __init__(self, existing=()):
        self.indices = FakeIndices(existing)
        self.docs = {}
        self.appended = []

    def index(self, index, body, id=None, op_type=None):
        if id is None:
            self.appended.append((index, body))
            return {'result': 'created'}
        if op_type == 'create' and (index, id) in self.docs:
            raise ConflictError(409, 'version_conflict_engine_exception', {})
        self.docs[(index, id)] = body
        return {'result': 'created'}

    def get(self, index, id):
        if (index, id) not in self.docs:
            raise NotFoundError(404, 'not_found', {})
        return {'_id': id, '_source': self.docs[(index, id)]}

    def delete(self, index, id):
        if (index, id) not in self.docs:
            raise NotFoundError(404, 'not_found', {})
        del self.docs[(index, id)]

    def update(self, index, id, body):
        if (index, id) not in self.docs:
            raise NotFoundError(404, 'not_found', {})
        self.docs[(index, id)].update(body['doc'])

    def search(self, index, body):
        user_id = body['query']['bool']['filter'][0]['term']['user_id']
        hits = [{
            '_source': doc
        } for (doc_index, _), doc in self.docs.items() if doc_index == index and doc['user_id'] == user_id]
        return {'hits': {'hits': hits}}


OPENSEARCH_CONFIG = OpenSearchConfig(endpoint='https://search.example.com', port=443, region='us-east-1',
                                     index_prefix='memories')


def test_opensearch_creates_missing_indices(monkeypatch):
    sleeps = []
    monkeypatch.setattr('memory_prompts.utils.opensearch_client.time.sleep', sleeps.append)
    client = FakeOpenSearch(existing={'memories_active_prompts'})

    status = OpenSearchPromptStore(OPENSEARCH_CONFIG, client=client).create_indices_if_not_exist()

    assert status == {
        'memories_active_prompts': 'exists',
        'memories_prompt_history': 'created',
        'memories_character_insights': 'created',
    }
    assert sleeps == [15]


def test_opensearch_skips_wait_when_indices_exist(monkeypatch):
    sleeps = []
    monkeypatch.setattr('memory_prompts.utils.opensearch_client.time.sleep', sleeps.append)
    existing = {'memories_active_prompts', 'memories_prompt_history', 'memories_character_insights'}

    OpenSearchPromptStore(OPENSEARCH_CONFIG, client=FakeOpenSearch(existing)).create_indices_if_not_exist()

    assert sleeps == []


def test_opensearch_insert_uses_create_and_maps_conflicts():
    client = FakeOpenSearch()
    store = OpenSearchPromptStore(OPENSEARCH_CONFIG, client=client)
    prompt = make_prompt()

    store.insert_prompt('u1', prompt)

    assert ('memories_active_prompts', f'u1:{prompt.anchor_hash}') in client.docs
    with pytest.raises(DuplicatePromptError):
        store.insert_prompt('u1', prompt)


def test_opensearch_list_and_retire():
    client = FakeOpenSearch()
    store = OpenSearchPromptStore(OPENSEARCH_CONFIG, client=client)
    prompt = make_prompt()
    store.insert_prompt('u1', prompt)

    assert [p.anchor_hash for p in store.list_prompts('u1')] == [prompt.anchor_hash]
    assert store.list_prompts('u2') == []

    assert store.retire_prompt('u1', prompt.anchor_hash, 'retired')
    assert store.list_prompts('u1') == []
    history_index, entry = client.appended[0]
    assert history_index == 'memories_prompt_history'
    assert entry['outcome'] == 'retired'
    assert not store.retire_prompt('u1', prompt.anchor_hash, 'retired')


def test_opensearch_character_insight_round_trip():
    store = OpenSearchPromptStore(OPENSEARCH_CONFIG, client=FakeOpenSearch())
    store.upsert_character_insight('u1', make_insight(story_count=15))

    insight = store.get_character_insight('u1', 15)

    assert insight.invisible_rules == ['Family comes first']
    assert insight.contradictions[0].stated == 'I hate change'
    assert store.get_character_insight('u1', 20) is None


def test_opensearch_errors_are_wrapped():

    class BrokenClient(FakeOpenSearch):

        def index(self, index, body, id=None, op_type=None):
            raise TransportError(500, 'internal_error', {})

    with pytest.raises(PromptStoreError):
        OpenSearchPromptStore(OPENSEARCH_CONFIG, client=BrokenClient()).insert_prompt('u1', make_prompt())


def test_opensearch_health_check():
    assert OpenSearchPromptStore(OPENSEARCH_CONFIG, client=FakeOpenSearch()).health_check()

    class Unreachable(FakeIndices):

        def exists(self, index):
            raise ConnectionError('unreachable')

    client = FakeOpenSearch()
    client.indices = Unreachable()
    assert not OpenSearchPromptStore(OPENSEARCH_CONFIG, client=client).health_check()


def test_opensearch_record_shown_updates_the_document():
    client = FakeOpenSearch()
    store = OpenSearchPromptStore(OPENSEARCH_CONFIG, client=client)
    prompt = make_prompt()
    store.insert_prompt('u1', prompt)

    assert store.record_shown('u1', prompt.anchor_hash) == 1
    assert store.record_shown('u1', prompt.anchor_hash) == 2

    doc = client.docs[('memories_active_prompts', f'u1:{prompt.anchor_hash}')]
    assert doc['shown_count'] == 2
    assert 'last_shown_at' in doc
    assert store.record_shown('u1', 'missing') is None
