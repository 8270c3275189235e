from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError
from conftest import FakeConverseClient, GENERIC_STORY, WORKSHOP_STORY, build_config, converse_reply, json_reply

from memory_prompts.models.core import MemoryType, Prompt, PromptTier, anchor_hash
from memory_prompts.services.prompt_management import PromptManagementService
from memory_prompts.utils.llm_gateway import LLMGateway
from memory_prompts.utils.prompt_store import InMemoryPromptStore, PromptStoreError

ECHO_REPLY = 'You said the sawdust smelled like home. What did Sunday mornings smell like there?'

MILESTONE_PROMPTS = [
    {
        'prompt': "You said 'housebroken by love.' What freedom did you trade for that feeling?",
        'memory_type': 'event_adjacent',
        'anchor_entity': 'housebroken by love',
        'uses_exact_phrase': True,
    },
    {
        'prompt': 'Who handed you the old workbench, and what did they say?',
        'memory_type': 'object_story',
        'anchor_entity': 'old workbench',
    },
]

INSIGHTS = {'traits': [{'trait': 'steady', 'confidence': 0.9}], 'coreLessons': ['Finish the job']}

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def build_service(replies, config=None, store=None):
    config = config or build_config()
    client = FakeConverseClient(replies)
    service = PromptManagementService(config, LLMGateway(config.gateway, client=client), store or InMemoryPromptStore())
    return service, client


def stored_prompt(text, anchor, score=55, is_locked=False, expires_at=None, created_at=NOW):
    return Prompt(prompt_text=text,
                  tier=PromptTier.TIER_1,
                  memory_type=MemoryType.PERSON_EXPANSION,
                  anchor_entity=anchor,
                  anchor_hash=anchor_hash('person_expansion', anchor),
                  context_note='Based on what you shared',
                  score=score,
                  model_version='tier1-templates-v2',
                  is_locked=is_locked,
                  expires_at=expires_at,
                  created_at=created_at)


def test_story_saved_stores_echo_and_tier1():
    service, client = build_service([converse_reply(ECHO_REPLY)])

    result = service.handle_story_saved('u1', WORKSHOP_STORY, 5, [WORKSHOP_STORY])

    assert (result.inserted, result.skipped) == (4, 0)
    assert len(client.calls) == 1
    tiers = sorted(str(p.tier.value) for p in service.store.list_prompts('u1'))
    assert tiers == ['1', '1', '1', 'echo']


def test_persist_skips_active_anchors():
    service, _ = build_service([])
    prompt = stored_prompt('Where did Coach Thompson learn to whistle like that?', 'Coach Thompson')

    first = service.persist_prompts('u1', [prompt])
    second = service.persist_prompts('u1', [prompt])

    assert (first.inserted, first.skipped) == (1, 0)
    assert (second.inserted, second.skipped) == (0, 1)


def test_echo_failure_does_not_block_tier1():
    failure = ClientError({'Error': {'Code': 'ValidationException', 'Message': 'bad'}, 'ResponseMetadata': {'HTTPStatusCode': 400}},
                          'Converse')
    service, _ = build_service([failure])

    result = service.handle_story_saved('u1', WORKSHOP_STORY, 5, [WORKSHOP_STORY])

    assert result.inserted == 3
    assert all(p.tier == PromptTier.TIER_1 for p in service.store.list_prompts('u1'))


def test_milestone_adds_tier3_prompts():
    service, client = build_service([converse_reply(ECHO_REPLY), json_reply({'prompts': MILESTONE_PROMPTS})])

    result = service.handle_story_saved('u1', WORKSHOP_STORY, 1, [WORKSHOP_STORY])

    assert len(client.calls) == 2
    tier3 = [p for p in service.store.list_prompts('u1') if p.tier == PromptTier.TIER_3]
    # Two model prompts plus one timeline gap prompt
    assert len(tier3) == 3
    assert result.inserted == 7
    assert service.store.insights == {}


def test_milestone_failure_keeps_story_prompts():
    service, _ = build_service([converse_reply(ECHO_REPLY), converse_reply('Sorry, no JSON today.')])

    result = service.handle_story_saved('u1', WORKSHOP_STORY, 2, [WORKSHOP_STORY])

    assert result.inserted == 4
    assert not any(p.tier == PromptTier.TIER_3 for p in service.store.list_prompts('u1'))


def test_non_milestone_skips_analysis():
    service, client = build_service([converse_reply(ECHO_REPLY)])
    assert not service.is_milestone(5)
    service.handle_story_saved('u1', WORKSHOP_STORY, 5, [WORKSHOP_STORY])
    assert len(client.calls) == 1


def test_insights_from_the_analysis_reply_are_stored():
    service, client = build_service([json_reply({'prompts': MILESTONE_PROMPTS, 'characterInsights': INSIGHTS})])

    outcome = service.handle_milestone('u1', [WORKSHOP_STORY], 10)

    assert len(client.calls) == 1
    assert outcome.persisted.inserted == len(outcome.result.prompts)
    assert service.store.get_character_insight('u1', 10).core_lessons == ['Finish the job']


def test_deep_insights_requested_when_missing():
    config = build_config(deep_insights=True)
    service, client = build_service([json_reply({'prompts': MILESTONE_PROMPTS}), json_reply({'characterInsights': INSIGHTS})],
                                    config=config)

    outcome = service.handle_milestone('u1', [WORKSHOP_STORY], 20)

    assert [call['modelId'] for call in client.calls] == ['standard-model', 'reasoning-model']
    assert outcome.result.character_insights.traits[0].trait == 'steady'
    assert service.store.get_character_insight('u1', 20) is not None


def test_deep_insights_failure_keeps_prompts():
    config = build_config(deep_insights=True)
    service, _ = build_service([json_reply({'prompts': MILESTONE_PROMPTS}), converse_reply('{not json')], config=config)

    outcome = service.handle_milestone('u1', [WORKSHOP_STORY], 20)

    assert outcome.result.character_insights is None
    assert outcome.persisted.inserted > 0
    assert service.store.insights == {}


@pytest.fixture
def littered_store():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', stored_prompt('Where did Coach Thompson learn to whistle like that?', 'Coach Thompson'))
    store.insert_prompt('u1', stored_prompt('How did that make you feel?', 'feelings'))
    store.insert_prompt('u1', stored_prompt('Did the girl ever come back?', 'girl'))
    return store


def test_cleanup_dry_run_reports_only(littered_store):
    service, _ = build_service([], store=littered_store)

    result = service.cleanup_low_quality('u1', dry_run=True)

    assert result.dry_run
    assert (result.scanned, result.retired) == (3, 0)
    assert result.issues[anchor_hash('person_expansion', 'feelings')] == ['therapy']
    assert sorted(result.issues[anchor_hash('person_expansion', 'girl')]) == ['generic', 'yes_no']
    assert len(littered_store.list_prompts('u1')) == 3


def test_cleanup_retires_failing_prompts(littered_store):
    service, _ = build_service([], store=littered_store)

    result = service.cleanup_low_quality('u1')

    assert result.retired == 2
    assert [p.anchor_entity for p in littered_store.list_prompts('u1')] == ['Coach Thompson']
    assert {entry['outcome'] for entry in littered_store.history} == {'retired'}


def test_next_prompt_skips_locked_and_expired():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', stored_prompt('Who taught Chewy to fetch the paper?', 'Chewy', score=90, is_locked=True))
    store.insert_prompt(
        'u1', stored_prompt('Where did Coach Thompson coach before 1962?', 'Coach Thompson', score=85,
                            expires_at=NOW - timedelta(days=1)))
    store.insert_prompt('u1', stored_prompt('What did Aunt Ruth keep in her pantry?', 'Aunt Ruth', score=60))
    store.insert_prompt('u1', stored_prompt('Who built the porch at Dayton Ohio?', 'Dayton Ohio', score=55))
    service, _ = build_service([], store=store)

    assert service.next_prompt('u1', now=NOW).anchor_entity == 'Aunt Ruth'
    assert service.next_prompt('u2', now=NOW) is None


def test_next_prompt_prefers_newest_on_tie():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', stored_prompt('What did Aunt Ruth keep in her pantry?', 'Aunt Ruth', created_at=NOW))
    store.insert_prompt(
        'u1', stored_prompt('Who taught Chewy to fetch the paper?', 'Chewy', created_at=NOW + timedelta(hours=1)))
    service, _ = build_service([], store=store)

    assert service.next_prompt('u1', now=NOW + timedelta(hours=2)).anchor_entity == 'Chewy'


def test_generic_story_at_milestone_gets_fallback():
    service, _ = build_service([converse_reply('How did that make you feel?'), json_reply({'prompts': []})])

    result = service.handle_story_saved('u1', GENERIC_STORY, 1, [GENERIC_STORY])

    prompts = service.store.list_prompts('u1')
    assert result.inserted == 1
    assert prompts[0].prompt_text == 'What happened right after that day? Who was with you?'


class FlakyStore(InMemoryPromptStore):
    """Fails the first `failures` writes, then behaves."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def insert_prompt(self, user_id, prompt):
        if self.failures:
            self.failures -= 1
            raise PromptStoreError('Failed to insert prompt: connection reset')
        super().insert_prompt(user_id, prompt)


def test_store_failure_does_not_cancel_tier3():
    store = FlakyStore()
    service, client = build_service([converse_reply(ECHO_REPLY), json_reply({'prompts': MILESTONE_PROMPTS})], store=store)

    result = service.handle_story_saved('u1', WORKSHOP_STORY, 1, [WORKSHOP_STORY])

    assert len(client.calls) == 2
    assert (result.inserted, result.failed) == (6, 1)
    tier3 = [p for p in store.list_prompts('u1') if p.tier == PromptTier.TIER_3]
    assert len(tier3) == 3


def test_insight_store_failure_keeps_prompts():

    class NoInsights(InMemoryPromptStore):

        def upsert_character_insight(self, user_id, insight):
            raise PromptStoreError('Failed to store character insight: timeout')

    service, _ = build_service([json_reply({'prompts': MILESTONE_PROMPTS, 'characterInsights': INSIGHTS})],
                               store=NoInsights())

    outcome = service.handle_milestone('u1', [WORKSHOP_STORY], 10)

    assert outcome.persisted.inserted == len(outcome.result.prompts)
    assert outcome.result.character_insights.core_lessons == ['Finish the job']


def test_third_skip_retires_the_prompt():
    store = InMemoryPromptStore()
    prompt = stored_prompt('What did Aunt Ruth keep in her pantry?', 'Aunt Ruth')
    store.insert_prompt('u1', prompt)
    service, _ = build_service([], store=store)

    first = service.skip_prompt('u1', prompt.anchor_hash)
    second = service.skip_prompt('u1', prompt.anchor_hash)
    assert (first.shown_count, first.retired) == (1, False)
    assert (second.shown_count, second.retired) == (2, False)
    assert store.list_prompts('u1')[0].shown_count == 2

    third = service.skip_prompt('u1', prompt.anchor_hash)

    assert (third.shown_count, third.retired) == (3, True)
    assert store.list_prompts('u1') == []
    assert store.history[0]['outcome'] == 'skipped'
    assert store.history[0]['shown_count'] == 3
    assert service.skip_prompt('u1', prompt.anchor_hash) is None


def test_next_prompt_can_exclude_the_skipped_one():
    store = InMemoryPromptStore()
    store.insert_prompt('u1', stored_prompt('What did Aunt Ruth keep in her pantry?', 'Aunt Ruth', score=80))
    store.insert_prompt('u1', stored_prompt('Who taught Chewy to fetch the paper?', 'Chewy', score=60))
    service, _ = build_service([], store=store)

    skipped = anchor_hash('person_expansion', 'Aunt Ruth')
    service.skip_prompt('u1', skipped)

    assert service.next_prompt('u1', now=NOW, exclude=skipped).anchor_entity == 'Chewy'


def test_cleanup_uses_configured_word_limit(littered_store):
    config = build_config()
    config.prompts.max_prompt_words = 8
    service, _ = build_service([], config=config, store=littered_store)

    result = service.cleanup_low_quality('u1', dry_run=True)

    # Nine words: too long once the limit is eight
    assert 'long' in result.issues[anchor_hash('person_expansion', 'Coach Thompson')]
