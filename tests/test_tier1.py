import random
from datetime import timedelta

from conftest import DOG_STORY, GENERIC_STORY, WORKSHOP_STORY

from memory_prompts.models.core import MemoryType, PromptTier, anchor_hash
from memory_prompts.services.quality import score_prompt, validate_prompt
from memory_prompts.services.tier1 import (OBJECT_TEMPLATES, PERSON_TEMPLATES, PHRASE_TEMPLATES, PLACE_TEMPLATES,
                                         RELATIONSHIP_TEMPLATES, Tier1Generator, _sentence_case)


def test_generates_validated_entity_anchored_prompts(config, rng):
    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(WORKSHOP_STORY.transcript, 1962)

    assert len(prompts) == 3
    assert [p.memory_type for p in prompts] == [
        MemoryType.EVENT_ADJACENT, MemoryType.PERSON_EXPANSION, MemoryType.RELATIONSHIP_MOMENT
    ]
    for prompt in prompts:
        assert validate_prompt(prompt.prompt_text)
        assert prompt.tier == PromptTier.TIER_1
        assert prompt.anchor_year == 1962
        assert prompt.context_note == 'Based on your 1962 story'
        assert prompt.expires_at - prompt.created_at == timedelta(days=7)
        assert prompt.word_count <= 30
        assert not prompt.is_locked


def test_relational_anchor_is_revoiced(config, rng):
    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(WORKSHOP_STORY.transcript, 1962)
    relationship = prompts[2]
    assert relationship.anchor_entity == 'my father'
    assert 'your father' in relationship.prompt_text
    assert 'my father' not in relationship.prompt_text


def test_exact_phrase_prompt_scores_highest(config, rng):
    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(WORKSHOP_STORY.transcript, 1962)
    phrase = prompts[0]
    assert 'housebroken by love' in phrase.prompt_text
    assert phrase.score == max(p.score for p in prompts)


def test_anchor_hash_is_deterministic(config, rng):
    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(WORKSHOP_STORY.transcript, 1962)
    assert prompts[1].anchor_hash == anchor_hash('person_expansion', 'Coach Thompson', 1962)


def test_generic_story_returns_empty_list(config, rng):
    assert Tier1Generator(config.prompts, rng=rng).generate_tier1(GENERIC_STORY.transcript, None) == []


def test_undated_story(config, rng):
    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(DOG_STORY.transcript)
    assert {p.memory_type for p in prompts} == {MemoryType.PERSON_EXPANSION, MemoryType.PLACE_MEMORY}
    for prompt in prompts:
        assert prompt.anchor_year is None
        assert prompt.context_note == 'Based on what you shared'


def test_same_seed_same_prompts(config):
    first = Tier1Generator(config.prompts, rng=random.Random(3)).generate_tier1(WORKSHOP_STORY.transcript, 1962)
    second = Tier1Generator(config.prompts, rng=random.Random(3)).generate_tier1(WORKSHOP_STORY.transcript, 1962)
    assert [p.prompt_text for p in first] == [p.prompt_text for p in second]


def test_every_template_renders_a_valid_prompt():
    samples = [
        (PERSON_TEMPLATES, 'Coach Thompson'),
        (RELATIONSHIP_TEMPLATES, 'your father'),
        (PLACE_TEMPLATES, 'Dayton Ohio'),
        (OBJECT_TEMPLATES, 'your old workbench'),
        (PHRASE_TEMPLATES, 'housebroken by love'),
    ]
    for templates, entity in samples:
        for pattern in templates.patterns:
            text = _sentence_case(pattern.format(entity=entity))
            assert validate_prompt(text), text


def test_exact_phrase_prompt_beats_a_generic_question(config, rng):
    story = 'Chewy was the dog who followed me everywhere. Mom said he was "housebroken by love" and she was right.'

    prompts = Tier1Generator(config.prompts, rng=rng).generate_tier1(story)

    phrase = next(p for p in prompts if 'housebroken by love' in p.prompt_text)
    assert phrase.memory_type == MemoryType.EVENT_ADJACENT
    assert phrase.score >= 70
    assert phrase.score > score_prompt('What was it like having a well-behaved dog?')
