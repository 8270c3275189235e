"""
Tier-1 prompt generation: relationship-first templates anchored on entities
extracted from a single story.
"""

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.core import CandidateEntity, MemoryType, Prompt, PromptTier, anchor_hash
from ..utils.config import PromptConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import expires_after, utc_now
from .entity_extraction import candidate_entities, extract_entities, to_second_person
from .quality import RELATIONAL_ROLES, ScoreSignals, score_prompt, validate_prompt

logger = get_logger(__name__)

TIER1_MODEL_VERSION = 'tier1-templates-v2'


@dataclass(frozen=True)
class TemplateSpec:
    memory_type: MemoryType
    patterns: Tuple[str, ...]


PERSON_TEMPLATES = TemplateSpec(memory_type=MemoryType.PERSON_EXPANSION,
                                patterns=(
                                    '{entity} mattered to you. What did they teach you that truly stuck?',
                                    'What is a line {entity} said that you still hear today?',
                                    'Who else was with you the afternoon {entity} changed your mind?',
                                    'What would {entity} say if they could see you today?',
                                    'When did you stop trying to impress {entity}?',
                                    'Who did {entity} remind you of back then?',
                                ))

RELATIONSHIP_TEMPLATES = TemplateSpec(memory_type=MemoryType.RELATIONSHIP_MOMENT,
                                      patterns=(
                                          'When did you first see {entity} differently than before?',
                                          'What did {entity} believe about you that turned out to be true?',
                                          'What part of {entity} do you see in yourself now?',
                                          'When did you realize {entity} was right about you?',
                                      ))

PLACE_TEMPLATES = TemplateSpec(memory_type=MemoryType.PLACE_MEMORY,
                               patterns=(
                                   'When did {entity} stop feeling the same to you?',
                                   'What happened at {entity} that you rarely talk about?',
                                   'Who first brought you to {entity}, and why?',
                                   'What did you leave behind at {entity}?',
                               ))

OBJECT_TEMPLATES = TemplateSpec(memory_type=MemoryType.OBJECT_STORY,
                                patterns=(
                                    '{entity} did not appear from nowhere. Who handed it to you, and why?',
                                    'When did {entity} start meaning more than you expected?',
                                    'Who else touched {entity} before it came to you?',
                                    'What did {entity} cost you that was not about money?',
                                ))

PHRASE_TEMPLATES = TemplateSpec(memory_type=MemoryType.EVENT_ADJACENT,
                                patterns=(
                                    "You said '{entity}.' What happened right before that became true?",
                                    "You said '{entity}.' Who was with you when you first felt that?",
                                    "'{entity}' stayed with you. Where were you when those words first fit?",
                                ))


def _sentence_case(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def _templates_for(candidate: CandidateEntity) -> TemplateSpec:
    if candidate.kind == 'phrase':
        return PHRASE_TEMPLATES
    if candidate.kind == 'place':
        return PLACE_TEMPLATES
    if candidate.kind == 'object':
        return OBJECT_TEMPLATES
    if candidate.text.split()[-1].lower() in RELATIONAL_ROLES:
        return RELATIONSHIP_TEMPLATES
    return PERSON_TEMPLATES


class Tier1Generator:
    """Template-driven prompts for one story, gated by the quality validator."""

    def __init__(self, config: PromptConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()

    def _render(self, templates: TemplateSpec, candidate: CandidateEntity) -> Optional[str]:
        """First valid rendering over the template patterns in random order."""
        entity = candidate.text if candidate.kind == 'phrase' else to_second_person(candidate.text)
        patterns: Sequence[str] = self.rng.sample(templates.patterns, len(templates.patterns))
        for pattern in patterns:
            text = _sentence_case(pattern.format(entity=entity))
            if validate_prompt(text, self.config.max_prompt_words):
                return text
            logger.debug(f'Tier 1 rejected prompt: "{text}"')
        return None

    def generate_tier1(self, story_text: str, story_year: Optional[int] = None) -> List[Prompt]:
        """Generate up to three entity-anchored prompts for a story.

        Args:
            story_text: Story transcript
            story_year: Year the story took place, if known

        Returns:
            List of validated prompts, possibly empty
        """
        candidates = candidate_entities(extract_entities(story_text))
        if not candidates:
            logger.info('Tier 1 found no worthy entities in story')
            return []

        created_at = utc_now()
        context_note = f'Based on your {story_year} story' if story_year else 'Based on what you shared'
        prompts = []
        used_hashes: Dict[str, bool] = {}

        for candidate in candidates:
            templates = _templates_for(candidate)
            text = self._render(templates, candidate)
            if text is None:
                logger.info(f"Tier 1 dropped entity '{candidate.text}': no template passed quality gates")
                continue

            prompt_hash = anchor_hash(templates.memory_type.value, candidate.text, story_year)
            if prompt_hash in used_hashes:
                continue
            used_hashes[prompt_hash] = True

            signals = ScoreSignals(uses_exact_phrase=candidate.kind == 'phrase')
            prompts.append(
                Prompt(prompt_text=text,
                       tier=PromptTier.TIER_1,
                       memory_type=templates.memory_type,
                       anchor_entity=candidate.text,
                       anchor_hash=prompt_hash,
                       anchor_year=story_year,
                       context_note=context_note,
                       score=score_prompt(text, signals, self.config.max_prompt_words),
                       model_version=TIER1_MODEL_VERSION,
                       expires_at=expires_after(self.config.tier1_expiration_days, created_at),
                       created_at=created_at))

        logger.info(f'Tier 1 generated {len(prompts)} prompts (all passed quality gates)')
        return prompts
