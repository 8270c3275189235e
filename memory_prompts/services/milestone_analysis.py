"""
Tier-3 milestone analysis: one LLM pass over the whole story corpus producing
cross-story prompts and, optionally, character insights.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from ..models.core import (CandidateEntity, CharacterInsight, Contradiction, MemoryType, MilestoneResult, Prompt,
                           PromptTier, Story, Trait, anchor_hash)
from ..utils.config import AppConfig
from ..utils.json_utils import clean_json_response
from ..utils.llm_gateway import ChatMessage, ChatRequest, ChatResponse, LLMGateway, LLMGatewayError
from ..utils.logging_config import get_logger
from ..utils.sanitization import is_safe_for_llm, sanitize, sanitize_entity
from ..utils.timestamp_utils import expires_after, utc_now
from .entity_extraction import extract_entities, most_prominent_entity, prominent_entities, to_second_person
from .model_selection import select_model
from .quality import ScoreSignals, score_prompt, validate_prompt
from .timeline import build_gap_prompt, detect_gaps, format_gaps_for_context

logger = get_logger(__name__)

TIER3_TEMPERATURE = 0.7
TIER3_MAX_TOKENS = 2000
DEEP_TEMPERATURE = 0.3
FALLBACK_ANCHOR = 'that day'
PAYWALL_STORY_COUNT = 3

# First-story fallback wording per anchor kind
FIRST_STORY_FALLBACKS = {
    'person': 'Where did you last see {entity}, and what did they say?',
    'place': 'What happened at {entity} after that? Who was with you?',
    'object': 'Where is {entity} now, and who else remembers it?',
    'phrase': 'What happened right after {entity}? Who was with you?',
}
REPEATED_FALLBACK = 'You keep returning to {entity} in your stories. What makes that memory stick?'


class MilestoneAnalysisError(Exception):
    """Raised when the milestone analysis request fails or its reply cannot be parsed."""
    pass


@dataclass
class CandidatePrompt:
    """A prompt proposed by the model, not yet validated."""
    text: str
    memory_type: MemoryType
    anchor_entity: str
    signals: ScoreSignals = field(default_factory=ScoreSignals)
    reasoning: str = ''


@dataclass
class ParsedAnalysis:
    candidates: List[CandidatePrompt]
    insights: Optional[CharacterInsight] = None


@dataclass
class AnalysisParseError:
    reason: str


def target_prompt_count(story_count: int) -> int:
    """Number of prompts to keep at a milestone; early milestones get more."""
    if 1 <= story_count <= 3:
        return 4
    if 4 <= story_count <= 20:
        return 3
    if 30 <= story_count <= 50:
        return 2
    return 1


def _analysis_phase(story_count: int) -> str:
    if story_count <= 2:
        return """EARLY STORIES: expand what they have shared.
- Lean on their exact words and on who else was there
- Keep it gentle, they are just starting to trust you"""
    if story_count == PAYWALL_STORY_COUNT:
        return """THIRD STORY: show your range.
- Mix the strategies and lead with the strongest connection you found
- Reference details that prove you read every story"""
    if story_count <= 10:
        return """PATTERNS: connect the dots.
- Name behavior that repeats across stories
- Reference two or more stories in one prompt when possible"""
    return """DEEP PATTERNS: show mastery.
- Surface unspoken rules and contradictions between what they say and what they did
- Connect choices made decades apart"""


def build_system_prompt(story_count: int, prompt_count: int, gap_context: str) -> str:
    return f"""You are listening to someone record the stories of their life. Prove you were really listening.

Write {prompt_count} follow-up prompts, each using one of these memory-retrieval strategies:

1. person_expansion: a named person from the stories, asked about from a new angle
2. place_memory: a specific place, what happened there or what changed it
3. timeline_gap: a period of life their stories skip
4. event_adjacent: what happened just before or after an event they described
5. object_story: an object they mentioned, where it came from and where it went
6. relationship_moment: the moment a relationship turned

Timeline: {gap_context}

{_analysis_phase(story_count)}

RULES (prompts breaking any of these are discarded):
- At most 30 words per prompt
- Use exact names and phrases from their stories ("Coach", "Chewy", "housebroken by love")
- No generic nouns (girl, boy, man, woman, house, room, chair)
- No yes/no questions ("Did you love your father?")
- No therapy-speak ("How did that make you feel?", "deeper meaning", "your journey")
- No canned interviewer phrasing ("Tell me more", "In your story about", "What else do you remember")
- No story titles; they remember their own life

Return only JSON:
{{
  "prompts": [
    {{
      "prompt": "The prompt text",
      "memory_type": "person_expansion|place_memory|timeline_gap|event_adjacent|object_story|relationship_moment",
      "anchor_entity": "The name or exact phrase the prompt is anchored on",
      "uses_exact_phrase": false,
      "references_multiple_stories": false,
      "asks_about_absence": false,
      "acknowledges_contradiction": false,
      "reasoning": "Why this prompt will make them want to record"
    }}
  ],
  "characterInsights": {{
    "traits": [{{"trait": "...", "confidence": 0.8, "evidence": ["..."]}}],
    "invisibleRules": ["..."],
    "contradictions": [{{"stated": "...", "lived": "...", "tension": "..."}}],
    "coreLessons": ["..."]
  }}
}}"""


DEEP_SYSTEM_PROMPT = """You are reading the collected life stories of one person.
Describe their character from the evidence in the stories only.

Return only JSON:
{
  "characterInsights": {
    "traits": [{"trait": "...", "confidence": 0.8, "evidence": ["short quote or paraphrase"]}],
    "invisibleRules": ["rules they live by without saying so"],
    "contradictions": [{"stated": "what they say", "lived": "what they did", "tension": "why both are true"}],
    "coreLessons": ["..."]
  }
}"""


def build_corpus(stories: Sequence[Story]) -> str:
    """Sanitized corpus of all stories for the user message.

    Stories still carrying injection markers after sanitization are left out;
    returns '' when no story is left.
    """
    sections = []
    for index, story in enumerate(stories, start=1):
        transcript = sanitize(story.transcript)
        lesson = sanitize(story.lesson_learned)
        if not is_safe_for_llm(transcript) or (lesson and not is_safe_for_llm(lesson)):
            logger.warning(f'Story {story.id} left out of the analysis corpus: unsafe after sanitization')
            continue
        year = f'\nYear: {story.story_year}' if story.story_year else ''
        lesson_line = f'\nLesson Learned: {lesson}' if lesson else ''
        sections.append(f'Story {index}:{year}\n{transcript}{lesson_line}')

    if not sections:
        return ''
    return 'Analyze these stories:\n\n' + '\n\n---\n\n'.join(sections)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


def parse_character_insights(raw: Any, story_count: int) -> Optional[CharacterInsight]:
    """Build a CharacterInsight from the model's insight object, or None if it is unusable."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.warning(f'Ignoring malformed character insights of type {type(raw).__name__}')
        return None

    try:
        traits = [
            Trait(trait=str(t['trait']),
                  confidence=max(0.0, min(1.0, float(t.get('confidence', 0.5)))),
                  evidence=_string_list(t.get('evidence'))) for t in raw.get('traits') or [] if isinstance(t, dict)
        ]
        contradictions = [
            Contradiction(stated=str(c['stated']), lived=str(c['lived']), tension=str(c.get('tension', '')))
            for c in raw.get('contradictions') or []
            if isinstance(c, dict)
        ]
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f'Ignoring malformed character insights: {e}')
        return None

    return CharacterInsight(traits=traits,
                            invisible_rules=_string_list(raw.get('invisibleRules', raw.get('invisible_rules'))),
                            contradictions=contradictions,
                            core_lessons=_string_list(raw.get('coreLessons', raw.get('core_lessons'))),
                            story_count=story_count)


def _parse_candidate(raw: Any) -> Optional[CandidatePrompt]:
    if not isinstance(raw, dict) or not isinstance(raw.get('prompt'), str):
        return None

    try:
        memory_type = MemoryType(raw.get('memory_type', MemoryType.EVENT_ADJACENT.value))
    except ValueError:
        memory_type = MemoryType.EVENT_ADJACENT
    if memory_type == MemoryType.ECHO:
        memory_type = MemoryType.EVENT_ADJACENT

    anchor = raw.get('anchor_entity')
    return CandidatePrompt(text=raw['prompt'].strip(),
                           memory_type=memory_type,
                           anchor_entity=sanitize_entity(anchor) if isinstance(anchor, str) else '',
                           signals=ScoreSignals(uses_exact_phrase=bool(raw.get('uses_exact_phrase')),
                                                references_multiple_stories=bool(raw.get('references_multiple_stories')),
                                                asks_about_absence=bool(raw.get('asks_about_absence')),
                                                acknowledges_contradiction=bool(raw.get('acknowledges_contradiction'))),
                           reasoning=str(raw.get('reasoning', '')))


def parse_analysis_response(text: str, story_count: int) -> Union[ParsedAnalysis, AnalysisParseError]:
    """Parse a (possibly fenced) JSON reply into candidates and insights.

    Args:
        text: Raw model reply
        story_count: Story count the insights belong to

    Returns:
        ParsedAnalysis, or AnalysisParseError describing why the reply is unusable
    """
    cleaned = clean_json_response(text)
    if not cleaned:
        return AnalysisParseError(reason='Empty response')

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return AnalysisParseError(reason=f'Invalid JSON: {e}')

    if not isinstance(data, dict):
        return AnalysisParseError(reason=f'Expected a JSON object, got {type(data).__name__}')
    raw_prompts = data.get('prompts')
    if not isinstance(raw_prompts, list):
        return AnalysisParseError(reason="Missing 'prompts' list")

    candidates = []
    for raw in raw_prompts:
        candidate = _parse_candidate(raw)
        if candidate is None:
            logger.info(f'Tier 3 dropped malformed candidate: {raw!r}')
            continue
        candidates.append(candidate)

    insights = parse_character_insights(data.get('characterInsights', data.get('character_insights')), story_count)
    return ParsedAnalysis(candidates=candidates, insights=insights)


class MilestoneAnalyzer:
    """Runs Tier-3 analysis when a storyteller crosses a milestone."""

    def __init__(self, gateway: LLMGateway, config: AppConfig):
        self.gateway = gateway
        self.config = config

    def _context_note(self, story_count: int) -> str:
        if story_count == 1:
            return 'Based on your first story'
        return f'Based on patterns across {story_count} stories'

    def _to_prompt(self, text: str, memory_type: MemoryType, anchor: str, signals: ScoreSignals, story_count: int,
                   model_version: str, created_at) -> Prompt:
        return Prompt(prompt_text=text,
                      tier=PromptTier.TIER_3,
                      memory_type=memory_type,
                      anchor_entity=anchor,
                      anchor_hash=anchor_hash(memory_type.value, anchor),
                      context_note=self._context_note(story_count),
                      score=score_prompt(text, signals, self.config.prompts.max_prompt_words),
                      model_version=model_version,
                      expires_at=expires_after(self.config.prompts.tier3_expiration_days, created_at),
                      created_at=created_at)

    def _fallback_text(self, candidate: CandidateEntity, story_count: int) -> str:
        entity = to_second_person(candidate.text)
        if story_count == 1:
            return FIRST_STORY_FALLBACKS[candidate.kind].format(entity=entity)
        return REPEATED_FALLBACK.format(entity=entity)

    def _fallback(self, stories: Sequence[Story], story_count: int, model_version: str, created_at) -> Prompt:
        """One deterministic prompt anchored on the first story, for when every candidate was rejected.

        Anchors are tried in prominence order and the first rendering that
        passes the quality gate wins; the neutral anchor ends the list.
        """
        candidates = prominent_entities(stories[0].transcript)
        candidates.append(CandidateEntity(text=FALLBACK_ANCHOR, kind='phrase'))

        for candidate in candidates:
            text = self._fallback_text(candidate, story_count)
            if not validate_prompt(text, self.config.prompts.max_prompt_words):
                logger.info(f'Tier 3 rejected fallback prompt: "{text}"')
                continue
            logger.warning(f"Tier 3 using fallback prompt anchored on '{candidate.text}'")
            return self._to_prompt(text, MemoryType.EVENT_ADJACENT, candidate.text, ScoreSignals(), story_count,
                                   model_version, created_at)

        raise MilestoneAnalysisError(f"Fallback prompt anchored on '{FALLBACK_ANCHOR}' failed the quality gate")

    def _gap_prompt(self, stories: Sequence[Story], coverage, story_count: int, model_version: str,
                    created_at) -> Optional[Prompt]:
        if not coverage.gaps:
            return None

        people: List[str] = []
        places: List[str] = []
        for story in stories:
            extracted = extract_entities(story.transcript)
            people.extend(extracted.people)
            places.extend(extracted.places)

        gap = coverage.gaps[0]
        text = build_gap_prompt(gap, [to_second_person(p) for p in people], places)
        if not validate_prompt(text, self.config.prompts.max_prompt_words):
            logger.info(f'Tier 3 rejected timeline gap prompt: "{text}"')
            return None
        return self._to_prompt(text, MemoryType.TIMELINE_GAP, gap.phase, ScoreSignals(asks_about_absence=True),
                               story_count, model_version, created_at)

    def _call(self, stage: str, story_count: int, system_prompt: str, corpus: str, temperature: float) -> ChatResponse:
        selection = select_model(stage, story_count, self.config)
        logger.info(f'Tier 3 {stage} call to {selection.model} (effort: {selection.reasoning_effort or "n/a"})')
        try:
            response = self.gateway.chat(
                ChatRequest(model=selection.model,
                            messages=[
                                ChatMessage(role='system', content=system_prompt),
                                ChatMessage(role='user', content=corpus)
                            ],
                            reasoning_effort=selection.reasoning_effort,
                            temperature=temperature,
                            max_tokens=TIER3_MAX_TOKENS))
        except LLMGatewayError as e:
            raise MilestoneAnalysisError(f'Milestone analysis request failed: {e}') from e

        logger.info(f'Tier 3 {stage} call completed: model {response.model_used}, {response.latency_ms} ms, '
                    f'{response.usage.total} tokens')
        if not response.text.strip():
            raise MilestoneAnalysisError(f'Empty response from {selection.model}')
        if not response.model_used:
            response.model_used = selection.model
        return response

    def analyze_milestone(self,
                          stories: Sequence[Story],
                          story_count: int,
                          birth_year: Optional[int] = None) -> MilestoneResult:
        """Generate cross-story prompts for a milestone.

        Args:
            stories: All of the storyteller's stories, oldest first
            story_count: Story count that triggered the milestone
            birth_year: Known birth year for timeline gap detection

        Returns:
            MilestoneResult with at least one prompt

        Raises:
            MilestoneAnalysisError: On gateway failure, an empty reply or an unparseable reply
        """
        if not stories:
            raise MilestoneAnalysisError('No stories to analyze')

        target = target_prompt_count(story_count)
        coverage = detect_gaps(stories, known_birth_year=birth_year)
        system_prompt = build_system_prompt(story_count, target, format_gaps_for_context(coverage))

        corpus = build_corpus(stories)
        if not corpus:
            raise MilestoneAnalysisError('No story is safe to send for analysis')

        response = self._call('tier3', story_count, system_prompt, corpus, TIER3_TEMPERATURE)
        parsed = parse_analysis_response(response.text, story_count)
        if isinstance(parsed, AnalysisParseError):
            raise MilestoneAnalysisError(f'Could not parse milestone analysis: {parsed.reason}')

        model_version = response.model_used
        created_at = utc_now()
        prompts: List[Prompt] = []
        seen = set()
        for candidate in parsed.candidates:
            if not validate_prompt(candidate.text, self.config.prompts.max_prompt_words):
                logger.info(f'Tier 3 rejected prompt: "{candidate.text}"')
                continue
            anchor = candidate.anchor_entity or most_prominent_entity(candidate.text) or candidate.text
            prompt = self._to_prompt(candidate.text, candidate.memory_type, anchor, candidate.signals, story_count,
                                     model_version, created_at)
            if prompt.anchor_hash in seen:
                logger.info(f"Tier 3 dropped duplicate anchor '{anchor}'")
                continue
            seen.add(prompt.anchor_hash)
            prompts.append(prompt)

        rejected = len(parsed.candidates) - len(prompts)
        if rejected:
            logger.warning(f'Tier 3 quality filter rejected {rejected} of {len(parsed.candidates)} prompts')

        if prompts:
            if len(prompts) < target:
                gap_prompt = self._gap_prompt(stories, coverage, story_count, model_version, created_at)
                if gap_prompt is not None and gap_prompt.anchor_hash not in seen:
                    prompts.append(gap_prompt)
        else:
            prompts.append(self._fallback(stories, story_count, model_version, created_at))

        prompts = prompts[:target]
        if story_count == PAYWALL_STORY_COUNT:
            for index, prompt in enumerate(prompts):
                prompt.is_locked = index > 0

        logger.info(f'Tier 3 analysis complete: {len(prompts)} prompts for {story_count} stories')
        return MilestoneResult(prompts=prompts, character_insights=parsed.insights, model_used=model_version)

    def analyze_character(self, stories: Sequence[Story], story_count: int) -> Optional[CharacterInsight]:
        """Deep character analysis of the corpus, returning None if the reply holds no usable insights.

        Raises:
            MilestoneAnalysisError: On gateway failure, an empty reply or invalid JSON
        """
        if not stories:
            return None

        corpus = build_corpus(stories)
        if not corpus:
            raise MilestoneAnalysisError('No story is safe to send for character analysis')

        response = self._call('deep', story_count, DEEP_SYSTEM_PROMPT, corpus, DEEP_TEMPERATURE)
        try:
            data = json.loads(clean_json_response(response.text))
        except json.JSONDecodeError as e:
            raise MilestoneAnalysisError(f'Could not parse character analysis: {e}') from e
        if not isinstance(data, dict):
            raise MilestoneAnalysisError(f'Expected a JSON object, got {type(data).__name__}')

        return parse_character_insights(data.get('characterInsights', data.get('character_insights')), story_count)
