"""
Prompt quality gates: entity worthiness, hard validation and advisory scoring.

Everything here is pure and deterministic. The validator is the hard gate
every generator runs before a prompt may be scored or stored; the scorer only
ranks prompts that already passed it.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_PROMPT_WORDS = 30

ARTICLES = frozenset({'the', 'a', 'an'})

POSSESSIVES = frozenset({'my', 'his', 'her', 'their', 'our', 'your'})

# Bare nouns that never anchor a memory on their own
GENERIC_WORDS = frozenset({
    'girl', 'boy', 'man', 'woman', 'house', 'room', 'chair', 'place', 'thing', 'person', 'kid', 'child', 'guy',
    'lady', 'stuff', 'people', 'table', 'door', 'building', 'area', 'time', 'day', 'way', 'someone', 'something'
})

# Temporal nouns name no subject; "the day you left" is fine in a prompt
TEMPORAL_WORDS = frozenset({'time', 'day', 'way'})

# Generic nouns rejected anywhere in a prompt, article or not
CORE_GENERIC_NOUNS = ('girl', 'boy', 'man', 'woman', 'house', 'room', 'chair')

RELATIONAL_ROLES = frozenset({
    'father', 'mother', 'dad', 'mom', 'brother', 'sister', 'son', 'daughter', 'grandfather', 'grandmother', 'grandpa',
    'grandma', 'spouse', 'husband', 'wife', 'partner', 'uncle', 'aunt', 'cousin', 'nephew', 'niece', 'stepfather',
    'stepmother', 'godfather', 'godmother'
})

# Lowercase nouns specific enough to anchor a prompt alone
SPECIFIC_NOUNS = frozenset({
    'workshop', 'workbench', 'toolbox', 'brownstone', 'chevelle', 'camaro', 'farmhouse', 'cabin', 'orchard', 'attic',
    'porch', 'diner', 'garage', 'barn', 'studio', 'sawmill', 'shipyard', 'boardinghouse'
})

# Capitalized words that are sentence furniture, not names
NON_NAME_WORDS = frozenset({
    'I', 'He', 'She', 'They', 'We', 'It', 'You', 'The', 'A', 'An', 'This', 'That', 'These', 'Those', 'When', 'Then',
    'But', 'And', 'So', 'Or', 'Yes', 'No', 'My', 'His', 'Her', 'Our', 'Their', 'Your', 'What', 'Where', 'Why', 'How',
    'Who', 'There', 'Here', 'After', 'Before', 'If', 'One', 'Later', 'Now', 'Every', 'Back', 'Also', 'Just', 'Once',
    'Sometimes', 'Well', 'Oh', 'Even', 'Still', 'Maybe', 'At', 'In', 'On', 'To', 'From', 'With', 'For', 'As', 'By',
    'Of', 'Our', 'Mr', 'Mrs', 'Ms', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday'
})

FUNCTION_WORDS = frozenset({
    'the', 'a', 'an', 'to', 'from', 'with', 'of', 'in', 'on', 'at', 'by', 'for', 'and', 'or', 'but', 'so', 'yet',
    'was', 'were', 'is', 'are', 'had', 'have', 'did', 'do', 'been', 'being', 'said', 'told', 'it', 'that', 'this'
})

ROBOTIC_PHRASES = (
    'in your story about',
    'tell me more',
    'what else do you remember',
    'what else',
    'can you elaborate',
    'would you like to share',
    'can you describe',
    'share a story',
)

THERAPY_PHRASES = (
    'how did that make you feel',
    'how does that make you feel',
    'how did it make you feel',
    "what's the clearest memory you have",
    'what is the clearest memory you have',
    'what was the most important lesson',
    'deeper meaning',
    'inner child',
    'your journey',
    'healing process',
    'shaped who you are',
)

DEPTH_WORDS = ('felt', 'learned', 'realized', 'taught', 'meant', 'chose', 'decided', 'promised')

_YES_NO = re.compile(r'^\s*(?:did|was|were|do|does|is|are|have|has|had|can|could|would|will|should)\b', re.IGNORECASE)
_CORE_GENERIC = re.compile(r'\b(?:' + '|'.join(CORE_GENERIC_NOUNS) + r')\b', re.IGNORECASE)
_ARTICLE_GENERIC = re.compile(r'\b(?:the|a|an)\s+(?:' + '|'.join(sorted(GENERIC_WORDS - TEMPORAL_WORDS)) + r')\b',
                              re.IGNORECASE)
_PROPER_TOKEN = re.compile(r"^[A-Z][a-zA-Z.\-]*(?:'s)?$")
_POSSESSIVE_TOKEN = re.compile(r"[A-Za-z]'s$")
_MID_SENTENCE_PROPER = re.compile(r"(?<=[a-z,]\s)[A-Z][a-z]+")
# father's, Coach's; not contractions like what's or that's
_POSSESSIVE_NOUN = re.compile(r"\b(?!(?:what|that|it|he|she|there|who|here|let|where|how)'s\b)[A-Za-z]+'s\b",
                              re.IGNORECASE)


@dataclass
class QualityIssue:
    type: str  # empty, long, robotic, therapy, yes_no, generic
    reason: str


@dataclass
class ScoreSignals:
    """Signals reported by the generator alongside a prompt."""
    uses_exact_phrase: bool = False
    references_multiple_stories: bool = False
    asks_about_absence: bool = False
    acknowledges_contradiction: bool = False


def _normalize_quotes(text: str) -> str:
    return text.replace('’', "'").replace('‘', "'").replace('“', '"').replace('”', '"')


def _word_count(text: str) -> int:
    return len(text.split())


def is_worthy_entity(candidate: Any) -> bool:
    """Decide whether a candidate is specific enough to anchor a prompt.

    Args:
        candidate: Surface form of the entity (may be None)

    Returns:
        True for names, possessive constructions and specific compound nouns
    """
    if not candidate or not isinstance(candidate, str):
        return False

    text = _normalize_quotes(candidate).strip()
    if not text or not text[0].isalpha():
        return False

    tokens = text.split()
    if tokens[0].lower() in ARTICLES:
        tokens = tokens[1:]
    if not tokens or len(tokens) > 6:
        return False

    lowered = [token.lower().strip('.,;:!?"') for token in tokens]
    if ' '.join(lowered) in GENERIC_WORDS or lowered[-1] in GENERIC_WORDS:
        return False

    # my father, his mother, my blue Chevelle
    if lowered[0] in POSSESSIVES:
        return len(tokens) >= 2 and lowered[-1] not in FUNCTION_WORDS

    # father's workshop, Coach's office
    if len(tokens) >= 2 and any(_POSSESSIVE_TOKEN.search(token) for token in tokens[:-1]):
        return True

    # Chewy, Coach Thompson, Chevy Camaro
    if all(_PROPER_TOKEN.match(token) for token in tokens):
        if len(tokens) == 1 and tokens[0] in NON_NAME_WORDS:
            return False
        return not all(token in NON_NAME_WORDS for token in tokens)

    if any(word in SPECIFIC_NOUNS for word in lowered):
        return True

    # old workbench, family brownstone
    if len(tokens) >= 2 and lowered[-1] not in FUNCTION_WORDS:
        return not all(word in FUNCTION_WORDS for word in lowered[:-1])

    return False


def assess_prompt_quality(prompt_text: Any, max_words: int = MAX_PROMPT_WORDS) -> List[QualityIssue]:
    """List every hard-gate rule a prompt breaks (empty list = acceptable)."""
    if not prompt_text or not isinstance(prompt_text, str) or not prompt_text.strip():
        return [QualityIssue(type='empty', reason='Prompt is empty')]

    text = _normalize_quotes(prompt_text).strip()
    lower = text.lower()
    issues = []

    word_count = _word_count(text)
    if word_count > max_words:
        issues.append(QualityIssue(type='long', reason=f'Prompt is too long ({word_count} words, max {max_words})'))

    robotic = next((phrase for phrase in ROBOTIC_PHRASES if phrase in lower), None)
    if robotic:
        issues.append(QualityIssue(type='robotic', reason=f"Prompt uses canned phrasing '{robotic}'"))

    therapy = next((phrase for phrase in THERAPY_PHRASES if phrase in lower), None)
    if therapy:
        issues.append(QualityIssue(type='therapy', reason=f"Prompt uses therapy-speak '{therapy}'"))

    if _YES_NO.match(text):
        issues.append(QualityIssue(type='yes_no', reason='Prompt is a yes/no question'))

    generic = _CORE_GENERIC.search(text) or _ARTICLE_GENERIC.search(text)
    if generic:
        issues.append(QualityIssue(type='generic', reason=f"Prompt is anchored on a generic noun '{generic.group(0)}'"))

    return issues


def validate_prompt(prompt_text: Any, max_words: int = MAX_PROMPT_WORDS) -> bool:
    """Hard quality gate: True only if the prompt breaks no rule."""
    return not assess_prompt_quality(prompt_text, max_words)


def score_prompt(prompt_text: Any, signals: Optional[ScoreSignals] = None, max_words: int = MAX_PROMPT_WORDS) -> int:
    """Compute a 0-100 desirability score used for ranking.

    Args:
        prompt_text: Prompt to score
        signals: Generator-reported signals (defaults to none set)
        max_words: Word limit past which the prompt is penalized

    Returns:
        Score clamped to [0, 100]
    """
    if not prompt_text or not isinstance(prompt_text, str) or not prompt_text.strip():
        return 0

    signals = signals or ScoreSignals()
    text = _normalize_quotes(prompt_text).strip()
    lower = text.lower()
    score = 50

    if signals.uses_exact_phrase:
        score += 20
    if signals.references_multiple_stories:
        score += 12
    if signals.asks_about_absence:
        score += 8
    if signals.acknowledges_contradiction:
        score += 8

    depth_hits = sum(1 for word in DEPTH_WORDS if re.search(rf'\b{word}\b', lower))
    score += min(depth_hits * 3, 6)

    if _POSSESSIVE_NOUN.search(text) or _MID_SENTENCE_PROPER.search(text):
        score += 5

    # Penalties repeat the hard gate in case a caller scores unvalidated text
    if _CORE_GENERIC.search(text) or _ARTICLE_GENERIC.search(text):
        score -= 20
    if any(phrase in lower for phrase in ROBOTIC_PHRASES + THERAPY_PHRASES):
        score -= 15
    if _word_count(text) > max_words:
        score -= 15

    return max(0, min(100, score))


def get_quality_report(prompt_text: Any, max_words: int = MAX_PROMPT_WORDS) -> Dict[str, Any]:
    """Validation issues and score for one prompt, used by the cleanup pass."""
    issues = assess_prompt_quality(prompt_text, max_words)
    text = prompt_text if isinstance(prompt_text, str) else ''
    return {
        'is_quality': not issues,
        'word_count': _word_count(text),
        'issues': issues,
        'score': score_prompt(text, max_words=max_words),
    }
