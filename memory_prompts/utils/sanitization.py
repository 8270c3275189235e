"""
Sanitization of user-authored text before it is embedded in an LLM request.

Strips role spoofing, instruction overrides and template syntax so that a
transcript cannot steer the model, and provides the entity normalization used
for anchor hashing and fuzzy entity matching.
"""

import math
import re
from typing import Any

MAX_TEXT_LENGTH = 10000
MAX_ENTITY_LENGTH = 100

_INJECTION_PATTERNS = [
    # Role spoofing
    re.compile(r'\bsystem\s*:', re.IGNORECASE),
    re.compile(r'\bassistant\s*:', re.IGNORECASE),
    re.compile(r'\buser\s*:', re.IGNORECASE),
    # Override attempts
    re.compile(r'\bignore\s+(?:all\s+)?previous\b', re.IGNORECASE),
    re.compile(r'\bdisregard\s+previous\b', re.IGNORECASE),
    re.compile(r'\bforget\s+previous\b', re.IGNORECASE),
    re.compile(r'\boverride\s+previous\b', re.IGNORECASE),
    # Instruction injection
    re.compile(r'\b(?:new|actual|real)\s+instructions\b', re.IGNORECASE),
    # Template injection
    re.compile(r'\{\{.*?\}\}'),
    re.compile(r'\$\{.*?\}'),
    # Prompt markers
    re.compile(r'\[SYSTEM\]', re.IGNORECASE),
    re.compile(r'\[/?INST\]', re.IGNORECASE),
]

_EXCESS_NEWLINES = re.compile(r'\n{4,}')

_DANGEROUS_PATTERNS = [
    re.compile(r'system\s*:', re.IGNORECASE),
    re.compile(r'ignore\s+previous', re.IGNORECASE),
    re.compile(r'\{\{.*?\}\}'),
    re.compile(r'\[SYSTEM\]', re.IGNORECASE),
]


def _sanitize_once(text: str) -> str:
    for pattern in _INJECTION_PATTERNS:
        text = pattern.sub('', text)
    text = _EXCESS_NEWLINES.sub('\n\n\n', text)
    if len(text) > MAX_TEXT_LENGTH:
        text = text[:MAX_TEXT_LENGTH]
    return text.strip()


def sanitize(text: Any) -> str:
    """Remove prompt-injection patterns from user text.

    Removals can splice two fragments into a new match, so the pass is
    repeated until the text stops changing.

    Args:
        text: Raw user-authored text

    Returns:
        Sanitized text, or '' for empty or non-string input
    """
    if not text or not isinstance(text, str):
        return ''

    previous = None
    sanitized = text
    while sanitized != previous:
        previous = sanitized
        sanitized = _sanitize_once(sanitized)
    return sanitized


def sanitize_entity(entity: Any) -> str:
    """Strip system-level keywords and template characters from an entity name."""
    if not entity or not isinstance(entity, str):
        return ''

    sanitized = re.sub(r'\b(?:system|root|admin)\b', '', entity, flags=re.IGNORECASE)
    sanitized = re.sub(r'[{}$]', '', sanitized)
    sanitized = re.sub(r'\s{2,}', ' ', sanitized)
    return sanitized[:MAX_ENTITY_LENGTH].strip()


def normalize_entity(entity: Any) -> str:
    """Normalize an entity for hashing and fuzzy matching (Katie, Katy and Kati fold together)."""
    if not entity or not isinstance(entity, str):
        return ''

    normalized = entity.lower().strip()
    normalized = re.sub(r'[^a-z0-9\s]', '', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    normalized = re.sub(r'(?:ie|ey|i)$', 'y', normalized)
    normalized = re.sub(r'^the\s+', '', normalized)
    return normalized


def _levenshtein(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j - 1] + cost, current[j - 1] + 1, previous[j] + 1))
        previous = current
    return previous[-1]


def entities_match(first: str, second: str) -> bool:
    """True if two entity names are likely the same entity spelled differently."""
    if not first or not second:
        return False

    norm_first = normalize_entity(first)
    norm_second = normalize_entity(second)
    if norm_first == norm_second:
        return True

    # One edit allowed per five characters
    threshold = math.ceil(max(len(norm_first), len(norm_second)) / 5)
    return _levenshtein(norm_first, norm_second) <= threshold


def is_safe_for_llm(text: Any) -> bool:
    """Check that text carries no remaining injection markers and fits the length cap."""
    if not text or not isinstance(text, str):
        return False
    if len(text) > MAX_TEXT_LENGTH:
        return False
    return not any(pattern.search(text) for pattern in _DANGEROUS_PATTERNS)
