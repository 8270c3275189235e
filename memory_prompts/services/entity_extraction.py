"""
Entity Extraction Service: pattern-based anchors from a single story.

Extraction is deliberately regex-only; every candidate is pushed through the
worthiness filter so a generic noun never becomes an anchor.
"""

import re
from dataclasses import dataclass, field
from typing import List

from ..models.core import CandidateEntity
from ..utils.logging_config import get_logger
from ..utils.sanitization import entities_match, sanitize
from .quality import NON_NAME_WORDS, RELATIONAL_ROLES, is_worthy_entity

logger = get_logger(__name__)

_ROLE_ALTERNATION = '|'.join(sorted(RELATIONAL_ROLES, key=len, reverse=True))

_NAME_BEFORE_VERB = re.compile(
    r"\b([A-Z][a-z]{2,}(?:\s+[A-Z][a-z]+)?)\s+(?:said|told|taught|showed|gave|asked|wanted|helped|loved|knew|met|called|"
    r"was|had|would|used|drove|took|made|lived|worked|died|laughed|smiled)\b")
_POSSESSIVE_ROLE = re.compile(rf'\b(?:my|his|her|their|our)\s+(?:{_ROLE_ALTERNATION})\b', re.IGNORECASE)
_TITLED_NAME = re.compile(r'\b(?:Coach|Doctor|Dr\.|Professor|Captain|Pastor|Sergeant|Aunt|Uncle|Grandma|Grandpa|Miss|Mrs\.|Mr\.)'
                          r'(?:\s+[A-Z][a-z]+)?')

_POSSESSIVE_PLACE = re.compile(
    r"\b(?:[A-Z][a-z]+'s|(?i:my|his|her|their|our)\s+(?:[a-z]+'s|[A-Z][a-z]+'s))\s+"
    r"(?:workshop|office|cabin|shop|studio|garage|barn|farm|kitchen|porch|store|diner|bakery)\b")
_NAMED_LOCATION = re.compile(r'\b(?:at|in|to|from|near)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3})\b')

_POSSESSIVE_OBJECT = re.compile(
    r"\b(?i:my|his|her|their|our)\s+(?:(?:old|blue|red|green|black|white|first)\s+)?"
    r"(?:[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?|workbench|toolbox|truck|pickup|bike|ring|watch|camera|guitar|piano|rifle|locket)\b")

_DOUBLE_QUOTED = re.compile(r'"([^"\n]{10,50})"')
_SINGLE_QUOTED = re.compile(r"(?<![A-Za-z])'([^'\n]{10,50})'(?![A-Za-z])")
_MEMORABLE = re.compile(r"\b(?:never forget|always remember|can't forget|still remember)\s+([^.!?\n]{10,40})[.!?]",
                        re.IGNORECASE)

# Never objects, even behind a possessive
BODY_AND_CLOTHING = frozenset({
    'chest', 'knees', 'legs', 'arms', 'hands', 'feet', 'head', 'eyes', 'ears', 'nose', 'mouth', 'back', 'shoulders',
    'fingers', 'toes', 'neck', 'face', 'heart', 'stomach', 'belly', 'hips', 'ankle', 'wrist', 'elbow', 'knee', 'shirt',
    'pants', 'shoes', 'socks', 'dress', 'coat', 'jacket', 'hat'
})


@dataclass
class ExtractedEntities:
    people: List[str] = field(default_factory=list)
    places: List[str] = field(default_factory=list)
    objects: List[str] = field(default_factory=list)
    phrases: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.people or self.places or self.objects or self.phrases)


def _add_unique(bucket: List[str], value: str, taken: set) -> None:
    value = value.strip().strip('.,;:!?')
    key = value.lower()
    if value and key not in taken:
        taken.add(key)
        bucket.append(value)


def _normalize_quotes(text: str) -> str:
    return text.replace('’', "'").replace('‘', "'").replace('“', '"').replace('”', '"')


def extract_entities(transcript: str) -> ExtractedEntities:
    """Extract worthy people, places, objects and exact phrases from a transcript.

    Args:
        transcript: Raw story transcript (sanitized here)

    Returns:
        ExtractedEntities with every member already passing the worthiness filter
    """
    text = _normalize_quotes(sanitize(transcript))
    extracted = ExtractedEntities()
    if not text:
        return extracted

    taken = set()

    for pattern in (_DOUBLE_QUOTED, _SINGLE_QUOTED, _MEMORABLE):
        for match in pattern.finditer(text):
            if is_worthy_entity(match.group(1)):
                _add_unique(extracted.phrases, match.group(1), taken)

    for match in _POSSESSIVE_PLACE.finditer(text):
        if is_worthy_entity(match.group(0)):
            _add_unique(extracted.places, match.group(0), taken)
    for match in _NAMED_LOCATION.finditer(text):
        if is_worthy_entity(match.group(1)):
            _add_unique(extracted.places, match.group(1), taken)

    for pattern in (_NAME_BEFORE_VERB, _TITLED_NAME):
        for match in pattern.finditer(text):
            name = match.group(1) if pattern is _NAME_BEFORE_VERB else match.group(0)
            if name.split()[0] in NON_NAME_WORDS:
                continue
            if is_worthy_entity(name):
                _add_unique(extracted.people, name, taken)
    for match in _POSSESSIVE_ROLE.finditer(text):
        if is_worthy_entity(match.group(0)):
            _add_unique(extracted.people, match.group(0).lower(), taken)

    for match in _POSSESSIVE_OBJECT.finditer(text):
        obj = match.group(0)
        head = obj.split()[-1].lower()
        if head in BODY_AND_CLOTHING or head in RELATIONAL_ROLES:
            logger.debug(f"Rejected object candidate '{obj}'")
            continue
        if is_worthy_entity(obj):
            _add_unique(extracted.objects, obj, taken)

    logger.debug(f'Extracted {len(extracted.people)} people, {len(extracted.places)} places, '
                 f'{len(extracted.objects)} objects, {len(extracted.phrases)} phrases')
    return extracted


def _distinct_people(people: List[str], limit: int) -> List[str]:
    # Katie and Katy in one transcript are the same person
    distinct: List[str] = []
    for person in people:
        if any(entities_match(person, kept) for kept in distinct):
            logger.debug(f"Merged '{person}' into an earlier spelling")
            continue
        distinct.append(person)
        if len(distinct) == limit:
            break
    return distinct


def candidate_entities(extracted: ExtractedEntities, limit: int = 3) -> List[CandidateEntity]:
    """Pick anchors in priority order: a phrase, up to two people, a place, an object."""
    ordered = ([CandidateEntity(text=p, kind='phrase') for p in extracted.phrases[:1]] +
               [CandidateEntity(text=p, kind='person') for p in _distinct_people(extracted.people, 2)] +
               [CandidateEntity(text=p, kind='place') for p in extracted.places[:1]] +
               [CandidateEntity(text=o, kind='object') for o in extracted.objects[:1]])
    return ordered[:limit]


def prominent_entities(transcript: str) -> List[CandidateEntity]:
    """Anchor candidates in fallback order: people, places, objects, then stray capitalized names.

    A capitalized word that does not start a sentence is treated as a name,
    unless it is part of an entity already listed.
    """
    extracted = extract_entities(transcript)
    ordered = ([CandidateEntity(text=p, kind='person') for p in extracted.people] +
               [CandidateEntity(text=p, kind='place') for p in extracted.places] +
               [CandidateEntity(text=o, kind='object') for o in extracted.objects])
    taken = {word for candidate in ordered for word in candidate.text.split()}

    text = sanitize(transcript)
    for match in re.finditer(r'(?<=[a-z,;]\s)([A-Z][a-z]{2,})\b', text):
        word = match.group(1)
        if word in taken or word in NON_NAME_WORDS or not is_worthy_entity(word):
            continue
        taken.add(word)
        ordered.append(CandidateEntity(text=word, kind='person'))
    return ordered


def most_prominent_entity(transcript: str) -> str:
    """Best single anchor in a transcript, or '' when nothing specific is found."""
    candidates = prominent_entities(transcript)
    return candidates[0].text if candidates else ''


def to_second_person(entity: str) -> str:
    """Re-voice a storyteller's possessive for the listener (my father -> your father)."""
    return re.sub(r'^(?:my|our)\b', 'your', entity, flags=re.IGNORECASE)
