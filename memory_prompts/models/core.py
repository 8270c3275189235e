"""
Core data models for the memory prompt engine.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.sanitization import normalize_entity
from ..utils.timestamp_utils import to_iso, utc_now


class MemoryType(Enum):
    """Retrieval strategy a prompt uses to elicit a memory."""
    PERSON_EXPANSION = 'person_expansion'
    PLACE_MEMORY = 'place_memory'
    TIMELINE_GAP = 'timeline_gap'
    EVENT_ADJACENT = 'event_adjacent'
    OBJECT_STORY = 'object_story'
    RELATIONSHIP_MOMENT = 'relationship_moment'
    ECHO = 'echo'


class PromptTier(Enum):
    TIER_1 = 1
    TIER_3 = 3
    ECHO = 'echo'


@dataclass(frozen=True)
class Story:
    """A recorded narrative, owned by the caller."""
    id: str
    transcript: str
    lesson_learned: Optional[str] = None
    story_year: Optional[int] = None
    created_at: Optional[datetime] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class CandidateEntity:
    """Represents an anchor candidate extracted from a story."""
    text: str
    kind: str  # person, place, object or phrase


def anchor_hash(memory_type: str, anchor_entity: str, anchor_year: Optional[int] = None) -> str:
    """Stable dedup hash of (memory type, normalized anchor, year)."""
    year = str(anchor_year) if anchor_year else 'NA'
    key = f'{memory_type}|{normalize_entity(anchor_entity)}|{year}'
    return hashlib.sha1(key.encode('utf-8')).hexdigest()


@dataclass
class Prompt:
    """A follow-up question anchored to a specific detail of a storyteller's life.

    `expires_at` is None for echo prompts; expiry is always derived at read
    time through `is_expired`, never stored as a state.
    """
    prompt_text: str
    tier: PromptTier
    memory_type: MemoryType
    anchor_entity: str
    anchor_hash: str
    context_note: str
    score: int
    model_version: str
    is_locked: bool = False
    expires_at: Optional[datetime] = None
    shown_count: int = 0
    anchor_year: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def word_count(self) -> int:
        return len(self.prompt_text.split())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) > self.expires_at

    def to_record(self, user_id: str) -> Dict[str, Any]:
        """Flat record for the storage layer."""
        return {
            'user_id': user_id,
            'prompt_text': self.prompt_text,
            'tier': self.tier.value,
            'memory_type': self.memory_type.value,
            'anchor_entity': self.anchor_entity,
            'anchor_year': self.anchor_year,
            'anchor_hash': self.anchor_hash,
            'context_note': self.context_note,
            'prompt_score': self.score,
            'is_locked': self.is_locked,
            'expires_at': to_iso(self.expires_at),
            'shown_count': self.shown_count,
            'model_version': self.model_version,
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Prompt':
        expires_at = record.get('expires_at')
        created_at = record.get('created_at')
        return cls(prompt_text=record['prompt_text'],
                   tier=PromptTier(record['tier']),
                   memory_type=MemoryType(record['memory_type']),
                   anchor_entity=record.get('anchor_entity', ''),
                   anchor_hash=record['anchor_hash'],
                   context_note=record.get('context_note', ''),
                   score=int(record.get('prompt_score', 0)),
                   model_version=record.get('model_version', ''),
                   is_locked=bool(record.get('is_locked', False)),
                   expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
                   shown_count=int(record.get('shown_count', 0)),
                   anchor_year=record.get('anchor_year'),
                   created_at=datetime.fromisoformat(created_at) if created_at else utc_now())


@dataclass
class Trait:
    trait: str
    confidence: float
    evidence: List[str] = field(default_factory=list)


@dataclass
class Contradiction:
    stated: str
    lived: str
    tension: str


@dataclass
class CharacterInsight:
    """Character analysis for one (user, story count) pair; re-analysis overwrites it."""
    traits: List[Trait]
    invisible_rules: List[str]
    contradictions: List[Contradiction]
    core_lessons: List[str]
    story_count: int
    analyzed_at: datetime = field(default_factory=utc_now)

    def to_record(self, user_id: str) -> Dict[str, Any]:
        return {
            'user_id': user_id,
            'story_count': self.story_count,
            'traits': [{'trait': t.trait, 'confidence': t.confidence, 'evidence': list(t.evidence)} for t in self.traits],
            'invisible_rules': list(self.invisible_rules),
            'contradictions': [{'stated': c.stated, 'lived': c.lived, 'tension': c.tension} for c in self.contradictions],
            'core_lessons': list(self.core_lessons),
            'analyzed_at': to_iso(self.analyzed_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'CharacterInsight':
        analyzed_at = record.get('analyzed_at')
        return cls(traits=[Trait(**t) for t in record.get('traits', [])],
                   invisible_rules=list(record.get('invisible_rules', [])),
                   contradictions=[Contradiction(**c) for c in record.get('contradictions', [])],
                   core_lessons=list(record.get('core_lessons', [])),
                   story_count=int(record['story_count']),
                   analyzed_at=datetime.fromisoformat(analyzed_at) if analyzed_at else utc_now())


@dataclass
class TimelineGap:
    """A life phase with no recorded story."""
    phase: str
    age_range: Tuple[int, int]
    estimated_years: str
    suggested_prompt: str
    priority: int  # 1-5, higher = more likely to hold unrecorded stories


@dataclass
class TimelineCoverage:
    covered_phases: List[str]
    gaps: List[TimelineGap]
    oldest_story_year: Optional[int]
    newest_story_year: Optional[int]
    estimated_birth_year: Optional[int]


@dataclass
class MilestoneResult:
    prompts: List[Prompt]
    character_insights: Optional[CharacterInsight] = None
    model_used: Optional[str] = None


@dataclass
class PersistResult:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class CleanupResult:
    scanned: int
    retired: int
    issues: Dict[str, List[str]]  # anchor_hash -> issue types
    dry_run: bool


@dataclass
class SkipResult:
    shown_count: int
    retired: bool
