"""
Prompt persistence boundary and an in-process implementation.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import CharacterInsight, Prompt
from .logging_config import get_logger
from .timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)


class PromptStoreError(Exception):
    """Raised for storage failures other than uniqueness conflicts."""
    pass


class DuplicatePromptError(PromptStoreError):
    """Raised when an active prompt with the same (user_id, anchor_hash) already exists."""
    pass


class PromptStore(ABC):
    """Storage for active prompts, retired prompt history and character insights."""

    @abstractmethod
    def insert_prompt(self, user_id: str, prompt: Prompt) -> None:
        """Insert one active prompt; raises DuplicatePromptError on an existing anchor hash."""

    @abstractmethod
    def upsert_character_insight(self, user_id: str, insight: CharacterInsight) -> None:
        """Insert or overwrite the insight for (user_id, insight.story_count)."""

    @abstractmethod
    def list_prompts(self, user_id: str) -> List[Prompt]:
        """All active prompts of a user, expired ones included."""

    @abstractmethod
    def retire_prompt(self, user_id: str, anchor_hash: str, outcome: str) -> bool:
        """Move an active prompt to history with an outcome; False if it was not active."""

    @abstractmethod
    def record_shown(self, user_id: str, anchor_hash: str) -> Optional[int]:
        """Count one more showing of an active prompt; the new count, or None if it is not active."""

    @abstractmethod
    def get_character_insight(self, user_id: str, story_count: int) -> Optional[CharacterInsight]:
        pass

    @abstractmethod
    def health_check(self) -> bool:
        pass


def history_record(user_id: str, record: Dict[str, Any], outcome: str) -> Dict[str, Any]:
    """History entry for a retired prompt record."""
    entry = dict(record)
    entry['user_id'] = user_id
    entry['outcome'] = outcome
    entry['retired_at'] = to_iso(utc_now())
    return entry


class InMemoryPromptStore(PromptStore):
    """Thread-safe dict-backed store for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.history: List[Dict[str, Any]] = []
        self.insights: Dict[Tuple[str, int], Dict[str, Any]] = {}

    def insert_prompt(self, user_id: str, prompt: Prompt) -> None:
        key = (user_id, prompt.anchor_hash)
        with self._lock:
            if key in self.active:
                raise DuplicatePromptError(f'Prompt with anchor hash {prompt.anchor_hash} already exists')
            self.active[key] = prompt.to_record(user_id)

    def upsert_character_insight(self, user_id: str, insight: CharacterInsight) -> None:
        with self._lock:
            self.insights[(user_id, insight.story_count)] = insight.to_record(user_id)

    def list_prompts(self, user_id: str) -> List[Prompt]:
        with self._lock:
            records = [record for (owner, _), record in self.active.items() if owner == user_id]
        return [Prompt.from_record(record) for record in records]

    def retire_prompt(self, user_id: str, anchor_hash: str, outcome: str) -> bool:
        with self._lock:
            record = self.active.pop((user_id, anchor_hash), None)
            if record is None:
                return False
            self.history.append(history_record(user_id, record, outcome))
        logger.debug(f'Moved prompt {anchor_hash} to history ({outcome})')
        return True

    def record_shown(self, user_id: str, anchor_hash: str) -> Optional[int]:
        with self._lock:
            record = self.active.get((user_id, anchor_hash))
            if record is None:
                return None
            record['shown_count'] = record.get('shown_count', 0) + 1
            record['last_shown_at'] = to_iso(utc_now())
            return record['shown_count']

    def get_character_insight(self, user_id: str, story_count: int) -> Optional[CharacterInsight]:
        with self._lock:
            record = self.insights.get((user_id, story_count))
        return CharacterInsight.from_record(record) if record else None

    def health_check(self) -> bool:
        return True
