"""
Prompt Management Service: runs the generators for a saved story and keeps the
prompt store in shape.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..models.core import CharacterInsight, CleanupResult, MilestoneResult, PersistResult, Prompt, SkipResult, Story
from ..utils.config import AppConfig
from ..utils.llm_gateway import LLMGateway
from ..utils.logging_config import get_logger
from ..utils.prompt_store import DuplicatePromptError, PromptStore, PromptStoreError
from ..utils.timestamp_utils import utc_now
from .echo import EchoGenerationError, EchoGenerator
from .milestone_analysis import MilestoneAnalysisError, MilestoneAnalyzer
from .quality import get_quality_report
from .tier1 import Tier1Generator

logger = get_logger(__name__)

RETIRED_OUTCOME = 'retired'
SKIPPED_OUTCOME = 'skipped'
SKIP_RETIRE_THRESHOLD = 3


@dataclass
class MilestoneOutcome:
    """Milestone analysis result with the counts of what was persisted."""
    result: MilestoneResult
    persisted: PersistResult


class PromptManagementService:
    """Orchestrates echo, Tier-1 and Tier-3 generation and prompt persistence for storytellers."""

    def __init__(self,
                 config: AppConfig,
                 gateway: LLMGateway,
                 store: PromptStore,
                 rng: Optional[random.Random] = None):
        """Initialize the prompt management service.

        Args:
            config: Application configuration
            gateway: LLM gateway shared by the echo and milestone generators
            store: Prompt store
            rng: Random source for template selection
        """
        self.config = config
        self.store = store
        self.echo = EchoGenerator(gateway, config)
        self.tier1 = Tier1Generator(config.prompts, rng=rng)
        self.analyzer = MilestoneAnalyzer(gateway, config)

        logger.info('Initialized PromptManagementService')

    def is_milestone(self, story_count: int) -> bool:
        return story_count in self.config.prompts.milestones

    def persist_prompts(self, user_id: str, prompts: Sequence[Prompt]) -> PersistResult:
        """Insert prompts one at a time, skipping those whose anchor hash is already active.

        A prompt the store fails to write is logged and counted as failed; the
        remaining prompts are still attempted.
        """
        result = PersistResult()
        for prompt in prompts:
            try:
                self.store.insert_prompt(user_id, prompt)
            except DuplicatePromptError:
                logger.info(f'Skipping duplicate prompt: {prompt.prompt_text[:50]}...')
                result.skipped += 1
                continue
            except PromptStoreError as e:
                logger.error(f'Failed to store prompt for user {user_id}: {e}')
                result.failed += 1
                continue
            result.inserted += 1

        if result.inserted == 0 and result.skipped > 0:
            logger.info(f'All {result.skipped} prompts were duplicates for user {user_id}')
        elif result.inserted > 0:
            logger.info(f'Stored {result.inserted} new prompts for user {user_id}, skipped {result.skipped} duplicates')
        return result

    def store_character_insight(self, user_id: str, insight: CharacterInsight) -> None:
        self.store.upsert_character_insight(user_id, insight)
        logger.info(f'Stored character insights for user {user_id} at {insight.story_count} stories')

    def handle_story_saved(self,
                           user_id: str,
                           story: Story,
                           story_count: int,
                           stories: Sequence[Story],
                           birth_year: Optional[int] = None) -> PersistResult:
        """Generate and store prompts after a story is saved.

        Echo and Tier-1 run for every story and Tier-3 runs at milestones. A
        failing generator or store write is logged and contributes no prompts.

        Args:
            user_id: Storyteller id
            story: The story just saved
            story_count: Storyteller's story count including this story
            stories: All stories, used for milestone analysis
            birth_year: Known birth year, if any

        Returns:
            Combined PersistResult of every step
        """
        prompts: List[Prompt] = []

        try:
            echo = self.echo.generate_echo(story.transcript)
            if echo is not None:
                prompts.append(echo)
        except EchoGenerationError as e:
            logger.error(f'Echo generation failed for story {story.id}: {e}')

        prompts.extend(self.tier1.generate_tier1(story.transcript, story.story_year))
        total = self.persist_prompts(user_id, prompts)

        if self.is_milestone(story_count):
            try:
                milestone = self.handle_milestone(user_id, stories, story_count, birth_year)
                total.inserted += milestone.persisted.inserted
                total.skipped += milestone.persisted.skipped
                total.failed += milestone.persisted.failed
            except MilestoneAnalysisError as e:
                logger.error(f'Tier 3 analysis failed for user {user_id} at {story_count} stories: {e}')

        return total

    def handle_milestone(self,
                         user_id: str,
                         stories: Sequence[Story],
                         story_count: int,
                         birth_year: Optional[int] = None) -> MilestoneOutcome:
        """Run Tier-3 analysis, store its prompts and insights.

        With deep insights enabled and no insights in the analysis reply, a
        separate character analysis is requested; its failure is logged and
        does not undo the stored prompts.

        Raises:
            MilestoneAnalysisError: If the Tier-3 analysis itself fails
        """
        result = self.analyzer.analyze_milestone(stories, story_count, birth_year=birth_year)
        persisted = self.persist_prompts(user_id, result.prompts)

        if result.character_insights is None and self.config.flags.deep_insights:
            try:
                result.character_insights = self.analyzer.analyze_character(stories, story_count)
            except MilestoneAnalysisError as e:
                logger.error(f'Deep character analysis failed for user {user_id}: {e}')

        if result.character_insights is not None:
            try:
                self.store_character_insight(user_id, result.character_insights)
            except PromptStoreError as e:
                logger.error(f'Failed to store character insights for user {user_id}: {e}')

        return MilestoneOutcome(result=result, persisted=persisted)

    def cleanup_low_quality(self, user_id: str, dry_run: bool = False) -> CleanupResult:
        """Retire every active prompt that fails the quality validator.

        Args:
            user_id: Storyteller id
            dry_run: Report offending prompts without retiring them

        Returns:
            CleanupResult; `retired` stays 0 on a dry run
        """
        prompts = self.store.list_prompts(user_id)
        issues: Dict[str, List[str]] = {}
        retired = 0

        for prompt in prompts:
            report = get_quality_report(prompt.prompt_text, self.config.prompts.max_prompt_words)
            if report['is_quality']:
                continue
            issues[prompt.anchor_hash] = [issue.type for issue in report['issues']]
            logger.info(f'Low-quality prompt "{prompt.prompt_text}": {", ".join(issues[prompt.anchor_hash])}')
            if not dry_run and self.store.retire_prompt(user_id, prompt.anchor_hash, RETIRED_OUTCOME):
                retired += 1

        logger.info(f'Cleanup for user {user_id}: scanned {len(prompts)}, flagged {len(issues)}, retired {retired}'
                    f'{" (dry run)" if dry_run else ""}')
        return CleanupResult(scanned=len(prompts), retired=retired, issues=issues, dry_run=dry_run)

    def next_prompt(self,
                    user_id: str,
                    now: Optional[datetime] = None,
                    exclude: Optional[str] = None) -> Optional[Prompt]:
        """Highest-scoring unlocked, unexpired prompt other than `exclude`; newest wins a tie."""
        now = now or utc_now()
        available = [
            p for p in self.store.list_prompts(user_id)
            if not p.is_locked and not p.is_expired(now) and p.anchor_hash != exclude
        ]
        if not available:
            return None
        return max(available, key=lambda p: (p.score, p.created_at))

    def skip_prompt(self, user_id: str, anchor_hash: str) -> Optional[SkipResult]:
        """Record that the storyteller passed on a prompt.

        Every skip counts as a showing; at SKIP_RETIRE_THRESHOLD showings the
        prompt moves to history with outcome 'skipped'.

        Returns:
            SkipResult, or None if the prompt is not active
        """
        shown_count = self.store.record_shown(user_id, anchor_hash)
        if shown_count is None:
            logger.warning(f'Skip for unknown prompt {anchor_hash} of user {user_id}')
            return None

        retired = False
        if shown_count >= SKIP_RETIRE_THRESHOLD:
            retired = self.store.retire_prompt(user_id, anchor_hash, SKIPPED_OUTCOME)
            logger.info(f'Retired prompt {anchor_hash} of user {user_id} after {shown_count} skips')
        return SkipResult(shown_count=shown_count, retired=retired)
