"""
Background prompt generation so a story save never waits on an LLM.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Sequence

from ..models.core import PersistResult, Story
from ..utils.logging_config import get_logger
from .prompt_management import PromptManagementService

logger = get_logger(__name__)


class GenerationWorker:
    """Runs story-saved generation jobs on a thread pool."""

    def __init__(self, service: PromptManagementService, max_workers: int = 4):
        self.service = service
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='prompt-generation')
        logger.info(f'Initialized GenerationWorker with {max_workers} workers')

    def _run_story_saved(self, user_id: str, story: Story, story_count: int, stories: Sequence[Story],
                         birth_year: Optional[int]) -> PersistResult:
        try:
            return self.service.handle_story_saved(user_id, story, story_count, stories, birth_year)
        except Exception as e:
            logger.error(f'Prompt generation failed for story {story.id} of user {user_id}: {e}')
            return PersistResult()

    def submit_story_saved(self,
                           user_id: str,
                           story: Story,
                           story_count: int,
                           stories: Sequence[Story],
                           birth_year: Optional[int] = None) -> Future:
        """Queue generation for a saved story and return immediately.

        The returned future always resolves to a PersistResult; failures are
        logged by the job and resolve to an empty result.
        """
        logger.debug(f'Queued prompt generation for story {story.id} of user {user_id}')
        return self.executor.submit(self._run_story_saved, user_id, story, story_count, list(stories), birth_year)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
        logger.info('GenerationWorker shut down')
