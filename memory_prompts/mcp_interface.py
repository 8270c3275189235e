"""
MCP Interface Layer using fastmcp for the prompt engine.

Run with `python -m memory_prompts.mcp_interface`.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from memory_prompts.models.core import Story
from memory_prompts.services.generation_worker import GenerationWorker
from memory_prompts.services.prompt_management import PromptManagementService
from memory_prompts.services.quality import ScoreSignals, get_quality_report, score_prompt
from memory_prompts.services.timeline import detect_gaps
from memory_prompts.utils.config import AppConfig, load_config
from memory_prompts.utils.llm_gateway import LLMGateway
from memory_prompts.utils.logging_config import get_logger, setup_logging
from memory_prompts.utils.opensearch_client import OpenSearchPromptStore
from memory_prompts.utils.prompt_store import PromptStoreError

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Memory Prompts')

_config: Optional[AppConfig] = None
_service: Optional[PromptManagementService] = None
_worker: Optional[GenerationWorker] = None


def _get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _get_service() -> PromptManagementService:
    global _service
    if _service is None:
        config = _get_config()
        _service = PromptManagementService(config, LLMGateway(config.gateway), OpenSearchPromptStore(config.opensearch))
    return _service


def _get_worker() -> GenerationWorker:
    global _worker
    if _worker is None:
        _worker = GenerationWorker(_get_service())
    return _worker


def _require_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')


def _to_story(raw: Dict[str, Any]) -> Story:
    return Story(id=str(raw.get('id', '')),
                 transcript=raw.get('transcript', ''),
                 lesson_learned=raw.get('lesson_learned'),
                 story_year=raw.get('story_year'),
                 title=raw.get('title'))


@mcp.tool()
def submit_story(user_id: str,
                 story_id: str,
                 transcript: str,
                 story_count: int,
                 story_year: Optional[int] = None,
                 lesson_learned: Optional[str] = None,
                 previous_stories: Optional[List[Dict[str, Any]]] = None,
                 birth_year: Optional[int] = None) -> Dict[str, Any]:
    """Queue prompt generation for a newly saved story.

    Args:
        user_id: Storyteller ID
        story_id: ID of the saved story
        transcript: Story transcript
        story_count: Storyteller's story count including this story
        story_year: Year the story took place
        lesson_learned: Lesson the storyteller attached to the story
        previous_stories: Earlier stories as dicts with transcript, story_year and lesson_learned
        birth_year: Known birth year

    Returns:
        Queue status; generation runs in the background
    """
    _require_user(user_id)
    story = Story(id=story_id, transcript=transcript, story_year=story_year, lesson_learned=lesson_learned)
    stories = [_to_story(raw) for raw in previous_stories or []] + [story]

    _get_worker().submit_story_saved(user_id, story, story_count, stories, birth_year)
    milestone = _get_service().is_milestone(story_count)
    logger.debug(f'MCP queued generation for story {story_id} of user {user_id} (milestone: {milestone})')
    return {'status': 'queued', 'milestone': milestone}


@mcp.tool()
def validate_prompt_text(prompt_text: str) -> Dict[str, Any]:
    """Run the quality gate on a prompt.

    Returns:
        is_quality, word_count, score and the list of issues
    """
    report = get_quality_report(prompt_text, _get_config().prompts.max_prompt_words)
    return {
        'is_quality': report['is_quality'],
        'word_count': report['word_count'],
        'score': report['score'],
        'issues': [{
            'type': issue.type,
            'reason': issue.reason
        } for issue in report['issues']],
    }


@mcp.tool()
def score_prompt_text(prompt_text: str,
                      uses_exact_phrase: bool = False,
                      references_multiple_stories: bool = False,
                      asks_about_absence: bool = False,
                      acknowledges_contradiction: bool = False) -> int:
    """Score a prompt from 0 to 100."""
    return score_prompt(
        prompt_text,
        ScoreSignals(uses_exact_phrase=uses_exact_phrase,
                     references_multiple_stories=references_multiple_stories,
                     asks_about_absence=asks_about_absence,
                     acknowledges_contradiction=acknowledges_contradiction),
        max_words=_get_config().prompts.max_prompt_words)


@mcp.tool()
def detect_timeline_gaps(story_years: List[int], birth_year: Optional[int] = None) -> Dict[str, Any]:
    """Find life phases without stories, given the years of the existing stories."""
    stories = [Story(id=str(index), transcript='', story_year=year) for index, year in enumerate(story_years)]
    coverage = detect_gaps(stories, known_birth_year=birth_year)
    return {
        'covered_phases': coverage.covered_phases,
        'estimated_birth_year': coverage.estimated_birth_year,
        'gaps': [{
            'phase': gap.phase,
            'estimated_years': gap.estimated_years,
            'suggested_prompt': gap.suggested_prompt,
            'priority': gap.priority
        } for gap in coverage.gaps],
    }


@mcp.tool()
def cleanup_prompts(user_id: str, dry_run: bool = True) -> Dict[str, Any]:
    """Retire a storyteller's active prompts that fail the quality gate."""
    _require_user(user_id)
    try:
        result = _get_service().cleanup_low_quality(user_id, dry_run=dry_run)
    except PromptStoreError as e:
        logger.error(f'Prompt store error in MCP cleanup: {e}')
        raise Exception(f'Prompt cleanup failed: {e}')
    return {'scanned': result.scanned, 'retired': result.retired, 'issues': result.issues, 'dry_run': result.dry_run}


@mcp.tool()
def get_next_prompt(user_id: str) -> Optional[Dict[str, Any]]:
    """Highest-scoring unlocked, unexpired prompt for a storyteller, or None."""
    _require_user(user_id)
    try:
        prompt = _get_service().next_prompt(user_id)
    except PromptStoreError as e:
        logger.error(f'Prompt store error in MCP next prompt: {e}')
        raise Exception(f'Next prompt lookup failed: {e}')
    return prompt.to_record(user_id) if prompt else None


@mcp.tool()
def skip_prompt(user_id: str, anchor_hash: str) -> Dict[str, Any]:
    """Pass on a prompt and get the next one.

    A prompt skipped three times is retired.

    Args:
        user_id: Storyteller ID
        anchor_hash: Anchor hash of the skipped prompt

    Returns:
        found, shown_count, retired and the next prompt (or None)
    """
    _require_user(user_id)
    service = _get_service()
    try:
        result = service.skip_prompt(user_id, anchor_hash)
        next_prompt = service.next_prompt(user_id, exclude=anchor_hash)
    except PromptStoreError as e:
        logger.error(f'Prompt store error in MCP skip: {e}')
        raise Exception(f'Prompt skip failed: {e}')
    return {
        'found': result is not None,
        'shown_count': result.shown_count if result else 0,
        'retired': result.retired if result else False,
        'next_prompt': next_prompt.to_record(user_id) if next_prompt else None,
    }


if __name__ == '__main__':
    config = _get_config()
    setup_logging(config)
    _get_service().store.create_indices_if_not_exist()
    if config.mcp.transport == 'stdio':
        mcp.run(transport='stdio')
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
