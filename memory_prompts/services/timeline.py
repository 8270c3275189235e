"""
Timeline gap detection: life phases the storyteller has not told stories about yet.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from ..models.core import Story, TimelineCoverage, TimelineGap
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LifePhase:
    name: str
    age_range: Tuple[int, int]
    priority: int
    prompts: Tuple[str, ...]


LIFE_PHASES = (
    LifePhase('Early Childhood', (0, 6), 3, (
        "What's your earliest memory? Where were you standing?",
        'What did the kitchen of your childhood home smell like?',
        'Who was your first best friend, and where did you play?',
    )),
    LifePhase('Childhood', (7, 12), 4, (
        'What games did you play on your street after supper?',
        'Which teacher noticed something in you first?',
        'Where did you hide when you wanted to be alone back then?',
    )),
    LifePhase('Teenage Years', (13, 19), 5, (
        'What was your first paying job, and who hired you?',
        'Where did you go on Friday nights as a teenager?',
        'Who got you into trouble in high school?',
    )),
    LifePhase('Early 20s', (20, 25), 5, (
        'Where were you living when you turned 21?',
        'What did your first apartment look like from the front door?',
        'Who were you closest to in your early 20s?',
    )),
    LifePhase('Late 20s', (26, 30), 4, (
        'What were you doing for work in your late 20s?',
        'Where were you living when you turned 30?',
        'What big decision did you make in your late 20s?',
    )),
    LifePhase('Early 30s', (31, 35), 4, (
        'What did an ordinary Tuesday look like in your early 30s?',
        'Where were you living during your early 30s?',
        'Who depended on you most in your early 30s?',
    )),
    LifePhase('Late 30s', (36, 40), 3, (
        'What was happening in your life as you approached 40?',
        'How did you spend your 40th birthday?',
        'What had you built by age 40?',
    )),
    LifePhase('40s', (41, 50), 3, (
        'What changed for you during your 40s?',
        'What did a typical workday look like in your 40s?',
        'Who did you lean on in your 40s?',
    )),
    LifePhase('50s', (51, 60), 3, (
        'What were you doing for work during your 50s?',
        'How did you mark turning 50?',
        'What surprised you about your 50s?',
    )),
    LifePhase('60s', (61, 70), 2, (
        'What kept you busy once the work slowed down?',
        'What hobby did you pick up in your 60s?',
        'Where did you travel in your 60s?',
    )),
    LifePhase('70s and beyond', (71, 100), 2, (
        'What tradition have you passed down, and to whom?',
        'What would you tell yourself at twenty?',
        'Which ordinary morning from recent years do you want remembered?',
    )),
)


def _dated_years(stories: Sequence[Story]) -> List[int]:
    return sorted(story.story_year for story in stories if story.story_year is not None)


def estimate_birth_year(stories: Sequence[Story]) -> Optional[int]:
    """Guess a birth year from the span of dated stories.

    A wide span suggests the oldest story is from childhood, a narrower one
    from adulthood. Returns None when no story is dated.
    """
    years = _dated_years(stories)
    if not years:
        return None

    oldest, newest = years[0], years[-1]
    span = newest - oldest
    if span > 40:
        return oldest - 10
    if span > 20:
        return oldest - 25
    return oldest - 30


def detect_gaps(stories: Sequence[Story],
                known_birth_year: Optional[int] = None,
                current_year: Optional[int] = None,
                rng: Optional[random.Random] = None) -> TimelineCoverage:
    """Find life phases without a dated story.

    Args:
        stories: The storyteller's stories
        known_birth_year: Birth year if known, estimated from the stories otherwise
        current_year: Year to measure the current age against (defaults to now)
        rng: Random source for picking each gap's suggested prompt

    Returns:
        TimelineCoverage with gaps sorted by priority, highest first
    """
    years = _dated_years(stories)
    oldest = years[0] if years else None
    newest = years[-1] if years else None

    birth_year = known_birth_year if known_birth_year is not None else estimate_birth_year(stories)
    if birth_year is None:
        logger.debug('Cannot detect timeline gaps without a birth year or dated stories')
        return TimelineCoverage(covered_phases=[],
                                gaps=[],
                                oldest_story_year=oldest,
                                newest_story_year=newest,
                                estimated_birth_year=None)

    rng = rng or random.Random()
    current_year = current_year or datetime.now().year
    current_age = current_year - birth_year

    covered = []
    gaps = []
    for phase in LIFE_PHASES:
        if phase.age_range[0] > current_age:
            continue

        start = birth_year + phase.age_range[0]
        end = min(birth_year + phase.age_range[1], current_year)
        if any(start <= year <= end for year in years):
            covered.append(phase.name)
            continue

        gaps.append(
            TimelineGap(phase=phase.name,
                        age_range=phase.age_range,
                        estimated_years=f'{start}-{end}',
                        suggested_prompt=rng.choice(phase.prompts),
                        priority=phase.priority))

    # sorted() is stable, so phases of equal priority keep chronological order
    gaps = sorted(gaps, key=lambda gap: gap.priority, reverse=True)

    logger.debug(f'Timeline analysis: {len(covered)} phases covered, {len(gaps)} gaps, '
                 f'birth year {birth_year}, age {current_age}')
    return TimelineCoverage(covered_phases=covered,
                            gaps=gaps,
                            oldest_story_year=oldest,
                            newest_story_year=newest,
                            estimated_birth_year=birth_year)


def build_gap_prompt(gap: TimelineGap,
                     people: Optional[Sequence[str]] = None,
                     places: Optional[Sequence[str]] = None) -> str:
    """Personalize a gap prompt with a person or place the storyteller already mentioned."""
    if places:
        place = places[0]
        if gap.phase == 'Early Childhood':
            return f'You mentioned {place}. What is your earliest memory of being there?'
        if gap.phase == 'Teenage Years':
            return f'Where did you go near {place} when you were a teenager?'

    if people:
        person = people[0]
        if gap.phase == 'Early Childhood':
            return f'What is your earliest memory of {person}?'
        if gap.phase == 'Childhood':
            return f'What was {person} like when you were in grade school?'
        if gap.phase == 'Teenage Years':
            return f'How did things between you and {person} change when you were a teenager?'

    return gap.suggested_prompt


def format_gaps_for_context(coverage: TimelineCoverage) -> str:
    if not coverage.gaps:
        return 'No major timeline gaps detected.'
    listed = ', '.join(f'{gap.phase} ({gap.estimated_years})' for gap in coverage.gaps[:3])
    return f'Missing stories from: {listed}'
