"""
Model and reasoning-effort selection per generation stage.
"""

from dataclasses import dataclass
from typing import Optional

from ..utils.config import AppConfig

STAGES = ('echo', 'tier1', 'tier3', 'deep')


@dataclass(frozen=True)
class ModelSelection:
    model: str
    reasoning_effort: Optional[str] = None


def effort_for_milestone(milestone: Optional[int]) -> str:
    if milestone is None or milestone < 10:
        return 'low'
    if milestone < 50:
        return 'medium'
    return 'high'


def select_model(stage: str, milestone: Optional[int], config: AppConfig) -> ModelSelection:
    """Pick the model (and reasoning effort, for reasoning models) for a stage.

    Args:
        stage: One of echo, tier1, tier3, deep
        milestone: Story count that triggered the call, for tier3 and deep
        config: Application config supplying model ids and feature flags

    Returns:
        ModelSelection
    """
    models = config.models
    if stage in ('echo', 'tier1'):
        return ModelSelection(model=models.fast_model_id)

    if stage == 'tier3':
        enabled = config.flags.tier3_reasoning_model
    elif stage == 'deep':
        enabled = config.flags.deep_insights
    else:
        raise ValueError(f'Unknown generation stage: {stage}')

    if enabled:
        return ModelSelection(model=models.reasoning_model_id, reasoning_effort=effort_for_milestone(milestone))
    return ModelSelection(model=models.standard_model_id)
