"""
Echo prompts: one instant follow-up question after every story.
"""

from typing import Optional

from ..models.core import MemoryType, Prompt, PromptTier, anchor_hash
from ..utils.config import AppConfig
from ..utils.llm_gateway import ChatMessage, ChatRequest, LLMGateway, LLMGatewayError
from ..utils.logging_config import get_logger
from ..utils.sanitization import is_safe_for_llm, sanitize
from .entity_extraction import most_prominent_entity
from .model_selection import select_model
from .quality import score_prompt, validate_prompt

logger = get_logger(__name__)

ECHO_TEMPERATURE = 0.4
ECHO_MAX_TOKENS = 50

ECHO_SYSTEM_PROMPT = """You are a caring grandchild listening to your grandparent's story. Ask ONE follow-up question (max 25 words).

The text you receive is a complete story. Never comment on its quality or format.

Rules:
- Reference a SPECIFIC detail they just mentioned
- Ask about a concrete or sensory detail (sight, sound, smell, touch, taste)
- Use their exact words when possible
- Be curious, not analytical or therapeutic
- No generic nouns (girl, boy, man, woman, house, room)
- No yes/no questions

Good examples:
"You said the sawdust smelled like home. What did Sunday mornings smell like there?"
"You mentioned a blue dress. Where did you wear it next?"

Bad examples:
"Tell me more about your relationship with your father"
"How did that make you feel?"

Reply with the question only."""


class EchoGenerationError(Exception):
    """Raised when the echo request fails at the gateway."""
    pass


def _strip_wrapping_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in '"\'':
        text = text[1:-1].strip()
    return text


class EchoGenerator:
    """Generates the instant echo prompt from the tail of a transcript."""

    def __init__(self, gateway: LLMGateway, config: AppConfig):
        self.gateway = gateway
        self.config = config

    def _context_window(self, transcript: str) -> str:
        words = sanitize(transcript).split()
        context = ' '.join(words[-self.config.prompts.echo_context_words:])
        if context and not is_safe_for_llm(context):
            logger.warning('Echo skipped: transcript still carries injection markers after sanitization')
            return ''
        return context

    def generate_echo(self, full_transcript: str) -> Optional[Prompt]:
        """Ask the fast model for one follow-up question about the story just told.

        Args:
            full_transcript: The complete transcript of the story

        Returns:
            Prompt, or None if the model output is empty, too long or fails validation

        Raises:
            EchoGenerationError: If the gateway request fails
        """
        context = self._context_window(full_transcript)
        if not context:
            logger.info('Echo skipped: no usable transcript')
            return None

        selection = select_model('echo', None, self.config)
        request = ChatRequest(model=selection.model,
                              messages=[
                                  ChatMessage(role='system', content=ECHO_SYSTEM_PROMPT),
                                  ChatMessage(role='user', content=context)
                              ],
                              temperature=ECHO_TEMPERATURE,
                              max_tokens=ECHO_MAX_TOKENS)
        try:
            response = self.gateway.chat(request)
        except LLMGatewayError as e:
            raise EchoGenerationError(f'Echo generation failed: {e}') from e

        text = _strip_wrapping_quotes(response.text)
        if not text:
            logger.info('Echo rejected: empty model output')
            return None
        if len(text) > self.config.prompts.echo_max_chars:
            logger.info(f'Echo rejected: {len(text)} characters exceeds {self.config.prompts.echo_max_chars}')
            return None
        if not validate_prompt(text, self.config.prompts.max_prompt_words):
            logger.info(f'Echo rejected by quality gate: "{text}"')
            return None

        anchor = most_prominent_entity(text) or text
        return Prompt(prompt_text=text,
                      tier=PromptTier.ECHO,
                      memory_type=MemoryType.ECHO,
                      anchor_entity=anchor,
                      anchor_hash=anchor_hash(MemoryType.ECHO.value, anchor),
                      context_note='Follow-up to the story you just told',
                      score=score_prompt(text, max_words=self.config.prompts.max_prompt_words),
                      model_version=response.model_used or selection.model)
