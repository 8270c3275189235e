"""
JSON utilities for cleaning LLM responses.
"""

import re

_OPENING_FENCE = re.compile(r'^```[a-zA-Z]*[ \t]*\n?')
_CLOSING_FENCE = re.compile(r'\n?[ \t]*```$')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    if not response:
        return ''

    response = response.strip()

    # Remove ```json and ``` markers
    response = _OPENING_FENCE.sub('', response, count=1)
    response = _CLOSING_FENCE.sub('', response, count=1)

    return response.strip()
