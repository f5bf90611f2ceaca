"""
Content Provider Interface

What the generation pipeline needs from an LLM provider, plus the JSON
helpers both providers share.
"""

import json
import logging
from typing import Any, Dict, Protocol

from astropal.domain.content import GenerationResult, PromptBundle
from astropal.infrastructure.exceptions import MalformedProviderResponse


logger = logging.getLogger(__name__)


class ContentProvider(Protocol):
    """An LLM that turns a prompt bundle into a raw newsletter payload."""

    name: str

    async def generate(self, prompt: PromptBundle) -> GenerationResult:
        """
        Raises:
            ProviderTimeout, ProviderHTTPError, MalformedProviderResponse
        """
        ...


def strip_code_fences(response_text: str) -> str:
    """Remove a surrounding ```json ... ``` block, if any."""
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    return text.strip()


def parse_json_object(response_text: str, provider: str, model: str) -> Dict[str, Any]:
    """
    Parse a provider's JSON answer.

    Raises:
        MalformedProviderResponse if the text is not a JSON object
    """
    try:
        data = json.loads(strip_code_fences(response_text))
    except json.JSONDecodeError as e:
        raise MalformedProviderResponse(
            f"{provider} returned invalid JSON: {e}",
            provider=provider,
            model=model,
            original_error=e,
        )
    if not isinstance(data, dict):
        raise MalformedProviderResponse(
            f"{provider} returned JSON that is not an object",
            provider=provider,
            model=model,
        )
    return data
