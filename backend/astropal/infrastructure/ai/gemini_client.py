"""
Gemini Client

Fallback content provider. Gemini gets the same prompt as Grok, adapted to
plain JSON-in-prose: the expected structure is spelled out in the prompt
and the answer is parsed after stripping markdown code fences.
"""

import asyncio
import logging
from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from astropal.domain.content import GenerationResult, PromptBundle, model_config_for
from astropal.infrastructure.ai.provider import parse_json_object
from astropal.infrastructure.exceptions import (
    ConfigurationError,
    MalformedProviderResponse,
    ProviderError,
    ProviderHTTPError,
    ProviderTimeout,
)


logger = logging.getLogger(__name__)


JSON_SYSTEM_SUFFIX = (
    "\n\nIMPORTANT: Respond with valid JSON containing the required newsletter structure."
)

JSON_STRUCTURE_INSTRUCTIONS = """

IMPORTANT: Return ONLY a valid JSON object with this exact structure:
{
  "subject": "Email subject line (10-60 characters)",
  "preheader": "Email preview text (20-100 characters)",
  "shareableSnippet": "Social media ready quote (30-120 characters)",
  "sections": [
    {
      "id": "section-id",
      "heading": "Section heading",
      "html": "<p>HTML formatted content</p>",
      "text": "Plain text version of content",
      "cta": {"label": "Call to action", "url": "https://astropal.io/..."}
    }
  ]
}"""


def adapt_prompt(prompt: PromptBundle) -> tuple[str, str]:
    """System and user prompts for a provider without function calling."""
    return (
        prompt.system_prompt + JSON_SYSTEM_SUFFIX,
        prompt.user_prompt + JSON_STRUCTURE_INSTRUCTIONS,
    )


class GeminiClient:
    """
    Google Gemini client via the google.genai SDK.

    The SDK call is blocking, so it runs in a worker thread.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        client: Optional[genai.Client] = None,
    ):
        self._api_key = api_key
        self._model = model
        self._client = client

    @property
    def client(self) -> genai.Client:
        """Get the Gemini client instance."""
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError(
                    "Missing GEMINI_API_KEY", missing_keys=["GEMINI_API_KEY"]
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def generate(self, prompt: PromptBundle) -> GenerationResult:
        """
        Generate one newsletter payload.

        Raises:
            ProviderTimeout, ProviderHTTPError, MalformedProviderResponse,
            or ProviderError for other SDK failures
        """
        model_config = model_config_for(self._model)
        system_prompt, user_prompt = adapt_prompt(prompt)
        logger.info(
            f"Gemini fallback generation started: model={self._model}, "
            f"original model={prompt.generation.model}"
        )

        client = self.client
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    lambda: client.models.generate_content(
                        model=self._model,
                        contents=user_prompt,
                        config=types.GenerateContentConfig(
                            system_instruction=system_prompt,
                            temperature=prompt.generation.temperature,
                            max_output_tokens=model_config.max_tokens,
                            response_mime_type="application/json",
                        ),
                    )
                ),
                timeout=model_config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(
                f"Gemini did not answer within {model_config.timeout_seconds}s",
                provider=self.name,
                model=self._model,
                original_error=e,
            )
        except genai_errors.APIError as e:
            raise ProviderHTTPError(
                f"Gemini API error: {e.code} {e.message}",
                status_code=e.code or 0,
                provider=self.name,
                model=self._model,
                original_error=e,
            )
        except Exception as e:
            raise ProviderError(
                f"Gemini request failed: {e}",
                provider=self.name,
                model=self._model,
                original_error=e,
            )

        if not response.text:
            raise MalformedProviderResponse(
                "Empty response from Gemini", provider=self.name, model=self._model
            )

        payload = parse_json_object(response.text, self.name, self._model)
        usage = response.usage_metadata
        tokens_used = int((usage.total_token_count if usage else 0) or 0)

        logger.info(f"Gemini fallback generation completed: tokens={tokens_used}")
        return GenerationResult(
            payload=payload,
            tokens_used=tokens_used,
            model_used=self._model,
            provider=self.name,
        )
