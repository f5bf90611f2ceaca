"""
Grok Client

Primary content provider: xAI chat completions with a forced function
call, so the newsletter arrives as structured tool arguments rather than
free text.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

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


NEWSLETTER_FUNCTION = "create_newsletter_content"

NEWSLETTER_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": NEWSLETTER_FUNCTION,
        "description": "Generate structured newsletter content with proper sections",
        "parameters": {
            "type": "object",
            "properties": {
                "subject": {
                    "type": "string",
                    "description": "Email subject line (10-60 characters)",
                },
                "preheader": {
                    "type": "string",
                    "description": "Email preview text (20-100 characters)",
                },
                "shareableSnippet": {
                    "type": "string",
                    "description": "Social media ready quote (30-120 characters)",
                },
                "sections": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "heading": {"type": "string"},
                            "html": {"type": "string"},
                            "text": {"type": "string"},
                            "cta": {
                                "type": "object",
                                "properties": {
                                    "label": {"type": "string"},
                                    "url": {"type": "string"},
                                },
                            },
                        },
                        "required": ["id", "heading", "html", "text"],
                    },
                },
            },
            "required": ["subject", "preheader", "shareableSnippet", "sections"],
        },
    },
}


class GrokClient:
    """
    xAI Grok chat-completions client.

    Args:
        api_key: xAI API key
        base_url: API root, e.g. https://api.x.ai/v1
        transport: Optional httpx transport, used by tests
    """

    name = "grok"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.x.ai/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    def _build_request(self, prompt: PromptBundle) -> Dict[str, Any]:
        return {
            "model": prompt.generation.model,
            "messages": [
                {"role": "system", "content": prompt.system_prompt},
                {"role": "user", "content": prompt.user_prompt},
            ],
            "temperature": prompt.generation.temperature,
            "max_tokens": prompt.generation.max_tokens,
            "tools": [NEWSLETTER_TOOL],
            "tool_choice": {"type": "function", "function": {"name": NEWSLETTER_FUNCTION}},
        }

    async def _post(self, body: Dict[str, Any], timeout: float) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.post(
                f"{self._base_url}/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )

    async def generate(self, prompt: PromptBundle) -> GenerationResult:
        """
        Generate one newsletter payload.

        Raises:
            ConfigurationError if no API key is configured
            ProviderTimeout if the model's timeout elapses
            ProviderHTTPError on a non-2xx answer
            MalformedProviderResponse if the tool call is missing
        """
        if not self._api_key:
            raise ConfigurationError("Missing GROK_API_KEY", missing_keys=["GROK_API_KEY"])

        model = prompt.generation.model
        timeout = model_config_for(model).timeout_seconds
        started = time.monotonic()
        logger.info(f"Grok generation started: model={model}, template={prompt.template_id}")

        try:
            response = await asyncio.wait_for(
                self._post(self._build_request(prompt), timeout), timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProviderTimeout(
                f"Grok did not answer within {timeout}s",
                provider=self.name,
                model=model,
                original_error=e,
            )
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Grok request failed: {e}",
                provider=self.name,
                model=model,
                original_error=e,
            )

        if not response.is_success:
            raise ProviderHTTPError(
                f"Grok API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                provider=self.name,
                model=model,
            )

        try:
            data = response.json()
            arguments = data["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedProviderResponse(
                "Invalid Grok API response structure",
                provider=self.name,
                model=model,
                original_error=e,
            )

        payload = arguments if isinstance(arguments, dict) else parse_json_object(
            arguments, self.name, model
        )
        tokens_used = int((data.get("usage") or {}).get("total_tokens") or 0)

        logger.info(
            f"Grok generation completed: model={model}, tokens={tokens_used}, "
            f"duration={int((time.monotonic() - started) * 1000)}ms"
        )
        return GenerationResult(
            payload=payload,
            tokens_used=tokens_used,
            model_used=model,
            provider=self.name,
        )
