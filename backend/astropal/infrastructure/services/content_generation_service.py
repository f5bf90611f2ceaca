"""
Content Generation Service

Produces one validated newsletter per (perspective, tier, date).

Pipeline:
1. Cache lookup (content:{perspective}:{tier}:{date})
2. Prompt composition
3. Primary provider (Grok) behind its circuit breaker
4. Fallback provider (Gemini) behind its own breaker
5. Schema and quality validation
6. Static per-perspective template when 3-5 produced nothing usable
7. Minify HTML and cache for 48 hours
8. Record a generation metric, whichever path served the request

generate_content never raises: the static template is the safety net.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from astropal.config.settings import Settings
from astropal.domain.content import (
    EphemerisContext,
    FALLBACK_TEMPLATE_MODEL,
    GenerationResult,
    NewsletterContent,
    PromptBundle,
    UserContext,
    estimate_cost,
)
from astropal.infrastructure.ai.circuit_breaker import CircuitBreaker
from astropal.infrastructure.ai.content_validator import minify_html, validate_content
from astropal.infrastructure.ai.fallback_content import build_fallback_content
from astropal.infrastructure.ai.prompts import PromptComposer
from astropal.infrastructure.ai.provider import ContentProvider
from astropal.infrastructure.exceptions import ContentGenerationError
from astropal.infrastructure.kv import KeyValueStore
from astropal.infrastructure.services.metrics_service import MetricsSink


logger = logging.getLogger(__name__)


CACHE_PROVIDER = "cache"
FALLBACK_PROVIDER = "fallback"


def content_cache_key(perspective: str, tier: str, date: str) -> str:
    return f"content:{perspective}:{tier}:{date}"


def minify_content(content: NewsletterContent) -> NewsletterContent:
    sections = [
        section.model_copy(update={"html": minify_html(section.html)})
        for section in content.sections
    ]
    return content.model_copy(update={"sections": sections})


class ContentGenerationService:
    """
    Newsletter generation with caching and provider failover.

    Args:
        settings: Application settings (cache TTL, fallback caching)
        store: Key/value store holding cached newsletters
        metrics: Generation metrics sink
        primary: Primary provider
        fallback: Fallback provider
        composer: Prompt composer
        primary_breaker: Breaker guarding the primary provider
        fallback_breaker: Breaker guarding the fallback provider
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        metrics: MetricsSink,
        primary: ContentProvider,
        fallback: ContentProvider,
        composer: Optional[PromptComposer] = None,
        primary_breaker: Optional[CircuitBreaker] = None,
        fallback_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._store = store
        self._metrics = metrics
        self._primary = primary
        self._fallback = fallback
        self._composer = composer or PromptComposer()
        self._primary_breaker = primary_breaker or CircuitBreaker(
            primary.name,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )
        self._fallback_breaker = fallback_breaker or CircuitBreaker(
            fallback.name,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )
        self._clock = clock

    @property
    def primary_breaker(self) -> CircuitBreaker:
        return self._primary_breaker

    @property
    def fallback_breaker(self) -> CircuitBreaker:
        return self._fallback_breaker

    # =========================================================================
    # Public API
    # =========================================================================

    async def generate_content(
        self,
        user: UserContext,
        ephemeris: EphemerisContext,
        news_context: Optional[str] = None,
    ) -> NewsletterContent:
        """
        Newsletter for the user's (perspective, tier) on the ephemeris date.

        Always returns content; provider and validation errors degrade to
        the fallback provider and then to the static template.
        """
        started = self._clock()
        perspective = user.perspective.value
        tier = user.tier.value
        key = content_cache_key(perspective, tier, ephemeris.date)

        cached = await self._read_cache(key)
        if cached is not None:
            logger.info(f"Returning cached content for {key}")
            await self._record(
                cached, CACHE_PROVIDER, 0, started, cache_hit=True,
            )
            return cached

        provider = FALLBACK_PROVIDER
        tokens_used = 0
        fallback_reason: Optional[str] = None
        try:
            prompt = self._composer.build_prompt(user, ephemeris, news_context)
            result, fallback_reason = await self._call_providers(prompt)
            if result is None:
                content = build_fallback_content(user.perspective, user.tier)
            else:
                content, provider, tokens_used = self._validated(result, user)
        except asyncio.CancelledError:
            raise
        except ContentGenerationError as e:
            logger.warning(f"Generated content for {key} rejected: {e.message}")
            fallback_reason = e.message
            content = build_fallback_content(user.perspective, user.tier)
        except Exception as e:
            logger.error(f"Content generation failed for {key}: {e}")
            fallback_reason = str(e)
            content = build_fallback_content(user.perspective, user.tier)

        if content.model_used == FALLBACK_TEMPLATE_MODEL:
            logger.info(f"Using fallback content for {key}")
            provider = FALLBACK_PROVIDER
            tokens_used = 0

        content = minify_content(content)
        if provider != FALLBACK_PROVIDER or self._settings.cache_fallback_content:
            await self._write_cache(key, content)

        await self._record(
            content, provider, tokens_used, started, fallback_reason=fallback_reason,
        )
        return content

    # =========================================================================
    # Pipeline Steps
    # =========================================================================

    async def _read_cache(self, key: str) -> Optional[NewsletterContent]:
        """A read error or an unreadable entry counts as a miss."""
        try:
            raw = await self._store.get(key)
        except Exception as e:
            logger.warning(f"Content cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return NewsletterContent.model_validate_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    async def _write_cache(self, key: str, content: NewsletterContent) -> None:
        try:
            await self._store.put(
                key, content.to_cache_json(), self._settings.content_cache_ttl_seconds
            )
        except Exception as e:
            logger.warning(f"Content cache write failed for {key}: {e}")

    async def _call_providers(
        self,
        prompt: PromptBundle,
    ) -> Tuple[Optional[GenerationResult], Optional[str]]:
        """
        Primary, then fallback.

        Returns:
            (result or None when both failed, reason the primary was skipped)
        """
        try:
            return await self._primary_breaker.call(lambda: self._primary.generate(prompt)), None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            primary_error = f"{self._primary.name}: {e}"
            logger.warning(f"Primary generation failed, trying fallback ({primary_error})")

        try:
            result = await self._fallback_breaker.call(lambda: self._fallback.generate(prompt))
            return result, primary_error
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Fallback generation failed ({self._fallback.name}: {e})")
            return None, f"{primary_error}; {self._fallback.name}: {e}"

    def _validated(
        self,
        result: GenerationResult,
        user: UserContext,
    ) -> Tuple[NewsletterContent, str, int]:
        """
        Raises:
            SchemaValidationFailed or QualityCheckFailed
        """
        newsletter = validate_content(result.payload)
        content = NewsletterContent.model_validate({
            **newsletter.model_dump(mode="json", by_alias=True, exclude_none=True),
            "modelUsed": result.model_used,
            "tokenCount": result.tokens_used,
            "perspective": user.perspective,
            "tier": user.tier,
        })
        return content, result.provider, result.tokens_used

    async def _record(
        self,
        content: NewsletterContent,
        provider: str,
        tokens_used: int,
        started: float,
        cache_hit: bool = False,
        fallback_reason: Optional[str] = None,
    ) -> None:
        await self._metrics.record_generation(
            perspective=content.perspective.value,
            tier=content.tier.value,
            model_used=content.model_used,
            provider=provider,
            tokens_used=tokens_used,
            cost_usd=estimate_cost(content.model_used, tokens_used),
            duration_ms=int((self._clock() - started) * 1000),
            cache_hit=cache_hit,
            fallback_reason=fallback_reason,
        )
