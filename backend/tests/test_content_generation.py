"""
Tests for the content generation pipeline.

Providers are stubs; cache, breakers, validation and metrics are real.
"""

import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from astropal.domain.content import (
    Aspect,
    ContentTier,
    EphemerisContext,
    GenerationResult,
    MoonPosition,
    Perspective,
    PromptBundle,
    SunPosition,
    UserContext,
)
from astropal.infrastructure.ai.circuit_breaker import CircuitState
from astropal.infrastructure.exceptions import ProviderHTTPError, ProviderTimeout
from astropal.infrastructure.services.content_generation_service import (
    ContentGenerationService,
    content_cache_key,
)
from astropal.infrastructure.services.metrics_service import MetricsSink


SECTION_TEXT = (
    "The Moon in Pisces softens the edges of a busy week and invites quiet "
    "reflection before you begin."
)


def valid_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "subject": "A Softer Rhythm Today",
        "preheader": "The Moon in Pisces invites a slower pace",
        "shareableSnippet": "Slow down, breathe deeply, and let the day unfold gently.",
        "sections": [
            {
                "id": "daily-breath",
                "heading": "Today's Gentle Reminder",
                "html": f"<p>\n   {SECTION_TEXT}\n</p>\n\n   <p>Take three slow breaths.</p>",
                "text": SECTION_TEXT,
                "cta": {"label": "Read more", "url": "https://astropal.io/today"},
            }
        ],
    }
    payload.update(overrides)
    return payload


class StubProvider:
    """Provider whose answer (or failure) is fixed per test."""

    def __init__(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        tokens: int = 600,
        model: Optional[str] = None,
    ):
        self.name = name

        async def generate(prompt: PromptBundle) -> GenerationResult:
            if error is not None:
                raise error
            return GenerationResult(
                payload=payload or valid_payload(),
                tokens_used=tokens,
                model_used=model or prompt.generation.model,
                provider=name,
            )

        self.generate = AsyncMock(side_effect=generate)


class Ticker:
    """Clock that moves one second per reading, so metric keys never collide."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


@pytest.fixture
def generation_metrics(kv_store) -> MetricsSink:
    return MetricsSink(kv_store, clock=Ticker())


@pytest.fixture
def user() -> UserContext:
    return UserContext(
        user_id="user-1",
        perspective=Perspective.CALM,
        tier=ContentTier.FREE,
        focus_areas=["wellness", "spiritual"],
        sun_sign="Capricorn",
    )


def sky(date: str = "2025-01-15") -> EphemerisContext:
    return EphemerisContext(
        date=date,
        sun_position=SunPosition(sign="Capricorn", degree=25.3),
        moon_position=MoonPosition(sign="Pisces", degree=12.0, phase="waxing crescent"),
        major_aspects=[Aspect(planet1="Sun", planet2="Moon", aspect="sextile")],
        retrograde_active_planets=["Mercury"],
    )


@pytest.fixture
def ephemeris() -> EphemerisContext:
    return sky()


@pytest.fixture
def build_service(settings, kv_store, generation_metrics):
    def _build(primary, fallback, **kwargs) -> ContentGenerationService:
        service_settings = kwargs.pop("settings", settings)
        return ContentGenerationService(
            settings=service_settings,
            store=kv_store,
            metrics=generation_metrics,
            primary=primary,
            fallback=fallback,
            **kwargs,
        )

    return _build


@pytest.fixture
def generation_records(stored_records):
    async def _records():
        records = await stored_records("generation_metrics:")
        return sorted(records, key=lambda record: record["timestamp"])

    return _records


# =============================================================================
# Happy Path and Cache
# =============================================================================

class TestGeneration:

    async def test_primary_success(self, build_service, user, ephemeris, generation_records):
        grok = StubProvider("grok")
        gemini = StubProvider("gemini")
        service = build_service(grok, gemini)

        content = await service.generate_content(user, ephemeris)

        assert content.subject == "A Softer Rhythm Today"
        assert content.model_used == "grok-3-mini"
        assert content.token_count == 600
        assert content.perspective == Perspective.CALM
        assert content.tier == ContentTier.FREE
        gemini.generate.assert_not_awaited()

        records = await generation_records()
        assert len(records) == 1
        assert records[0]["provider"] == "grok"
        assert records[0]["cacheHit"] is False
        assert records[0]["tokensUsed"] == 600
        assert records[0]["costUsd"] == pytest.approx(600 * 0.0000005)

    async def test_prompt_uses_tier_template(self, build_service, user, ephemeris):
        grok = StubProvider("grok")
        service = build_service(grok, StubProvider("gemini"))

        await service.generate_content(user, ephemeris, news_context="Markets are calm")

        prompt = grok.generate.await_args.args[0]
        assert prompt.template_id == "calm-daily-free"
        assert "Moon in Pisces (waxing crescent)" in prompt.user_prompt

    async def test_html_is_minified(self, build_service, user, ephemeris):
        service = build_service(StubProvider("grok"), StubProvider("gemini"))

        content = await service.generate_content(user, ephemeris)

        html = content.sections[0].html
        assert "\n" not in html
        assert "</p><p>" in html
        assert "  " not in html

    async def test_result_is_cached(self, build_service, user, ephemeris, kv_store):
        service = build_service(StubProvider("grok"), StubProvider("gemini"))

        await service.generate_content(user, ephemeris)

        raw = await kv_store.get(content_cache_key("calm", "free", "2025-01-15"))
        cached = json.loads(raw)
        assert cached["subject"] == "A Softer Rhythm Today"
        assert cached["shareableSnippet"].startswith("Slow down")
        assert cached["modelUsed"] == "grok-3-mini"
        assert "\n" not in cached["sections"][0]["html"]

    async def test_cache_hit_skips_providers(
        self, build_service, user, ephemeris, generation_records
    ):
        grok = StubProvider("grok")
        service = build_service(grok, StubProvider("gemini"))

        first = await service.generate_content(user, ephemeris)
        second = await service.generate_content(user, ephemeris)

        assert second.subject == first.subject
        assert second.model_used == "grok-3-mini"
        assert grok.generate.await_count == 1

        records = await generation_records()
        assert [r["provider"] for r in records] == ["grok", "cache"]
        assert records[1]["cacheHit"] is True
        assert records[1]["costUsd"] == 0

    async def test_cache_is_per_tier_and_date(self, build_service, user, ephemeris):
        grok = StubProvider("grok")
        service = build_service(grok, StubProvider("gemini"))

        await service.generate_content(user, ephemeris)
        await service.generate_content(user.model_copy(update={"tier": ContentTier.PRO}), ephemeris)
        await service.generate_content(user, sky("2025-01-16"))

        assert grok.generate.await_count == 3

    async def test_cache_read_error_is_a_miss(self, build_service, user, ephemeris, kv_store):
        kv_store.get = AsyncMock(side_effect=ConnectionError("redis down"))
        grok = StubProvider("grok")
        service = build_service(grok, StubProvider("gemini"))

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "grok-3-mini"
        grok.generate.assert_awaited_once()

    async def test_unreadable_cache_entry_is_regenerated(
        self, build_service, user, ephemeris, kv_store
    ):
        await kv_store.put(content_cache_key("calm", "free", "2025-01-15"), "{not json")
        grok = StubProvider("grok")
        service = build_service(grok, StubProvider("gemini"))

        content = await service.generate_content(user, ephemeris)

        assert content.subject == "A Softer Rhythm Today"
        grok.generate.assert_awaited_once()


# =============================================================================
# Failover
# =============================================================================

class TestFailover:

    async def test_primary_failure_uses_fallback_provider(
        self, build_service, user, ephemeris, generation_records
    ):
        grok = StubProvider("grok", error=ProviderHTTPError("Grok API error", 500, provider="grok"))
        gemini = StubProvider("gemini", tokens=420, model="gemini-2.5-flash")
        service = build_service(grok, gemini)

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "gemini-2.5-flash"
        assert content.token_count == 420
        records = await generation_records()
        assert records[0]["provider"] == "gemini"
        assert "grok" in records[0]["fallbackReason"]
        assert records[0]["costUsd"] == pytest.approx(420 * 0.000002)

    async def test_both_providers_fail_serves_static_template(
        self, build_service, user, ephemeris, generation_records
    ):
        grok = StubProvider("grok", error=ProviderTimeout("timeout", provider="grok"))
        gemini = StubProvider("gemini", error=ProviderHTTPError("overloaded", 503, provider="gemini"))
        service = build_service(grok, gemini)

        content = await service.generate_content(user, ephemeris)

        assert content.subject == "Your Cosmic Moment"
        assert content.model_used == "fallback-content"
        assert content.token_count == 0
        records = await generation_records()
        assert records[0]["provider"] == "fallback"
        assert records[0]["costUsd"] == 0
        assert "gemini" in records[0]["fallbackReason"]

    @pytest.mark.parametrize(
        "perspective,subject",
        [
            (Perspective.KNOWLEDGE, "Today's Cosmic Learning"),
            (Perspective.SUCCESS, "Your Success Window"),
            (Perspective.EVIDENCE, "Today's Pattern Analysis"),
        ],
    )
    async def test_static_template_per_perspective(
        self, build_service, user, ephemeris, perspective, subject
    ):
        failing = ProviderTimeout("timeout")
        service = build_service(
            StubProvider("grok", error=failing), StubProvider("gemini", error=failing)
        )

        content = await service.generate_content(
            user.model_copy(update={"perspective": perspective}), ephemeris
        )

        assert content.subject == subject
        assert content.perspective == perspective

    async def test_static_template_is_cached_by_default(self, build_service, user, ephemeris):
        grok = StubProvider("grok", error=ProviderTimeout("timeout"))
        service = build_service(grok, StubProvider("gemini", error=ProviderTimeout("timeout")))

        await service.generate_content(user, ephemeris)
        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "fallback-content"
        assert grok.generate.await_count == 1

    async def test_static_template_not_cached_when_disabled(
        self, build_service, settings, user, ephemeris
    ):
        grok = StubProvider("grok", error=ProviderTimeout("timeout"))
        service = build_service(
            grok,
            StubProvider("gemini", error=ProviderTimeout("timeout")),
            settings=settings.model_copy(update={"cache_fallback_content": False}),
        )

        await service.generate_content(user, ephemeris)
        await service.generate_content(user, ephemeris)

        assert grok.generate.await_count == 2

    async def test_unexpected_error_still_returns_content(
        self, build_service, user, ephemeris
    ):
        composer = MagicMock()
        composer.build_prompt.side_effect = RuntimeError("template store unavailable")
        service = build_service(
            StubProvider("grok"), StubProvider("gemini"), composer=composer
        )

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "fallback-content"


# =============================================================================
# Validation
# =============================================================================

class TestValidation:

    async def test_schema_violation_goes_straight_to_static_template(
        self, build_service, user, ephemeris, generation_records
    ):
        grok = StubProvider("grok", payload=valid_payload(subject="Hi"))
        gemini = StubProvider("gemini")
        service = build_service(grok, gemini)

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "fallback-content"
        gemini.generate.assert_not_awaited()
        records = await generation_records()
        assert records[0]["provider"] == "fallback"
        assert "subject" in records[0]["fallbackReason"]

    async def test_profanity_rejected(self, build_service, user, ephemeris):
        text = "Let go of any hate you carry and let the Moon in Pisces wash the week clean."
        payload = valid_payload()
        payload["sections"][0]["text"] = text
        service = build_service(StubProvider("grok", payload=payload), StubProvider("gemini"))

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "fallback-content"

    async def test_missing_sections_rejected(self, build_service, user, ephemeris):
        payload = valid_payload(sections=[])
        service = build_service(StubProvider("grok", payload=payload), StubProvider("gemini"))

        content = await service.generate_content(user, ephemeris)

        assert content.model_used == "fallback-content"


# =============================================================================
# Circuit Breakers
# =============================================================================

class TestBreakers:

    async def test_primary_breaker_opens_after_repeated_failures(
        self, build_service, user
    ):
        grok = StubProvider("grok", error=ProviderHTTPError("Grok API error", 500))
        gemini = StubProvider("gemini", model="gemini-2.5-flash")
        service = build_service(grok, gemini)

        for day in range(10, 14):
            content = await service.generate_content(user, sky(f"2025-01-{day}"))
            assert content.model_used == "gemini-2.5-flash"

        assert service.primary_breaker.state == CircuitState.OPEN
        assert grok.generate.await_count == 3
        assert gemini.generate.await_count == 4

    async def test_open_breakers_serve_static_template(self, build_service, user):
        failing = ProviderTimeout("timeout")
        grok = StubProvider("grok", error=failing)
        gemini = StubProvider("gemini", error=failing)
        service = build_service(grok, gemini)

        for day in range(10, 15):
            content = await service.generate_content(user, sky(f"2025-01-{day}"))
            assert content.model_used == "fallback-content"

        assert service.primary_breaker.state == CircuitState.OPEN
        assert service.fallback_breaker.state == CircuitState.OPEN
        assert grok.generate.await_count == 3
        assert gemini.generate.await_count == 3
