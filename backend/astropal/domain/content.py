"""
Content Domain Models

Pydantic models for newsletter generation: the user and sky context that
feed a prompt, the newsletter payload that providers return and the cache
stores, and the per-model cost table.

Payloads are serialized with camelCase keys (shareableSnippet, modelUsed...)
because the email renderer and the cached JSON share that convention.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Perspective(str, Enum):
    """Editorial voice chosen by the subscriber."""
    CALM = "calm"
    KNOWLEDGE = "knowledge"
    SUCCESS = "success"
    EVIDENCE = "evidence"


class ContentTier(str, Enum):
    """Newsletter edition. Trial users read the basic edition."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class CamelModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# =============================================================================
# Generation Inputs
# =============================================================================

class UserContext(CamelModel):
    """What the pipeline needs to know about a subscriber."""
    user_id: Optional[str] = None
    perspective: Perspective = Perspective.CALM
    tier: ContentTier = ContentTier.FREE
    focus_areas: list[str] = Field(default_factory=list)
    sun_sign: Optional[str] = None
    rising_sign: Optional[str] = None
    birth_location: str = "Unknown"
    timezone: str = "UTC"


class SunPosition(CamelModel):
    sign: str
    degree: float


class MoonPosition(CamelModel):
    sign: str
    degree: float
    phase: str


class Aspect(CamelModel):
    planet1: str
    planet2: str
    aspect: str
    orb: float = 0.0


class EphemerisContext(CamelModel):
    """One day's sky, as published by the ephemeris refresh job."""
    date: str = Field(description="ISO date, YYYY-MM-DD")
    sun_position: SunPosition
    moon_position: MoonPosition
    major_aspects: list[Aspect] = Field(default_factory=list)
    retrograde_active_planets: list[str] = Field(default_factory=list)


# =============================================================================
# Newsletter Payload
# =============================================================================

class CallToAction(CamelModel):
    label: str
    url: str


class NewsletterSection(CamelModel):
    id: str
    heading: str
    html: str
    text: str
    cta: Optional[CallToAction] = None


class NewsletterContent(CamelModel):
    """Newsletter body plus generation metadata."""
    subject: str
    preheader: str
    shareable_snippet: str
    sections: list[NewsletterSection]
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    model_used: str
    token_count: int = 0
    perspective: Perspective
    tier: ContentTier

    def to_cache_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# Provider Configuration
# =============================================================================

class ModelConfig(BaseModel):
    """Pricing and limits for one generation model."""
    name: str
    cost_per_token: float
    max_tokens: int
    timeout_seconds: float


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "grok-3-mini": ModelConfig(
        name="grok-3-mini", cost_per_token=0.0000005, max_tokens=1000, timeout_seconds=15
    ),
    "grok-3": ModelConfig(
        name="grok-3", cost_per_token=0.0000015, max_tokens=1500, timeout_seconds=20
    ),
    "grok-3-plus": ModelConfig(
        name="grok-3-plus", cost_per_token=0.000003, max_tokens=2000, timeout_seconds=25
    ),
    "gemini-2.5-flash": ModelConfig(
        name="gemini-2.5-flash", cost_per_token=0.000002, max_tokens=1200, timeout_seconds=20
    ),
}

DEFAULT_MODEL = "grok-3-mini"
FALLBACK_TEMPLATE_MODEL = "fallback-content"


def model_config_for(model: str) -> ModelConfig:
    """Config for a model, defaulting to the cheapest Grok tier."""
    return MODEL_CONFIGS.get(model, MODEL_CONFIGS[DEFAULT_MODEL])


def estimate_cost(model: str, tokens: int) -> float:
    """Estimated USD cost of a generation; the static template is free."""
    if model == FALLBACK_TEMPLATE_MODEL or tokens <= 0:
        return 0.0
    return tokens * model_config_for(model).cost_per_token


class PromptModelConfig(BaseModel):
    model: str
    temperature: float
    max_tokens: int


class PromptBundle(BaseModel):
    """Provider-agnostic prompt handed to a content provider."""
    template_id: str
    system_prompt: str
    user_prompt: str
    generation: PromptModelConfig


class GenerationResult(BaseModel):
    """Raw provider output before validation."""
    model_config = ConfigDict(protected_namespaces=())

    payload: dict
    tokens_used: int = 0
    model_used: str
    provider: str
