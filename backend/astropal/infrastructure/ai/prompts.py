"""
Prompt Composer for Astropal

Builds the provider-agnostic prompt for one newsletter: picks the template
for the subscriber's (perspective, tier), then injects the day's sky and
the subscriber's focus areas into its {{placeholders}}.

Template lookup:
1. {perspective}-daily-{tier}
2. {perspective}-daily-free
3. The generic daily template
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from astropal.domain.content import (
    Aspect,
    EphemerisContext,
    PromptBundle,
    PromptModelConfig,
    UserContext,
)


logger = logging.getLogger(__name__)


PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

FOCUS_AREA_KEYWORDS: Dict[str, List[str]] = {
    "relationships": ["connection", "communication", "partnership", "love", "harmony", "understanding"],
    "career": ["achievement", "leadership", "growth", "opportunity", "success", "progress"],
    "wellness": ["balance", "health", "energy", "vitality", "peace", "healing"],
    "social": ["community", "friendship", "networking", "collaboration", "influence", "connection"],
    "spiritual": ["wisdom", "intuition", "purpose", "meaning", "awakening", "transformation"],
    "evidence-based": ["research", "facts", "analysis", "patterns", "logic", "understanding"],
}

MAX_FOCUS_KEYWORDS = 6
MAX_ASPECTS = 3


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    system_prompt: str
    base_prompt: str
    model: str
    temperature: float
    max_tokens: int


# =============================================================================
# Templates
# =============================================================================

_COSMIC_CONTEXT = """Today's Cosmic Context:
- Date: {{date}}
- Sun in {{sunSign}} at {{sunDegree}}°
- Moon in {{moonSign}} ({{moonPhase}})
- Key Aspects: {{majorAspects}}
- Active Retrogrades: {{retrogradePlanets}}
- Primary Focus: {{primaryFocus}}"""

PROMPT_TEMPLATES: List[PromptTemplate] = [
    PromptTemplate(
        id="calm-daily-free",
        system_prompt="""You are Astropal, a gentle and nurturing astrological guide.
Help readers find peace and balance in their day.

- Keep a soothing, compassionate tone
- Favor breathing, grounding and present-moment practices
- Keep advice practical and immediately actionable

Never make definitive predictions, use alarming language, or give
medical or financial advice.""",
        base_prompt=_COSMIC_CONTEXT + """

The reader was born in {{birthLocation}} and values: {{focusKeywords}}

Write a calming daily message that acknowledges today's energy, offers one
simple grounding practice, and closes with an affirmation about inner peace.""",
        model="grok-3-mini",
        temperature=0.7,
        max_tokens=400,
    ),
    PromptTemplate(
        id="calm-daily-pro",
        system_prompt="""You are Astropal, a deeply wise and gentle astrological guide with
access to the full sky and current events.

- Weave several planetary influences into one peaceful reading
- Treat retrogrades and hard transits as invitations to reflect
- Always end with hope and gentle encouragement""",
        base_prompt=_COSMIC_CONTEXT + """
- Rising Sign: {{risingSign}}
- Secondary Focus: {{secondaryFocus}}
- Current Events Context: {{newsContext}}

Birth details: {{birthLocation}} ({{timezone}}). Personal values: {{focusKeywords}}

Write a profound yet peaceful reflection: an opening breath, the deeper
currents of today's sky, personal resonance for the reader's focus areas,
a mindful practice, and a peaceful perspective on current events.""",
        model="grok-3",
        temperature=0.8,
        max_tokens=850,
    ),
    PromptTemplate(
        id="knowledge-daily-basic",
        system_prompt="""You are Astropal, an intellectually curious astrological guide who
makes cosmic mechanics accessible.

- Explain the astronomy behind each interpretation
- Share the history and mythology of planetary associations
- Present astrology as a symbolic language, not a literal science""",
        base_prompt=_COSMIC_CONTEXT + """

Reader values: {{focusKeywords}}

Write an engaging daily lesson: the mechanics of today's key positions,
how earlier cultures read similar skies, and one observation the reader
can make for themselves today.""",
        model="grok-3-mini",
        temperature=0.6,
        max_tokens=550,
    ),
    PromptTemplate(
        id="success-daily-pro",
        system_prompt="""You are Astropal, a strategic astrological advisor for ambitious
readers.

- Identify favorable timing for decisions and action
- Frame challenges as growth opportunities
- Give concrete action steps aligned with today's sky""",
        base_prompt=_COSMIC_CONTEXT + """
- Secondary Focus: {{secondaryFocus}}
- Market Context: {{newsContext}}

Reader values: {{focusKeywords}}

Write a strategic briefing: today's cosmic advantages, the best window for
important actions, risks to navigate, and three specific next steps.""",
        model="grok-3-plus",
        temperature=0.7,
        max_tokens=750,
    ),
    PromptTemplate(
        id="evidence-daily-basic",
        system_prompt="""You are Astropal, a research-minded astrological analyst.

- Use probability language, never absolute statements
- Separate observed correlations from speculation
- Encourage personal data collection and verification""",
        base_prompt=_COSMIC_CONTEXT + """

Reader values: {{focusKeywords}}

Write an analytical report: what can be observed today, documented
patterns from similar configurations, what remains unproven, and what the
reader could track to test it.""",
        model="grok-3-mini",
        temperature=0.5,
        max_tokens=500,
    ),
]

GENERIC_TEMPLATE = PromptTemplate(
    id="generic-daily",
    system_prompt="""You are Astropal, a thoughtful astrological guide. Write a warm,
grounded daily newsletter. Never make definitive predictions or give
medical or financial advice.""",
    base_prompt=_COSMIC_CONTEXT + """

Reader values: {{focusKeywords}}

Write a short daily newsletter connecting today's sky to the reader's focus
areas, with one practical suggestion for the day.""",
    model="grok-3-mini",
    temperature=0.7,
    max_tokens=500,
)


# =============================================================================
# Composer
# =============================================================================

class PromptComposer:
    """Template lookup and variable injection."""

    def __init__(self, templates: Optional[List[PromptTemplate]] = None):
        templates = PROMPT_TEMPLATES if templates is None else templates
        self._templates = {template.id: template for template in templates}

    def find_template(self, tier: str, perspective: str, content_type: str = "daily") -> PromptTemplate:
        template_id = f"{perspective}-{content_type}-{tier}"
        template = self._templates.get(template_id)
        if template:
            return template

        fallback_id = f"{perspective}-{content_type}-free"
        fallback = self._templates.get(fallback_id)
        if fallback:
            logger.warning(f"Using fallback prompt template {fallback_id} for {template_id}")
            return fallback

        logger.warning(f"No prompt template for {template_id}, using {GENERIC_TEMPLATE.id}")
        return GENERIC_TEMPLATE

    def build_prompt(
        self,
        user: UserContext,
        ephemeris: EphemerisContext,
        news_context: Optional[str] = None,
    ) -> PromptBundle:
        """Compose the system and user prompts for one newsletter."""
        template = self.find_template(user.tier.value, user.perspective.value)

        variables = {
            "date": ephemeris.date,
            "sunSign": ephemeris.sun_position.sign,
            "sunDegree": f"{ephemeris.sun_position.degree:.1f}",
            "moonSign": ephemeris.moon_position.sign,
            "moonPhase": ephemeris.moon_position.phase,
            "primaryFocus": user.focus_areas[0] if user.focus_areas else "general guidance",
            "secondaryFocus": user.focus_areas[1] if len(user.focus_areas) > 1 else "",
            "majorAspects": format_aspects(ephemeris.major_aspects),
            "birthLocation": user.birth_location,
            "timezone": user.timezone,
            "focusKeywords": focus_keywords(user.focus_areas),
            "retrogradePlanets": ", ".join(ephemeris.retrograde_active_planets),
            "newsContext": news_context or "Current cosmic energy reflects in global events",
            "risingSign": user.rising_sign or "Unknown",
        }

        user_prompt = inject_variables(template.base_prompt, variables)
        logger.info(
            f"Prompt generated from {template.id} for "
            f"{user.perspective.value}/{user.tier.value}"
        )

        return PromptBundle(
            template_id=template.id,
            system_prompt=template.system_prompt,
            user_prompt=user_prompt,
            generation=PromptModelConfig(
                model=template.model,
                temperature=template.temperature,
                max_tokens=template.max_tokens,
            ),
        )


def focus_keywords(focus_areas: List[str]) -> str:
    keywords = [
        keyword
        for area in focus_areas
        for keyword in FOCUS_AREA_KEYWORDS.get(area, [])
    ]
    return ", ".join(keywords[:MAX_FOCUS_KEYWORDS])


def format_aspects(aspects: List[Aspect]) -> str:
    if not aspects:
        return "Gentle cosmic harmony"
    return ", ".join(
        f"{aspect.planet1}-{aspect.planet2} {aspect.aspect}"
        for aspect in aspects[:MAX_ASPECTS]
    )


def inject_variables(template: str, variables: Dict[str, str]) -> str:
    """Replace known {{name}} placeholders; unknown ones are left and logged."""
    def replace(match: re.Match) -> str:
        return variables.get(match.group(1), match.group(0))

    result = PLACEHOLDER_PATTERN.sub(replace, template)
    unresolved = PLACEHOLDER_PATTERN.findall(result)
    if unresolved:
        logger.warning(f"Unresolved placeholders in prompt: {unresolved}")
    return result
