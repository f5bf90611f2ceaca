"""
Static Fallback Newsletters

One canned newsletter per perspective, served when no provider produced
valid content. Building one never fails.
"""

from astropal.domain.content import (
    FALLBACK_TEMPLATE_MODEL,
    ContentTier,
    NewsletterContent,
    NewsletterSection,
    Perspective,
)


# perspective -> (subject, preheader, snippet, section id, heading, text)
FALLBACK_TEMPLATES = {
    Perspective.CALM: (
        "Your Cosmic Moment",
        "Take a breath and center yourself today",
        "The universe invites you to move with intention and find peace in the present moment.",
        "daily-breath",
        "Today's Gentle Reminder",
        "The cosmic energy today encourages you to slow down and reconnect with your "
        "inner wisdom. Take three deep breaths and trust that you are exactly where "
        "you need to be.",
    ),
    Perspective.KNOWLEDGE: (
        "Today's Cosmic Learning",
        "Expand your understanding of celestial patterns",
        "Every day offers new opportunities to understand the fascinating connections "
        "between cosmic cycles and human experience.",
        "cosmic-insight",
        "Today's Learning Opportunity",
        "The planetary positions today create an excellent opportunity for observation "
        "and learning. Notice how cosmic rhythms might correlate with patterns in your "
        "daily experience.",
    ),
    Perspective.SUCCESS: (
        "Your Success Window",
        "Seize today's cosmic opportunities for growth",
        "Strategic action aligned with cosmic timing creates powerful momentum for "
        "achieving your goals.",
        "success-action",
        "Today's Strategic Advantage",
        "The cosmic configuration supports bold action and clear decision-making. Focus "
        "your energy on high-priority goals and trust your instincts for optimal timing.",
    ),
    Perspective.EVIDENCE: (
        "Today's Pattern Analysis",
        "Observe correlations in cosmic and personal cycles",
        "Careful observation of cosmic patterns provides valuable data for understanding "
        "cyclical influences in daily life.",
        "pattern-observation",
        "Today's Correlation Study",
        "Today's planetary positions offer an opportunity to observe potential "
        "correlations between cosmic cycles and personal experience. Track your energy, "
        "mood, and interactions for data collection.",
    ),
}


def build_fallback_content(perspective: Perspective, tier: ContentTier) -> NewsletterContent:
    subject, preheader, snippet, section_id, heading, text = FALLBACK_TEMPLATES.get(
        perspective, FALLBACK_TEMPLATES[Perspective.CALM]
    )
    return NewsletterContent(
        subject=subject,
        preheader=preheader,
        shareable_snippet=snippet,
        sections=[
            NewsletterSection(
                id=section_id,
                heading=heading,
                html=f"<p>{text}</p>",
                text=text,
            )
        ],
        model_used=FALLBACK_TEMPLATE_MODEL,
        token_count=0,
        perspective=perspective,
        tier=tier,
    )
