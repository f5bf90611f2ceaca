"""
Newsletter Content Validation

Structural schema and quality checks applied to every provider payload,
plus the profanity filter and the HTML minifier used before caching.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from astropal.infrastructure.exceptions import QualityCheckFailed, SchemaValidationFailed


logger = logging.getLogger(__name__)


MIN_SECTION_TEXT = 50

PROFANITY_WORDS = [
    # Inappropriate for a professional newsletter
    "damn", "hell", "crap", "suck", "sucks", "stupid", "idiot",
    "hate", "kill", "murder", "die", "death", "suicide", "bomb",
    "terror", "violence", "drug", "drugs", "addiction", "abuse",
    # Political and controversial
    "politics", "political", "election", "vote", "democrat", "republican",
    "liberal", "conservative", "trump", "biden", "government", "conspiracy",
    # Financial advice
    "investment advice", "financial advice", "guarantee", "guaranteed returns",
    "get rich quick", "easy money", "risk free", "insider trading",
    # Medical advice
    "medical advice", "diagnose", "treatment", "cure", "miracle cure",
    "prescription", "medicine", "supplement", "therapy",
]

_PROFANITY_PATTERNS = [
    (word, re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE))
    for word in PROFANITY_WORDS
]


# =============================================================================
# Schema
# =============================================================================

class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CallToActionSchema(_PayloadModel):
    label: str = Field(min_length=1)
    url: HttpUrl


class NewsletterSectionSchema(_PayloadModel):
    id: str
    heading: str = Field(min_length=5, max_length=100)
    html: str = Field(min_length=50)
    text: str = Field(min_length=50)
    cta: Optional[CallToActionSchema] = None


class NewsletterPayloadSchema(_PayloadModel):
    """What a provider must return for one newsletter."""
    subject: str = Field(min_length=10, max_length=60)
    preheader: str = Field(min_length=20, max_length=100)
    shareable_snippet: str = Field(min_length=30, max_length=120)
    sections: List[NewsletterSectionSchema] = Field(min_length=1, max_length=5)


def _format_error(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def validate_schema(payload: Dict[str, Any]) -> NewsletterPayloadSchema:
    """
    Check a provider payload against the newsletter schema.

    Raises:
        SchemaValidationFailed listing every violation
    """
    if not isinstance(payload, dict):
        raise SchemaValidationFailed(["payload: expected an object"])
    try:
        return NewsletterPayloadSchema.model_validate(payload)
    except PydanticValidationError as e:
        raise SchemaValidationFailed([_format_error(error) for error in e.errors()])


def check_quality(newsletter: NewsletterPayloadSchema) -> None:
    """
    Content checks beyond the schema.

    Raises:
        QualityCheckFailed listing the failed checks
    """
    problems: List[str] = []

    text_content = " ".join(section.text for section in newsletter.sections)
    if filter_profane_content(text_content) != text_content:
        problems.append("Content contains inappropriate language")

    if any(len(section.text) < MIN_SECTION_TEXT for section in newsletter.sections):
        problems.append("Some sections are too short")

    if problems:
        raise QualityCheckFailed(problems)


def validate_content(payload: Dict[str, Any]) -> NewsletterPayloadSchema:
    """Schema first, then quality. Raises the first failing stage's error."""
    newsletter = validate_schema(payload)
    check_quality(newsletter)
    return newsletter


# =============================================================================
# Text Utilities
# =============================================================================

def filter_profane_content(text: str) -> str:
    """Mask whole-word matches from the blocklist with asterisks."""
    filtered = text
    for word, pattern in _PROFANITY_PATTERNS:
        filtered = pattern.sub("*" * len(word), filtered)

    if filtered != text:
        logger.info(
            f"Content filtered for inappropriate language "
            f"(length {len(text)} -> {len(filtered)})"
        )
    return filtered


def minify_html(html: str) -> str:
    """Collapse whitespace and drop it between tags and inside brackets."""
    html = re.sub(r"\s+", " ", html)
    html = re.sub(r">\s+<", "><", html)
    html = re.sub(r"\s+>", ">", html)
    html = re.sub(r"<\s+", "<", html)
    return html.strip()
