"""
Tests for newsletter schema checks, quality checks, the profanity filter
and HTML minification.
"""

import pytest

from astropal.infrastructure.ai.content_validator import (
    check_quality,
    filter_profane_content,
    minify_html,
    validate_content,
    validate_schema,
)
from astropal.infrastructure.exceptions import QualityCheckFailed, SchemaValidationFailed


TEXT = (
    "Mercury stations direct this afternoon, a good moment to revisit plans "
    "you set aside last week."
)


def payload(**overrides):
    data = {
        "subject": "Mercury Turns Direct",
        "preheader": "Revisit the plans you paused last week",
        "shareableSnippet": "When Mercury turns direct, stalled ideas start moving again.",
        "sections": [
            {"id": "s1", "heading": "Plans in Motion", "html": f"<p>{TEXT}</p>", "text": TEXT},
        ],
    }
    data.update(overrides)
    return data


class TestSchema:

    def test_valid_payload(self):
        newsletter = validate_schema(payload())

        assert newsletter.shareable_snippet.startswith("When Mercury")
        assert newsletter.sections[0].cta is None

    @pytest.mark.parametrize(
        "field,value",
        [
            ("subject", "Too short"),
            ("subject", "x" * 61),
            ("preheader", "Short preheader"),
            ("shareableSnippet", "Too short snippet"),
            ("sections", []),
        ],
    )
    def test_length_limits(self, field, value):
        with pytest.raises(SchemaValidationFailed) as exc_info:
            validate_schema(payload(**{field: value}))

        assert any(problem.startswith(field) for problem in exc_info.value.problems)

    def test_too_many_sections(self):
        section = payload()["sections"][0]

        with pytest.raises(SchemaValidationFailed):
            validate_schema(payload(sections=[section] * 6))

    def test_short_section_html(self):
        section = {"id": "s1", "heading": "Plans in Motion", "html": "<p>Hi</p>", "text": TEXT}

        with pytest.raises(SchemaValidationFailed) as exc_info:
            validate_schema(payload(sections=[section]))

        assert "sections.0.html" in exc_info.value.problems[0]

    def test_cta_needs_a_url(self):
        section = dict(payload()["sections"][0], cta={"label": "Read", "url": "not a url"})

        with pytest.raises(SchemaValidationFailed):
            validate_schema(payload(sections=[section]))

    def test_missing_fields_all_reported(self):
        with pytest.raises(SchemaValidationFailed) as exc_info:
            validate_schema({"sections": payload()["sections"]})

        assert len(exc_info.value.problems) == 3

    def test_non_object_payload(self):
        with pytest.raises(SchemaValidationFailed):
            validate_schema(["not", "an", "object"])


class TestQuality:

    def test_clean_content_passes(self):
        check_quality(validate_schema(payload()))

    def test_profanity_in_text_fails(self):
        text = "Forget the stupid arguments of yesterday and let Mercury carry you forward."
        section = {"id": "s1", "heading": "Plans in Motion", "html": f"<p>{TEXT}</p>", "text": text}

        with pytest.raises(QualityCheckFailed) as exc_info:
            validate_content(payload(sections=[section]))

        assert exc_info.value.problems == ["Content contains inappropriate language"]

    def test_schema_runs_before_quality(self):
        with pytest.raises(SchemaValidationFailed):
            validate_content(payload(subject="Short"))


class TestTextUtilities:

    def test_masks_whole_words_only(self):
        assert filter_profane_content("Hell is not in hello") == "**** is not in hello"

    def test_masks_phrases(self):
        assert filter_profane_content("No financial advice here") == "No " + "*" * 16 + " here"

    def test_clean_text_unchanged(self):
        assert filter_profane_content(TEXT) == TEXT

    def test_minify_html(self):
        html = "<div>\n  <p>  Hello   world </p>\n\n  <p>Again</p >\n</div>"

        assert minify_html(html) == "<div><p> Hello world </p><p>Again</p></div>"
