# tests/unit/pipeline/test_html_validation.py — v1
"""Tests for pipeline/html_validation.py — data-id structure checks."""

from __future__ import annotations

from bookweb.pipeline.html_validation import html_content_validator, validate_section_html

ALLOWED = ["pg001_gp001_t001", "pg001_gp001_t002", "pg001_im001"]


class TestValidateSectionHtml:
    def test_valid_fragment(self):
        html = (
            "<section><style>p { color: red; }</style>"
            '<h1 data-id="pg001_gp001_t001">Title</h1>'
            '<div><p data-id="pg001_gp001_t002">Body <em>text</em></p></div>'
            '<img data-id="pg001_im001" src="x.png"/><!-- note --></section>'
        )
        result = validate_section_html(html, ALLOWED)
        assert result.valid, result.errors

    def test_unknown_id(self):
        result = validate_section_html('<p data-id="nope">x</p>', ALLOWED)
        assert result.errors == ['Unknown data-id: "nope"']

    def test_duplicate_id(self):
        html = '<p data-id="pg001_im001">a</p><p data-id="pg001_im001">b</p>'
        assert validate_section_html(html, ALLOWED).errors == ['Duplicate data-id: "pg001_im001"']

    def test_loose_text(self):
        long_text = "Loose " * 20
        result = validate_section_html(f"<div>{long_text}</div>", ALLOWED)
        assert not result.valid
        assert result.errors[0].startswith("Text node outside any data-id element: ")
        assert result.errors[0] == (
            f'Text node outside any data-id element: "{long_text.strip()[:50]}"'
        )

    def test_whitespace_and_script_ignored(self):
        html = "<div>\n  <script>var a = 1;</script>\n</div>"
        assert validate_section_html(html, ALLOWED).valid


class TestHtmlContentValidator:
    def test_reads_content_field(self):
        validate = html_content_validator(ALLOWED)
        assert validate({"reasoning": "r", "content": '<p data-id="pg001_im001">x</p>'}).valid
        assert not validate({"reasoning": "r", "content": "<p>x</p>"}).valid
