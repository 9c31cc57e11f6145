# src/pipeline/html_validation.py — v1
"""Structural checks on LLM-generated section HTML.

Every visible text must sit inside an element carrying a ``data-id`` that
names one of the section's text or image ids, and each id may appear once.
Text inside <style> and <script> is exempt.
"""

from __future__ import annotations

from typing import Any, Iterable

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from bookweb.llm.validated_caller import ValidationResult, Validator

_EXEMPT_TAGS = frozenset({"style", "script"})
_NON_TEXT = (Comment, Declaration, Doctype, ProcessingInstruction)
SNIPPET_LENGTH = 50


def validate_section_html(html: str, allowed_ids: Iterable[str]) -> ValidationResult:
    allowed = set(allowed_ids)
    errors: list[str] = []
    seen: set[str] = set()

    soup = BeautifulSoup(html, "html.parser")
    for node in soup.descendants:
        if isinstance(node, Tag):
            data_id = node.get("data-id")
            if data_id is None:
                continue
            if isinstance(data_id, list):
                data_id = " ".join(data_id)
            if data_id not in allowed:
                errors.append(f'Unknown data-id: "{data_id}"')
            elif data_id in seen:
                errors.append(f'Duplicate data-id: "{data_id}"')
            else:
                seen.add(data_id)
        elif isinstance(node, NavigableString) and not isinstance(node, _NON_TEXT):
            text = node.strip()
            if not text or _inside_exempt(node):
                continue
            if not _has_data_id_ancestor(node):
                errors.append(
                    f'Text node outside any data-id element: "{text[:SNIPPET_LENGTH]}"'
                )

    return ValidationResult(valid=not errors, errors=errors)


def html_content_validator(allowed_ids: Iterable[str]) -> Validator:
    """Validator over a ``{reasoning, content}`` response object."""
    allowed = list(allowed_ids)

    def validate(obj: dict[str, Any]) -> ValidationResult:
        return validate_section_html(str(obj.get("content", "")), allowed)

    return validate


def _inside_exempt(node: NavigableString) -> bool:
    return any(parent.name in _EXEMPT_TAGS for parent in node.parents)


def _has_data_id_ancestor(node: NavigableString) -> bool:
    return any(
        isinstance(parent, Tag) and parent.has_attr("data-id") for parent in node.parents
    )
