# src/pipeline/schemas.py — v2
"""Stored record shapes for every pipeline node, plus the structured-output
models sent to the LLM.

Stored records are snake_case JSON produced by ``model_dump()``. LLM response
models for the classification and sectioning stages are built per book
because their enums come from the book's configured vocabularies.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, create_model

# === Node names ===

IMAGE_CLASSIFICATION = "image-classification"
TEXT_CLASSIFICATION = "text-classification"
PAGE_SECTIONING = "page-sectioning"
WEB_RENDERING = "web-rendering"
METADATA = "metadata"
RENDER_MANIFEST = "web-rendering-manifest"

PAGE_NODES: tuple[str, ...] = (
    IMAGE_CLASSIFICATION,
    TEXT_CLASSIFICATION,
    PAGE_SECTIONING,
    WEB_RENDERING,
)


# === Image classification ===


class ClassifiedImage(BaseModel):
    image_id: str
    path: str
    width: int
    height: int
    is_pruned: bool = False
    reason: str | None = None


class ImageClassification(BaseModel):
    images: list[ClassifiedImage] = Field(default_factory=list)


# === Text classification ===


class TextEntry(BaseModel):
    text_type: str
    text: str
    is_pruned: bool = False


class TextGroup(BaseModel):
    group_id: str
    group_type: str
    texts: list[TextEntry] = Field(default_factory=list)


class TextClassification(BaseModel):
    reasoning: str
    groups: list[TextGroup] = Field(default_factory=list)


# === Page sectioning ===


class Section(BaseModel):
    section_type: str
    part_ids: list[str]
    background_color: str = "#ffffff"
    text_color: str = "#000000"
    page_number: int | None = None
    is_pruned: bool = False


class SectioningGroup(BaseModel):
    """Group snapshot embedded at sectioning time (pruning resolved)."""

    group_type: str
    is_pruned: bool = False
    texts: list[TextEntry] = Field(default_factory=list)


class SectioningImage(BaseModel):
    is_pruned: bool = False


class PageSectioning(BaseModel):
    reasoning: str
    sections: list[Section] = Field(default_factory=list)
    text_classification_version: int | None = None
    image_classification_version: int | None = None
    groups: dict[str, SectioningGroup] = Field(default_factory=dict)
    images: dict[str, SectioningImage] = Field(default_factory=dict)


# === Web rendering ===


class SectionRendering(BaseModel):
    section_index: int
    section_type: str
    reasoning: str
    html: str


class RenderManifest(BaseModel):
    """Which sectioning version a page was last fully rendered from."""

    sectioning_version: int
    section_ids: list[str]


class WebRenderingResponse(BaseModel):
    """Structured output for section rendering and section edits."""

    reasoning: str
    content: str


class Annotation(BaseModel):
    """A user-drawn box on the rendered section, with an instruction."""

    x: float
    y: float
    width: float
    height: float
    text: str


# === Book metadata ===


class BookMetadata(BaseModel):
    title: str | None = None
    authors: list[str] = Field(default_factory=list)
    publisher: str | None = None
    language_code: str | None = None
    cover_page_number: int | None = None
    reasoning: str = ""


# === Dynamic LLM response models ===


def _literal(keys: list[str]) -> object:
    return Literal[tuple(keys)]  # type: ignore[valid-type]


def build_text_classification_model(
    text_types: list[str], group_types: list[str]
) -> type[BaseModel]:
    """Response model whose type fields are restricted to the vocabularies.

    Raises:
        ValueError: If either vocabulary is empty.
    """
    if not text_types:
        raise ValueError("No text types configured: cannot run text classification")
    if not group_types:
        raise ValueError("No text group types configured: cannot run text classification")

    text_model = create_model(
        "ClassifiedText",
        text_type=(_literal(text_types), ...),
        text=(str, ...),
    )
    group_model = create_model(
        "ClassifiedGroup",
        group_type=(_literal(group_types), ...),
        texts=(list[text_model], ...),  # type: ignore[valid-type]
    )
    return create_model(
        "TextClassificationResponse",
        reasoning=(str, ...),
        groups=(list[group_model], ...),  # type: ignore[valid-type]
    )


def build_page_sectioning_model(
    section_types: list[str], part_ids: list[str]
) -> type[BaseModel]:
    """Response model with enum section types and enum part ids.

    Raises:
        ValueError: If no section types or no part ids are given.
    """
    if not section_types:
        raise ValueError("No section types configured: cannot run page sectioning")
    if not part_ids:
        raise ValueError("No part ids to section")

    section_model = create_model(
        "SectionResponse",
        section_type=(_literal(section_types), ...),
        part_ids=(list[_literal(part_ids)], ...),  # type: ignore[misc]
        background_color=(str, ...),
        text_color=(str, ...),
        page_number=(int | None, None),
    )
    return create_model(
        "PageSectioningResponse",
        reasoning=(str, ...),
        sections=(list[section_model], ...),  # type: ignore[valid-type]
    )
