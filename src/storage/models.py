# src/storage/models.py — v2
"""Storage domain models: extracted units written by the extraction
collaborator and the page/image views handed to pipeline steps.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ImageSource = Literal["page", "extract", "crop"]
MetadataSource = Literal["stub", "llm"]


class ExtractedImage(BaseModel):
    """One PNG produced by extraction (page render, embedded image or crop)."""

    image_id: str
    page_id: str
    png: bytes
    width: int
    height: int
    hash: str = ""


class ExtractedPage(BaseModel):
    """A page as produced by the extraction collaborator."""

    page_id: str
    page_number: int
    text: str
    page_image: ExtractedImage
    images: list[ExtractedImage] = Field(default_factory=list)


class PdfMetadata(BaseModel):
    """Document info dictionary of the source PDF."""

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    author: str | None = None
    subject: str | None = None
    keywords: str | None = None
    creator: str | None = None
    producer: str | None = None
    creation_date: str | None = None
    modification_date: str | None = None
    format: str | None = None
    encryption: str | None = None


class PageRecord(BaseModel):
    """A stored page with its rendered image, as read by pipeline steps."""

    page_id: str
    page_number: int
    text: str
    image_base64: str


class PageImage(BaseModel):
    """An image available to a page's pipeline (base64 PNG)."""

    image_id: str
    image_base64: str
    width: int
    height: int


class ImageRow(BaseModel):
    """Row of the ``images`` table."""

    image_id: str
    page_id: str
    path: str
    hash: str
    width: int
    height: int
    source: ImageSource
