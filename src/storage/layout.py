# src/storage/layout.py — v2
"""On-disk layout of a book scope.

    {books_root}/{label}/
        {label}.db          versioned node store + page/image tables
        config.yaml         optional per-book overrides
        images/             page renders and extracted images (PNG)
        .cache/             content-addressed LLM responses
"""

from __future__ import annotations

import re
from pathlib import Path

IMAGES_DIR = "images"
CACHE_DIR = ".cache"
BOOK_CONFIG_FILE = "config.yaml"

PAGE_IMAGE_SUFFIX = "_page"


def book_dir(books_root: Path, label: str) -> Path:
    """Return the root directory for a book."""
    return books_root / label


def db_path(books_root: Path, label: str) -> Path:
    return book_dir(books_root, label) / f"{label}.db"


def images_dir(books_root: Path, label: str) -> Path:
    return book_dir(books_root, label) / IMAGES_DIR


def cache_dir(books_root: Path, label: str) -> Path:
    """Cache subtree; may be wiped without touching node data."""
    return book_dir(books_root, label) / CACHE_DIR


def book_config_path(books_root: Path, label: str) -> Path:
    return book_dir(books_root, label) / BOOK_CONFIG_FILE


# --- Item ids ---

def page_id_for(page_number: int) -> str:
    """pg001, pg002, ..."""
    return f"pg{page_number:03d}"


def page_image_id(page_id: str) -> str:
    return f"{page_id}{PAGE_IMAGE_SUFFIX}"


def embedded_image_id(page_id: str, index: int) -> str:
    """1-based image index within a page: pg001_im001."""
    return f"{page_id}_im{index:03d}"


def group_id(page_id: str, index: int) -> str:
    """0-based group index: pg001_gp001 for the first group."""
    return f"{page_id}_gp{index + 1:03d}"


def text_id(group: str, index: int) -> str:
    """0-based text index within a group: pg001_gp001_t001."""
    return f"{group}_t{index + 1:03d}"


def section_id(page_id: str, index: int) -> str:
    """0-based section index: pg001_s001 for the first section."""
    return f"{page_id}_s{index + 1:03d}"


def image_relpath(image_id: str) -> str:
    """Path of an image relative to the book directory."""
    return f"{IMAGES_DIR}/{image_id}.png"


_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slug_from_path(path: str | Path) -> str:
    """Derive a book label from a file name.

    >>> slug_from_path("/tmp/My Book (2nd ed).pdf")
    'my-book-2nd-ed'
    """
    stem = Path(path).stem.lower()
    return _NON_ALNUM.sub("-", stem).strip("-")
