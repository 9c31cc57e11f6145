# src/storage/book_storage.py — v2
"""Storage adapter for one book scope.

Wraps the book's SQLite tables, its image directory and the versioned node
store behind typed read/write operations. Extraction writes through
put_pdf_metadata / put_extracted_page / put_image only; pipeline steps read
pages and images and write versioned node records.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from bookweb.pipeline import schemas
from bookweb.storage import layout
from bookweb.storage.db import BookDatabase
from bookweb.storage.models import (
    ExtractedImage,
    ExtractedPage,
    ImageRow,
    ImageSource,
    MetadataSource,
    PageImage,
    PageRecord,
    PdfMetadata,
)
from bookweb.storage.node_store import NodeStore, VersionedRecord

logger = logging.getLogger(__name__)


class PageNotFound(LookupError):
    """Raised when a page id has no stored page."""

    def __init__(self, label: str, page_id: str):
        self.label = label
        self.page_id = page_id
        super().__init__(f"Page {page_id} not found in book {label!r}")


class BookStorage:
    """Typed storage operations for a single book."""

    def __init__(self, label: str, database: BookDatabase, nodes: NodeStore | None = None) -> None:
        self._label = label
        self._db = database
        self._nodes = nodes or NodeStore(database)
        self._book_dir = layout.book_dir(database.books_root, label)

    @property
    def label(self) -> str:
        return self._label

    @property
    def book_dir(self) -> Path:
        return self._book_dir

    @property
    def nodes(self) -> NodeStore:
        return self._nodes

    def ensure_active(self) -> None:
        """Raise ScopeDeleted once the book has been deleted."""
        self._db.ensure_active(self._label)

    def _conn(self):
        return self._db.connect(self._label)

    # --- Extraction writes ---

    async def put_pdf_metadata(self, meta: PdfMetadata) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO pdf_metadata (id, data) VALUES (1, ?)",
                (meta.model_dump_json(exclude_none=True),),
            )

    async def put_extracted_page(self, page: ExtractedPage) -> None:
        """Write page render, embedded images and page text."""
        await self.put_image(page.page_image, "page")
        for image in page.images:
            await self.put_image(image, "extract")

        conn = self._conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO pages (page_id, page_number, text) VALUES (?, ?, ?)",
                (page.page_id, page.page_number, page.text),
            )
        logger.debug(
            "Stored page %s (%d images) in %s", page.page_id, len(page.images), self._label
        )

    async def put_image(self, image: ExtractedImage, source: ImageSource) -> None:
        """Write a PNG under images/ and record it (first write wins in the table)."""
        path = self._book_dir / layout.image_relpath(image.image_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image.png)

        conn = self._conn()
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO images "
                "(image_id, page_id, path, hash, width, height, source) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    image.image_id,
                    image.page_id,
                    layout.image_relpath(image.image_id),
                    image.hash,
                    image.width,
                    image.height,
                    source,
                ),
            )

    # --- Book metadata ---

    async def put_book_metadata(self, data: schemas.BookMetadata, source: MetadataSource) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO book_metadata (source, data) VALUES (?, ?)",
                (source, data.model_dump_json()),
            )

    async def get_book_metadata(self) -> schemas.BookMetadata | None:
        """Return LLM metadata when present, else the stub, else None."""
        row = self._conn().execute(
            "SELECT data FROM book_metadata ORDER BY CASE source WHEN 'llm' THEN 0 ELSE 1 END LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return schemas.BookMetadata.model_validate_json(row["data"])

    async def has_llm_metadata(self) -> bool:
        row = self._conn().execute(
            "SELECT 1 FROM book_metadata WHERE source = 'llm'"
        ).fetchone()
        return row is not None

    async def get_pdf_metadata(self) -> PdfMetadata | None:
        row = self._conn().execute("SELECT data FROM pdf_metadata WHERE id = 1").fetchone()
        if row is None:
            return None
        return PdfMetadata.model_validate_json(row["data"])

    async def get_book_language(self) -> str:
        metadata = await self.get_book_metadata()
        if metadata is None or not metadata.language_code:
            return "en"
        return metadata.language_code

    # --- Page reads ---

    async def list_page_ids(self) -> list[str]:
        rows = self._conn().execute("SELECT page_id FROM pages ORDER BY page_id").fetchall()
        return [r["page_id"] for r in rows]

    async def get_page(self, page_id: str) -> PageRecord | None:
        """Return a page with its base64 render.

        Raises:
            FileNotFoundError: If the page row exists but its render is missing.
        """
        row = self._conn().execute(
            "SELECT page_id, page_number, text FROM pages WHERE page_id = ?", (page_id,)
        ).fetchone()
        if row is None:
            return None

        image_path = self._book_dir / layout.image_relpath(layout.page_image_id(page_id))
        if not image_path.exists():
            raise FileNotFoundError(f"Page image not found: {image_path}")

        return PageRecord(
            page_id=row["page_id"],
            page_number=row["page_number"],
            text=row["text"],
            image_base64=base64.b64encode(image_path.read_bytes()).decode("ascii"),
        )

    async def require_page(self, page_id: str) -> PageRecord:
        page = await self.get_page(page_id)
        if page is None:
            raise PageNotFound(self._label, page_id)
        return page

    async def get_first_pages(self, count: int) -> list[PageRecord]:
        pages: list[PageRecord] = []
        for page_id in (await self.list_page_ids())[:count]:
            page = await self.get_page(page_id)
            if page is not None:
                pages.append(page)
        return pages

    async def get_extracted_images(self, page_id: str) -> list[ImageRow]:
        rows = self._conn().execute(
            "SELECT image_id, page_id, path, hash, width, height, source FROM images "
            "WHERE page_id = ? ORDER BY image_id",
            (page_id,),
        ).fetchall()
        return [ImageRow(**dict(r)) for r in rows]

    async def get_page_images(self, page_id: str) -> list[PageImage]:
        """Images for a page: from the latest image classification (which may
        include crops), else every extracted image. Missing files are skipped.
        """
        classification = await self.get_image_classification(page_id)
        if classification is not None:
            sources = [
                (img.image_id, img.path, img.width, img.height)
                for img in classification.data.images
            ]
        else:
            sources = [
                (row.image_id, row.path, row.width, row.height)
                for row in await self.get_extracted_images(page_id)
            ]

        images: list[PageImage] = []
        for image_id, relpath, width, height in sources:
            path = self._book_dir / relpath
            if not path.exists():
                logger.warning("Image file missing for %s: %s", image_id, path)
                continue
            images.append(
                PageImage(
                    image_id=image_id,
                    image_base64=base64.b64encode(path.read_bytes()).decode("ascii"),
                    width=width,
                    height=height,
                )
            )
        return images

    # --- Versioned node records ---

    async def _get_typed(self, node: str, item_id: str, model: type) -> VersionedRecord | None:
        record = await self._nodes.get_latest(self._label, node, item_id)
        if record is None or record.data is None:
            return None
        return VersionedRecord(data=model.model_validate(record.data), version=record.version)

    async def put_image_classification(
        self, page_id: str, data: schemas.ImageClassification
    ) -> int:
        return await self._nodes.put_next(
            self._label, schemas.IMAGE_CLASSIFICATION, page_id, data.model_dump(exclude_none=True)
        )

    async def get_image_classification(self, page_id: str) -> VersionedRecord | None:
        return await self._get_typed(
            schemas.IMAGE_CLASSIFICATION, page_id, schemas.ImageClassification
        )

    async def put_text_classification(
        self, page_id: str, data: schemas.TextClassification
    ) -> int:
        return await self._nodes.put_next(
            self._label, schemas.TEXT_CLASSIFICATION, page_id, data.model_dump()
        )

    async def get_text_classification(self, page_id: str) -> VersionedRecord | None:
        return await self._get_typed(
            schemas.TEXT_CLASSIFICATION, page_id, schemas.TextClassification
        )

    async def put_page_sectioning(self, page_id: str, data: schemas.PageSectioning) -> int:
        return await self._nodes.put_next(
            self._label, schemas.PAGE_SECTIONING, page_id, data.model_dump()
        )

    async def get_page_sectioning(self, page_id: str) -> VersionedRecord | None:
        return await self._get_typed(schemas.PAGE_SECTIONING, page_id, schemas.PageSectioning)

    async def put_section_rendering(
        self, section_id: str, data: schemas.SectionRendering | None
    ) -> int:
        """Store a rendering, or a None tombstone for a section with nothing to render."""
        payload = None if data is None else data.model_dump()
        return await self._nodes.put_next(self._label, schemas.WEB_RENDERING, section_id, payload)

    async def get_section_rendering(self, section_id: str) -> VersionedRecord | None:
        """Latest rendering; None when absent or tombstoned."""
        return await self._get_typed(schemas.WEB_RENDERING, section_id, schemas.SectionRendering)

    async def get_section_record(self, section_id: str) -> VersionedRecord | None:
        """Latest record including tombstones (``data`` is None for those)."""
        record = await self._nodes.get_latest(self._label, schemas.WEB_RENDERING, section_id)
        if record is None or record.data is None:
            return record
        return VersionedRecord(
            data=schemas.SectionRendering.model_validate(record.data), version=record.version
        )

    async def has_section_record(self, section_id: str) -> bool:
        """True when any version (tombstones included) exists."""
        record = await self._nodes.get_latest(self._label, schemas.WEB_RENDERING, section_id)
        return record is not None

    async def list_section_versions(self, section_id: str) -> list[int]:
        return await self._nodes.list_versions(self._label, schemas.WEB_RENDERING, section_id)

    async def put_render_manifest(self, page_id: str, manifest: schemas.RenderManifest) -> int:
        return await self._nodes.put_next(
            self._label, schemas.RENDER_MANIFEST, page_id, manifest.model_dump()
        )

    async def get_render_manifest(self, page_id: str) -> schemas.RenderManifest | None:
        record = await self._get_typed(schemas.RENDER_MANIFEST, page_id, schemas.RenderManifest)
        return record.data if record is not None else None

    # --- LLM call log ---

    async def append_llm_log(self, entry: dict[str, Any], max_entries: int) -> None:
        """Append one log entry, keeping only the newest ``max_entries`` rows."""
        conn = self._conn()
        timestamp = entry.get("timestamp") or datetime.now(timezone.utc).isoformat()
        with conn:
            conn.execute(
                "INSERT INTO llm_log (timestamp, data) VALUES (?, ?)",
                (str(timestamp), json.dumps(entry, default=str)),
            )
            conn.execute(
                "DELETE FROM llm_log WHERE id NOT IN "
                "(SELECT id FROM llm_log ORDER BY id DESC LIMIT ?)",
                (max_entries,),
            )

    async def list_llm_log(self) -> list[dict[str, Any]]:
        """All retained log entries, oldest first."""
        rows = self._conn().execute("SELECT data FROM llm_log ORDER BY id").fetchall()
        return [json.loads(r["data"]) for r in rows]
