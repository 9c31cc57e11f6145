# tests/conftest.py — v3
"""Shared test fixtures for all unit and integration tests.

Provides a temp books root, per-book storage, PNG helpers, a scripted LLM
client and a ready PipelineContext. No network access: every LLM call goes
through FakeLLMClient.
"""

from __future__ import annotations

import asyncio
import json
import re
import struct
import zlib
from collections import Counter
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest
from pydantic import BaseModel

from bookweb.config.book_config import BookConfig, load_base_config
from bookweb.config.settings import Settings
from bookweb.extraction.base_extractor import BaseExtractor
from bookweb.extraction.models import ExtractionResult, ExtractProgress, ExtractProgressCallback
from bookweb.llm.base_client import BaseLLMClient
from bookweb.llm.models import LLMResponse, Message
from bookweb.logging.context import clear_context
from bookweb.pipeline.actions import build_context
from bookweb.pipeline.events import ProgressEvent
from bookweb.pipeline.llm_factory import LLMFactory
from bookweb.pipeline.node import PipelineContext
from bookweb.storage import layout
from bookweb.storage.book_storage import BookStorage
from bookweb.storage.db import BookDatabase
from bookweb.storage.models import ExtractedImage, ExtractedPage, PdfMetadata

LABEL = "test-book"


# === Helpers ===


def make_png(width: int = 4, height: int = 4) -> bytes:
    """Smallest valid RGB PNG of the given size (all black)."""

    def chunk(tag: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(tag + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    raw = b"".join(b"\x00" + b"\x00\x00\x00" * width for _ in range(height))
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", ihdr)
        + chunk(b"IDAT", zlib.compress(raw))
        + chunk(b"IEND", b"")
    )


def make_page(
    page_number: int,
    text: str = "Hello world",
    image_sizes: list[tuple[int, int]] | None = None,
) -> ExtractedPage:
    """An extracted page with an 800x1000 render and optional embedded images."""
    page_id = layout.page_id_for(page_number)
    png = make_png()
    images = [
        ExtractedImage(
            image_id=layout.embedded_image_id(page_id, i + 1),
            page_id=page_id,
            png=png,
            width=w,
            height=h,
        )
        for i, (w, h) in enumerate(image_sizes if image_sizes is not None else [(400, 300)])
    ]
    return ExtractedPage(
        page_id=page_id,
        page_number=page_number,
        text=text,
        page_image=ExtractedImage(
            image_id=layout.page_image_id(page_id),
            page_id=page_id,
            png=png,
            width=800,
            height=1000,
        ),
        images=images,
    )


# === Scripted LLM ===


Responder = Callable[[list[Message], str | None, type[BaseModel] | None], Any]


class FakeLLMClient(BaseLLMClient):
    """LLM double: replays queued responses, else asks a responder.

    A queued or returned value may be a dict (sent as JSON), a raw string,
    or an Exception (raised). With ``delay`` set, every call suspends for
    that long before answering, so concurrent callers really overlap;
    ``peak`` records the most overlapping calls per response model name.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        responder: Responder | None = None,
        delay: float = 0.0,
    ):
        self.responses = list(responses or [])
        self.responder = responder
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.in_flight: Counter[str] = Counter()
        self.peak: Counter[str] = Counter()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        response_format: type[BaseModel] | None = None,
    ) -> LLMResponse:
        self.calls.append(
            {"messages": list(messages), "system": system, "response_format": response_format}
        )
        name = response_format.__name__ if response_format is not None else ""
        self.in_flight[name] += 1
        self.peak[name] = max(self.peak[name], self.in_flight[name])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            value = self._next(messages, system, response_format)
        finally:
            self.in_flight[name] -= 1

        if isinstance(value, Exception):
            raise value
        content = value if isinstance(value, str) else json.dumps(value)
        return LLMResponse(
            content=content,
            input_tokens=10,
            output_tokens=5,
            model="fake-model",
            provider="fake",
            latency_ms=1,
        )

    def _next(
        self,
        messages: list[Message],
        system: str | None,
        response_format: type[BaseModel] | None,
    ) -> Any:
        if self.responses:
            return self.responses.pop(0)
        if self.responder is not None:
            return self.responder(messages, system, response_format)
        raise AssertionError("FakeLLMClient has no response left")

    @property
    def model_id(self) -> str:
        return "fake-model"

    @property
    def provider_name(self) -> str:
        return "fake"


_GROUP_RE = re.compile(r"\b(pg\d{3}_gp\d{3})\b")
_TEXT_RE = re.compile(r"\[(pg\d{3}_gp\d{3}_t\d{3})\]")
_IMAGE_RE = re.compile(r"Image (pg\d{3}_im\d{3})")


def book_responder(
    messages: list[Message], system: str | None, response_format: type[BaseModel] | None
) -> dict[str, Any]:
    """Plausible answers for every stage, derived from the prompt itself."""
    name = response_format.__name__ if response_format is not None else ""
    user_text = "\n".join(m.text for m in messages if m.role == "user")

    if name == "BookMetadata":
        return {
            "title": "Test Book",
            "authors": ["A. Author"],
            "publisher": None,
            "language_code": "en",
            "cover_page_number": 1,
            "reasoning": "Title page",
        }
    if name == "TextClassificationResponse":
        return {
            "reasoning": "One paragraph and a folio",
            "groups": [
                {
                    "group_type": "paragraph",
                    "texts": [
                        {"text_type": "body", "text": "Hello world"},
                        {"text_type": "page_number", "text": "1"},
                    ],
                }
            ],
        }
    if name == "PageSectioningResponse":
        parts = list(dict.fromkeys(_GROUP_RE.findall(user_text) + _IMAGE_RE.findall(user_text)))
        return {
            "reasoning": "Everything in one body section",
            "sections": [
                {
                    "section_type": "body",
                    "part_ids": parts,
                    "background_color": "#ffffff",
                    "text_color": "#000000",
                    "page_number": 1,
                }
            ],
        }
    if name == "WebRenderingResponse":
        html = "".join(f'<p data-id="{t}">text</p>' for t in _TEXT_RE.findall(user_text))
        html += "".join(f'<img data-id="{i}" />' for i in _IMAGE_RE.findall(user_text))
        return {"reasoning": "Simple layout", "content": f"<section>{html}</section>"}
    raise AssertionError(f"Unexpected response format: {name}")


# === Extraction double ===


class FakeExtractor(BaseExtractor):
    """Extractor double that returns prebuilt pages."""

    def __init__(
        self,
        pages: list[ExtractedPage],
        title: str | None = "PDF Title",
        fail: bool = False,
    ) -> None:
        self.pages = pages
        self.title = title
        self.fail = fail
        self.calls: list[tuple[bytes, int | None, int | None]] = []

    @property
    def supported_extensions(self) -> list[str]:
        return [".pdf"]

    async def extract(
        self,
        content: bytes,
        start_page: int | None = None,
        end_page: int | None = None,
        on_progress: ExtractProgressCallback | None = None,
    ) -> ExtractionResult:
        self.calls.append((content, start_page, end_page))
        if self.fail:
            raise RuntimeError("corrupt PDF")
        for page in self.pages:
            if on_progress is not None:
                on_progress(ExtractProgress(page=page.page_number, total_pages=len(self.pages)))
        return ExtractionResult(
            pages=self.pages,
            pdf_metadata=PdfMetadata(title=self.title),
            total_pages_in_pdf=len(self.pages),
        )


# === Fixtures ===


@pytest.fixture(autouse=True)
def _reset_log_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(_env_file=None, books_root=tmp_path / "books")  # type: ignore[call-arg]


@pytest.fixture
def database(settings: Settings):
    db = BookDatabase(settings.books_root_path)
    yield db
    db.close_all()


@pytest.fixture
def storage(database: BookDatabase) -> BookStorage:
    return BookStorage(LABEL, database)


@pytest.fixture
def book_config() -> BookConfig:
    return BookConfig.model_validate(load_base_config())


@pytest.fixture
def seed_page(storage: BookStorage) -> Callable[..., Awaitable[str]]:
    """Async helper: store an extracted page and return its id."""

    async def seed(
        page_number: int = 1,
        text: str = "Hello world",
        image_sizes: list[tuple[int, int]] | None = None,
    ) -> str:
        page = make_page(page_number, text, image_sizes)
        await storage.put_extracted_page(page)
        return page.page_id

    return seed


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient(responder=book_responder)


@pytest.fixture
def events() -> list[ProgressEvent]:
    return []


@pytest.fixture
def ctx(
    storage: BookStorage,
    settings: Settings,
    book_config: BookConfig,
    fake_llm: FakeLLMClient,
    events: list[ProgressEvent],
) -> PipelineContext:
    factory = LLMFactory(settings, client_factory=lambda provider, model, s: fake_llm)
    return build_context(storage, settings, factory, config=book_config, progress=events.append)


@pytest.fixture
def page_factory() -> Callable[..., ExtractedPage]:
    return make_page


@pytest.fixture
def fake_extractor() -> Callable[..., FakeExtractor]:
    """Build a FakeExtractor; ``pages`` may be page numbers or ExtractedPage objects."""

    def build(pages: list[Any] | None = None, **kwargs: Any) -> FakeExtractor:
        built = [make_page(p) if isinstance(p, int) else p for p in pages or []]
        return FakeExtractor(built, **kwargs)

    return build


@pytest.fixture
def png_bytes() -> bytes:
    return make_png(3, 2)


@pytest.fixture
def service(settings: Settings, fake_llm: FakeLLMClient):
    from bookweb.service import BookService

    svc = BookService(settings, client_factory=lambda provider, model, s: fake_llm)
    yield svc
    svc.shutdown()
