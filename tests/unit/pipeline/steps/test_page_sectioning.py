# tests/unit/pipeline/steps/test_page_sectioning.py — v2
"""Tests for pipeline/steps/page_sectioning.py — visual sections of a page."""

from __future__ import annotations

import pytest

from bookweb.config.book_config import BookConfig
from bookweb.pipeline.node import PipelineContext, resolve_node
from bookweb.pipeline.schemas import (
    ClassifiedImage,
    ImageClassification,
    TextClassification,
    TextEntry,
    TextGroup,
)
from bookweb.pipeline.steps.page_sectioning import (
    NO_CONTENT_REASONING,
    build_group_summaries,
    page_sectioning_node,
    section_page,
    unique_parts_validator,
)
from bookweb.storage.node_store import VersionedRecord


def _texts(*groups: TextGroup) -> TextClassification:
    return TextClassification(reasoning="r", groups=list(groups))


def _group(group_id: str, *entries: tuple[str, str, bool]) -> TextGroup:
    return TextGroup(
        group_id=group_id,
        group_type="paragraph",
        texts=[TextEntry(text_type=t, text=x, is_pruned=p) for t, x, p in entries],
    )


class TestGroupSummaries:
    def test_joins_unpruned_and_drops_empty(self):
        texts = _texts(
            _group("pg001_gp001", ("body", "Hello", False), ("body", "world", False)),
            _group("pg001_gp002", ("page_number", "7", True)),
        )
        assert build_group_summaries(texts) == [
            {"group_id": "pg001_gp001", "group_type": "paragraph", "text": "Hello world"}
        ]


class TestUniquePartsValidator:
    def test_duplicate_parts(self):
        validate = unique_parts_validator()
        result = validate({"sections": [{"part_ids": ["a", "b"]}, {"part_ids": ["a"]}]})
        assert result.errors == ['Part id "a" is used 2 times']
        assert validate({"sections": [{"part_ids": ["a"]}, {"part_ids": ["b"]}]}).valid


class TestSectionPage:
    @pytest.mark.asyncio
    async def test_no_content_skips_llm(self, ctx: PipelineContext, seed_page, fake_llm):
        page = await ctx.storage.require_page(await seed_page(1, image_sizes=[]))
        texts = VersionedRecord(
            data=_texts(_group("pg001_gp001", ("page_number", "1", True))), version=2
        )
        images = VersionedRecord(data=ImageClassification(), version=1)
        result = await section_page(
            ctx.caller("page_sectioning"), page, texts, images, [], ctx.config, "page_sectioning"
        )
        assert result.sections == []
        assert result.reasoning == NO_CONTENT_REASONING
        assert result.text_classification_version == 2
        assert result.groups["pg001_gp001"].is_pruned
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_pruned_section_types_and_embedding(
        self, ctx: PipelineContext, seed_page, fake_llm, book_config: BookConfig
    ):
        page_id = await seed_page(1)
        page = await ctx.storage.require_page(page_id)
        images = await ctx.storage.get_page_images(page_id)
        texts = VersionedRecord(
            data=_texts(_group("pg001_gp001", ("body", "Hello", False))), version=1
        )
        classified = VersionedRecord(
            data=ImageClassification(images=[
                ClassifiedImage(image_id="pg001_page", path="p", width=1, height=1,
                                is_pruned=True, reason="full-page-render"),
                ClassifiedImage(image_id="pg001_im001", path="p", width=400, height=300),
            ]),
            version=3,
        )
        fake_llm.responses = [{
            "reasoning": "cover then body",
            "sections": [
                {"section_type": "back_matter", "part_ids": ["pg001_gp001"],
                 "background_color": "#fff", "text_color": "#000"},
                {"section_type": "body", "part_ids": ["pg001_im001"],
                 "background_color": "#eee", "text_color": "#111", "page_number": 4},
            ],
        }]
        config = book_config.model_copy(update={"pruned_section_types": ["back_matter"]})
        result = await section_page(
            ctx.caller("page_sectioning"), page, texts, classified, images, config,
            "page_sectioning",
        )
        assert [s.is_pruned for s in result.sections] == [True, False]
        assert result.sections[1].page_number == 4
        assert result.image_classification_version == 3
        assert list(result.images) == ["pg001_im001"]

        # The pruned page render is never offered as a part.
        user_text = fake_llm.calls[0]["messages"][0].text
        assert "Image pg001_im001" in user_text
        assert "pg001_page" not in user_text

    @pytest.mark.asyncio
    async def test_unassigned_parts_are_pruned(self, ctx: PipelineContext, seed_page, fake_llm):
        page_id = await seed_page(1, image_sizes=[(400, 300), (300, 300)])
        page = await ctx.storage.require_page(page_id)
        images = await ctx.storage.get_page_images(page_id)
        texts = VersionedRecord(
            data=_texts(
                _group("pg001_gp001", ("body", "Kept", False)),
                _group("pg001_gp002", ("body", "Left out", False)),
            ),
            version=1,
        )
        classified = VersionedRecord(
            data=ImageClassification(images=[
                ClassifiedImage(image_id="pg001_page", path="p", width=1, height=1,
                                is_pruned=True, reason="full-page-render"),
                ClassifiedImage(image_id="pg001_im001", path="p", width=400, height=300),
                ClassifiedImage(image_id="pg001_im002", path="p", width=300, height=300),
            ]),
            version=1,
        )
        fake_llm.responses = [{
            "reasoning": "one section",
            "sections": [
                {"section_type": "body", "part_ids": ["pg001_gp001", "pg001_im002"],
                 "background_color": "#fff", "text_color": "#000"},
            ],
        }]
        result = await section_page(
            ctx.caller("page_sectioning"), page, texts, classified, images, ctx.config,
            "page_sectioning",
        )
        assert result.groups["pg001_gp001"].is_pruned is False
        assert result.groups["pg001_gp002"].is_pruned is True
        assert result.images["pg001_im001"].is_pruned is True
        assert result.images["pg001_im002"].is_pruned is False

    @pytest.mark.asyncio
    async def test_duplicate_parts_retried(self, ctx: PipelineContext, seed_page, fake_llm):
        page_id = await seed_page(1, image_sizes=[])
        page = await ctx.storage.require_page(page_id)
        texts = VersionedRecord(
            data=_texts(_group("pg001_gp001", ("body", "Hello", False))), version=1
        )
        images = VersionedRecord(data=ImageClassification(), version=1)
        section = {"section_type": "body", "part_ids": ["pg001_gp001"],
                   "background_color": "#fff", "text_color": "#000"}
        fake_llm.responses = [
            {"reasoning": "dup", "sections": [section, section]},
            {"reasoning": "fixed", "sections": [section]},
        ]
        result = await section_page(
            ctx.caller("page_sectioning"), page, texts, images, [], ctx.config,
            "page_sectioning", max_retries=1,
        )
        assert result.reasoning == "fixed"
        assert fake_llm.call_count == 2


class TestPageSectioningNode:
    @pytest.mark.asyncio
    async def test_resolves_classifications_first(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        record = await resolve_node(page_sectioning_node, ctx, page_id)
        assert record.version == 1
        assert record.data.sections[0].part_ids == ["pg001_gp001", "pg001_im001"]
        assert await ctx.storage.get_text_classification(page_id) is not None
        assert await ctx.storage.get_image_classification(page_id) is not None
