# tests/unit/pipeline/steps/test_web_rendering.py — v2
"""Tests for pipeline/steps/web_rendering.py — per-section HTML rendering."""

from __future__ import annotations

import pytest

from bookweb.llm.retry import ValidationExhausted
from bookweb.pipeline.events import ProgressEvent
from bookweb.pipeline.node import PipelineContext, resolve_node
from bookweb.pipeline.schemas import (
    WEB_RENDERING,
    Annotation,
    PageSectioning,
    Section,
    SectioningGroup,
    SectioningImage,
    TextEntry,
)
from bookweb.pipeline.steps.web_rendering import (
    SectionInputs,
    collect_section_inputs,
    edit_section,
    render_page,
    render_section,
    section_ids_for,
    web_rendering_node,
)


def _section(*part_ids: str, pruned: bool = False) -> Section:
    return Section(section_type="body", part_ids=list(part_ids), is_pruned=pruned)


def _sectioning(*sections: Section) -> PageSectioning:
    return PageSectioning(
        reasoning="r",
        sections=list(sections),
        groups={
            "pg001_gp001": SectioningGroup(
                group_type="paragraph",
                texts=[
                    TextEntry(text_type="body", text="Hello"),
                    TextEntry(text_type="page_number", text="1", is_pruned=True),
                ],
            ),
            "pg001_gp002": SectioningGroup(
                group_type="paragraph",
                texts=[TextEntry(text_type="page_number", text="2", is_pruned=True)],
            ),
        },
        images={"pg001_im001": SectioningImage()},
    )


class TestCollectSectionInputs:
    def test_texts_and_images(self):
        inputs = collect_section_inputs(
            _section("pg001_gp001", "pg001_im001"), _sectioning(), {"pg001_im001": "B64"}
        )
        assert inputs.texts == [
            {"text_id": "pg001_gp001_t001", "text_type": "body", "text": "Hello"}
        ]
        assert inputs.images == [{"image_id": "pg001_im001", "image_base64": "B64"}]
        assert inputs.allowed_ids == ["pg001_gp001_t001", "pg001_im001"]

    def test_all_pruned_is_empty(self):
        inputs = collect_section_inputs(_section("pg001_gp002"), _sectioning(), {})
        assert inputs.is_empty

    def test_image_without_payload_skipped(self):
        inputs = collect_section_inputs(_section("pg001_im001"), _sectioning(), {})
        assert inputs.images == []


class TestSectionIds:
    def test_at_least_one(self):
        assert section_ids_for("pg001", _sectioning()) == ["pg001_s001"]
        assert section_ids_for("pg001", _sectioning(_section(), _section())) == [
            "pg001_s001",
            "pg001_s002",
        ]


class TestRenderSection:
    @pytest.mark.asyncio
    async def test_invalid_html_retried(self, ctx: PipelineContext, fake_llm):
        inputs = SectionInputs(
            texts=[{"text_id": "pg001_gp001_t001", "text_type": "body", "text": "Hello"}]
        )
        fake_llm.responses = [
            {"reasoning": "r", "content": "<p>Hello</p>"},
            {"reasoning": "r", "content": '<p data-id="pg001_gp001_t001">Hello</p>'},
        ]
        rendering = await render_section(
            ctx.caller("web_rendering"), "pg001", "PAGE", 0, "body", inputs,
            "web_generation_html", max_retries=1,
        )
        assert rendering.html == '<p data-id="pg001_gp001_t001">Hello</p>'
        assert rendering.section_index == 0
        feedback = fake_llm.calls[1]["messages"][-1].text
        assert 'Text node outside any data-id element: "Hello"' in feedback


class TestEditSection:
    @pytest.mark.asyncio
    async def test_validates_when_ids_known(self, ctx: PipelineContext, fake_llm):
        fake_llm.responses = [{"reasoning": "r", "content": '<p data-id="x">y</p>'}]
        with pytest.raises(ValidationExhausted):
            await edit_section(
                ctx.caller("section_edit"), "pg001", "<p>old</p>", "IMG",
                [Annotation(x=0, y=0, width=10, height=10, text="bigger")],
                "web_edit", allowed_ids=["pg001_gp001_t001"], max_retries=0,
            )

    @pytest.mark.asyncio
    async def test_unvalidated_without_ids(self, ctx: PipelineContext, fake_llm):
        fake_llm.responses = [{"reasoning": "r", "content": "<p>free text</p>"}]
        result = await edit_section(
            ctx.caller("section_edit"), "pg001", "<p>old</p>", "IMG", [], "web_edit",
        )
        assert result.content == "<p>free text</p>"
        assert "<p>old</p>" in fake_llm.calls[0]["messages"][0].text


class TestRenderPage:
    @pytest.mark.asyncio
    async def test_tombstones_and_progress(
        self, ctx: PipelineContext, seed_page, events: list[ProgressEvent]
    ):
        page_id = await seed_page(1)
        sectioning = _sectioning(
            _section("pg001_gp001", "pg001_im001"),
            _section("pg001_gp001", pruned=True),
            _section("pg001_gp002"),
        )
        outcomes = await render_page(ctx, page_id, sectioning)
        assert [o.section_id for o in outcomes] == ["pg001_s001", "pg001_s002", "pg001_s003"]
        assert outcomes[0].rendering is not None
        assert outcomes[1].rendering is None
        assert outcomes[2].rendering is None
        assert await ctx.storage.get_section_rendering("pg001_s002") is None
        assert await ctx.storage.has_section_record("pg001_s002")

        progress = [e.message for e in events if e.type == "step-progress"]
        assert progress == [f"Rendered section {i}/3" for i in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_empty_sectioning_writes_one_tombstone(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        outcomes = await render_page(ctx, page_id, _sectioning())
        assert [(o.section_id, o.rendering) for o in outcomes] == [("pg001_s001", None)]

    @pytest.mark.asyncio
    async def test_stale_sections_reset(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        await render_page(ctx, page_id, _sectioning(_section("pg001_gp002"), _section("pg001_gp002")))
        assert await ctx.storage.has_section_record("pg001_s002")

        await render_page(ctx, page_id, _sectioning(_section("pg001_gp002")))
        assert not await ctx.storage.has_section_record("pg001_s002")
        assert await ctx.storage.list_section_versions("pg001_s001") == [1, 2]

    @pytest.mark.asyncio
    async def test_manifest_records_sectioning_version(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        await render_page(ctx, page_id, _sectioning(_section("pg001_gp002")))
        assert await ctx.storage.get_render_manifest(page_id) is None

        await render_page(ctx, page_id, _sectioning(_section("pg001_gp002")), sectioning_version=4)
        manifest = await ctx.storage.get_render_manifest(page_id)
        assert manifest.sectioning_version == 4
        assert manifest.section_ids == ["pg001_s001"]


class TestWebRenderingNode:
    @pytest.mark.asyncio
    async def test_full_chain_then_resume(self, ctx: PipelineContext, seed_page, fake_llm):
        page_id = await seed_page(1)
        outcomes = await resolve_node(web_rendering_node, ctx, page_id)
        assert len(outcomes) == 1
        html = outcomes[0].rendering.html
        assert 'data-id="pg001_gp001_t001"' in html
        assert 'data-id="pg001_im001"' in html
        calls = fake_llm.call_count

        again = await resolve_node(web_rendering_node, ctx.derive(), page_id)
        assert [o.version for o in again] == [1]
        assert fake_llm.call_count == calls

    @pytest.mark.asyncio
    async def test_incomplete_when_a_section_is_missing(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        await resolve_node(web_rendering_node, ctx, page_id)
        await ctx.storage.nodes.reset_versions(ctx.label, WEB_RENDERING, "pg001_s001")

        outcomes = await resolve_node(web_rendering_node, ctx.derive(), page_id)
        assert outcomes[0].version == 1
        assert outcomes[0].rendering is not None

    @pytest.mark.asyncio
    async def test_resectioning_makes_rendering_stale(self, ctx: PipelineContext, seed_page):
        page_id = await seed_page(1)
        await resolve_node(web_rendering_node, ctx, page_id)
        sectioning = await ctx.storage.get_page_sectioning(page_id)
        assert await ctx.storage.put_page_sectioning(page_id, sectioning.data) == 2

        outcomes = await resolve_node(web_rendering_node, ctx.derive(), page_id)
        assert [o.version for o in outcomes] == [2]
        manifest = await ctx.storage.get_render_manifest(page_id)
        assert manifest.sectioning_version == 2
