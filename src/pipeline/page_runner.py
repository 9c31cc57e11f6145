# src/pipeline/page_runner.py — v2
"""Per-page pipeline runs: the full four-stage chain and single-step re-runs.

The full run resolves the requested nodes in stage order through the memo
engine, so upstream stages already recorded in storage are skipped and a
crashed run resumes where it stopped.
"""

from __future__ import annotations

import logging
from typing import Iterable

from bookweb.logging.context import bind_book
from bookweb.pipeline.errors import MissingPrerequisite
from bookweb.pipeline.node import PipelineContext, resolve_node, tracked_step
from bookweb.pipeline.schemas import (
    IMAGE_CLASSIFICATION,
    PAGE_NODES,
    PAGE_SECTIONING,
    TEXT_CLASSIFICATION,
    WEB_RENDERING,
    Annotation,
    SectionRendering,
)
from bookweb.pipeline.steps.image_classification import image_classification_node
from bookweb.pipeline.steps.page_sectioning import page_sectioning_node
from bookweb.pipeline.steps.text_classification import text_classification_node
from bookweb.pipeline.steps.web_rendering import (
    EDIT_STAGE,
    STAGE as RENDER_STAGE,
    RenderedSection,
    SectionInputs,
    collect_section_inputs,
    edit_section,
    render_section,
    web_rendering_node,
)
from bookweb.storage import layout
from bookweb.storage.node_store import VersionedRecord

logger = logging.getLogger(__name__)

PAGE_NODE_TABLE = {
    IMAGE_CLASSIFICATION: image_classification_node,
    TEXT_CLASSIFICATION: text_classification_node,
    PAGE_SECTIONING: page_sectioning_node,
    WEB_RENDERING: web_rendering_node,
}


def _check_steps(steps: Iterable[str]) -> list[str]:
    requested = list(steps)
    unknown = [s for s in requested if s not in PAGE_NODE_TABLE]
    if unknown:
        raise ValueError(
            f"Unknown step(s): {', '.join(unknown)}. Valid steps: {', '.join(PAGE_NODES)}"
        )
    return [name for name in PAGE_NODES if name in requested]


async def run_page_pipeline(
    ctx: PipelineContext, page_id: str, steps: Iterable[str] | None = None
) -> list[RenderedSection] | None:
    """Run the page pipeline up to web rendering.

    Args:
        steps: Node names to recompute even when already stored. Only those
            nodes (and any missing upstream) run; None means "resume the
            whole chain".

    Returns:
        The section outcomes when web rendering was part of the run.

    Raises:
        PageNotFound: If the page was never extracted.
    """
    bind_book(ctx.label)
    await ctx.storage.require_page(page_id)

    if steps is None:
        run_ctx, targets = ctx.derive(), [WEB_RENDERING]
    else:
        targets = _check_steps(steps)
        run_ctx = ctx.derive(force=targets)

    outcome: list[RenderedSection] | None = None
    for name in targets:
        value = await resolve_node(PAGE_NODE_TABLE[name], run_ctx, page_id)
        if name == WEB_RENDERING:
            outcome = value
    logger.info("Page %s done (%s)", page_id, ", ".join(targets))
    return outcome


async def _run_single(ctx: PipelineContext, page_id: str, step: str) -> object:
    bind_book(ctx.label)
    await ctx.storage.require_page(page_id)
    return await resolve_node(PAGE_NODE_TABLE[step], ctx.derive(force=[step]), page_id)


async def run_image_classification(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    return await _run_single(ctx, page_id, IMAGE_CLASSIFICATION)  # type: ignore[return-value]


async def run_text_classification(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    return await _run_single(ctx, page_id, TEXT_CLASSIFICATION)  # type: ignore[return-value]


async def run_page_sectioning(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    """Re-section a page from its stored classifications.

    Raises:
        MissingPrerequisite: If either classification has never run.
    """
    if await ctx.storage.get_text_classification(page_id) is None:
        raise MissingPrerequisite(PAGE_SECTIONING, page_id, "Text classification")
    if await ctx.storage.get_image_classification(page_id) is None:
        raise MissingPrerequisite(PAGE_SECTIONING, page_id, "Image classification")
    return await _run_single(ctx, page_id, PAGE_SECTIONING)  # type: ignore[return-value]


async def run_web_rendering(ctx: PipelineContext, page_id: str) -> list[RenderedSection]:
    """Re-render every section of a page from its stored sectioning."""
    if await ctx.storage.get_page_sectioning(page_id) is None:
        raise MissingPrerequisite(WEB_RENDERING, page_id, "Page sectioning")
    return await _run_single(ctx, page_id, WEB_RENDERING)  # type: ignore[return-value]


async def _section_inputs(
    ctx: PipelineContext, page_id: str, section_index: int
) -> tuple[VersionedRecord, SectionInputs]:
    sectioning = await ctx.storage.get_page_sectioning(page_id)
    if sectioning is None:
        raise MissingPrerequisite(WEB_RENDERING, page_id, "Page sectioning")
    sections = sectioning.data.sections
    if not 0 <= section_index < len(sections):
        raise IndexError(f"Section {section_index} not found on page {page_id}")
    images = await ctx.storage.get_page_images(page_id)
    image_map = {img.image_id: img.image_base64 for img in images}
    inputs = collect_section_inputs(sections[section_index], sectioning.data, image_map)
    return sectioning, inputs


async def run_web_rendering_section(
    ctx: PipelineContext, page_id: str, section_index: int
) -> VersionedRecord:
    """Re-render one section and store it as a new version.

    Raises:
        MissingPrerequisite: If the page has no sectioning.
        IndexError: If the section index is out of range.
        ValueError: If the section is pruned or has no content.
    """
    bind_book(ctx.label)
    page = await ctx.storage.require_page(page_id)
    sectioning, inputs = await _section_inputs(ctx, page_id, section_index)
    section = sectioning.data.sections[section_index]
    if section.is_pruned:
        raise ValueError(f"Section {section_index} is pruned")
    if inputs.is_empty:
        raise ValueError(f"Section {section_index} has no content")

    async def work() -> VersionedRecord:
        async with ctx.lock_for(WEB_RENDERING, page_id), ctx.stage_slot(RENDER_STAGE):
            rendering = await render_section(
                ctx.caller(RENDER_STAGE),
                page_id,
                page.image_base64,
                section_index,
                section.section_type,
                inputs,
                prompt_name=ctx.config.prompt_for(RENDER_STAGE),
                max_retries=ctx.config.max_retries_for(RENDER_STAGE),
            )
            section_id = layout.section_id(page_id, section_index)
            version = await ctx.storage.put_section_rendering(section_id, rendering)
        return VersionedRecord(data=rendering, version=version)

    return await tracked_step(
        ctx, WEB_RENDERING, work, page_id=page_id, version_of=lambda r: r.version
    )


async def run_web_edit(
    ctx: PipelineContext,
    page_id: str,
    section_index: int,
    annotation_image_base64: str,
    annotations: list[Annotation],
    current_html: str,
) -> VersionedRecord:
    """Apply reviewer annotations to one section and store the edit as a new version.

    The edit is validated against the section's text and image ids when the
    page has a sectioning that contains the section.
    """
    bind_book(ctx.label)
    await ctx.storage.require_page(page_id)

    allowed_ids: list[str] | None = None
    section_type: str | None = None
    try:
        sectioning, inputs = await _section_inputs(ctx, page_id, section_index)
    except (MissingPrerequisite, IndexError) as e:
        logger.warning(
            "Editing %s section %d without id validation: %s", page_id, section_index, e
        )
    else:
        allowed_ids = inputs.allowed_ids
        section_type = sectioning.data.sections[section_index].section_type

    section_id = layout.section_id(page_id, section_index)

    async def work() -> VersionedRecord:
        async with ctx.lock_for(WEB_RENDERING, page_id), ctx.stage_slot(EDIT_STAGE):
            return await edit_and_store()

    async def edit_and_store() -> VersionedRecord:
        result = await edit_section(
            ctx.caller(EDIT_STAGE),
            page_id,
            current_html,
            annotation_image_base64,
            annotations,
            prompt_name=ctx.config.prompt_for(EDIT_STAGE),
            allowed_ids=allowed_ids,
            max_retries=ctx.config.max_retries_for(EDIT_STAGE),
        )
        existing = await ctx.storage.get_section_rendering(section_id)
        rendering = SectionRendering(
            section_index=section_index,
            section_type=(
                existing.data.section_type if existing is not None
                else section_type or "unknown"
            ),
            reasoning=result.reasoning,
            html=result.content,
        )
        version = await ctx.storage.put_section_rendering(section_id, rendering)
        return VersionedRecord(data=rendering, version=version)

    return await tracked_step(
        ctx, "web-edit", work, page_id=page_id, version_of=lambda r: r.version
    )
