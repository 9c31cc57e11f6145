# src/pipeline/steps/web_rendering.py — v2
"""LLM web rendering: one HTML fragment per unpruned section.

Each section is stored under its own item id (``<pageId>_s001``...). A
section that is pruned or has no unpruned content gets a null tombstone.
A page is complete when its render manifest names the current sectioning
version and every expected section has a record; re-sectioning a page
therefore makes its rendering stale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from bookweb.llm.validated_caller import ValidatedCaller
from bookweb.pipeline.events import ProgressEvent
from bookweb.pipeline.html_validation import html_content_validator
from bookweb.pipeline.node import Node, PipelineContext, resolve_node, tracked_step
from bookweb.pipeline.prompt import render_prompt
from bookweb.pipeline.schemas import (
    WEB_RENDERING,
    Annotation,
    PageSectioning,
    RenderManifest,
    Section,
    SectionRendering,
    WebRenderingResponse,
)
from bookweb.pipeline.steps.page_sectioning import page_sectioning_node
from bookweb.storage import layout
from bookweb.storage.node_store import VersionedRecord

logger = logging.getLogger(__name__)

STAGE = "web_rendering"
EDIT_STAGE = "section_edit"


@dataclass
class SectionInputs:
    texts: list[dict[str, str]] = field(default_factory=list)
    images: list[dict[str, str]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.texts and not self.images

    @property
    def allowed_ids(self) -> list[str]:
        return [t["text_id"] for t in self.texts] + [i["image_id"] for i in self.images]


@dataclass(frozen=True)
class RenderedSection:
    """Outcome for one section item; ``rendering`` is None for tombstones."""

    section_id: str
    version: int
    rendering: SectionRendering | None


def collect_section_inputs(
    section: Section, sectioning: PageSectioning, image_map: dict[str, str]
) -> SectionInputs:
    """Resolve a section's part ids into unpruned texts and images.

    Pruning comes from the sectioning's embedded groups and images; the
    image map supplies base64 payloads.
    """
    inputs = SectionInputs()
    for part_id in section.part_ids:
        group = sectioning.groups.get(part_id)
        if group is not None:
            if group.is_pruned:
                continue
            for idx, entry in enumerate(group.texts):
                if entry.is_pruned:
                    continue
                inputs.texts.append({
                    "text_id": layout.text_id(part_id, idx),
                    "text_type": entry.text_type,
                    "text": entry.text,
                })
            continue

        image = sectioning.images.get(part_id)
        if image is not None and image.is_pruned:
            continue
        data = image_map.get(part_id)
        if data:
            inputs.images.append({"image_id": part_id, "image_base64": data})
    return inputs


async def render_section(
    caller: ValidatedCaller,
    page_id: str,
    page_image_base64: str,
    section_index: int,
    section_type: str,
    inputs: SectionInputs,
    prompt_name: str,
    max_retries: int = 2,
) -> SectionRendering:
    prompt = render_prompt(
        prompt_name,
        {
            "page_image_base64": page_image_base64,
            "section_type": section_type,
            "texts": inputs.texts,
            "images": inputs.images,
        },
    )
    result = await caller.generate_object(
        schema=WebRenderingResponse,
        messages=prompt.messages,
        system=prompt.system,
        validate=html_content_validator(inputs.allowed_ids),
        max_retries=max_retries,
        task_type=WEB_RENDERING,
        page_id=page_id,
        prompt_name=prompt_name,
    )
    return SectionRendering(
        section_index=section_index,
        section_type=section_type,
        reasoning=result.object["reasoning"],
        html=result.object["content"],
    )


async def edit_section(
    caller: ValidatedCaller,
    page_id: str,
    current_html: str,
    annotation_image_base64: str,
    annotations: list[Annotation],
    prompt_name: str,
    allowed_ids: list[str] | None = None,
    max_retries: int = 2,
) -> WebRenderingResponse:
    """Revise a section's HTML from annotations drawn on its screenshot.

    HTML validation only runs when ``allowed_ids`` is known.
    """
    prompt = render_prompt(
        prompt_name,
        {
            "annotation_image_base64": annotation_image_base64,
            "annotations": [a.model_dump() for a in annotations],
            "current_html": current_html,
        },
    )
    result = await caller.generate_object(
        schema=WebRenderingResponse,
        messages=prompt.messages,
        system=prompt.system,
        validate=html_content_validator(allowed_ids) if allowed_ids is not None else None,
        max_retries=max_retries,
        task_type="web-edit",
        page_id=page_id,
        prompt_name=prompt_name,
    )
    return WebRenderingResponse.model_validate(result.object)


def section_ids_for(page_id: str, sectioning: PageSectioning) -> list[str]:
    """Item ids a sectioning expects; a page with no sections still owns ``_s001``."""
    count = max(len(sectioning.sections), 1)
    return [layout.section_id(page_id, i) for i in range(count)]


async def render_page(
    ctx: PipelineContext,
    page_id: str,
    sectioning: PageSectioning,
    sectioning_version: int | None = None,
) -> list[RenderedSection]:
    """Render and store every section of a page.

    When ``sectioning_version`` is given, a render manifest recording it is
    stored once every section has a record.
    """
    storage = ctx.storage
    page = await storage.require_page(page_id)
    image_map = {img.image_id: img.image_base64 for img in await storage.get_page_images(page_id)}
    prompt_name = ctx.config.prompt_for(STAGE)
    max_retries = ctx.config.max_retries_for(STAGE)
    total = len(sectioning.sections)

    outcomes: list[RenderedSection] = []
    for index, section in enumerate(sectioning.sections):
        section_id = layout.section_id(page_id, index)
        rendering: SectionRendering | None = None
        if not section.is_pruned:
            inputs = collect_section_inputs(section, sectioning, image_map)
            if not inputs.is_empty:
                rendering = await render_section(
                    ctx.caller(STAGE),
                    page_id,
                    page.image_base64,
                    index,
                    section.section_type,
                    inputs,
                    prompt_name=prompt_name,
                    max_retries=max_retries,
                )
        version = await storage.put_section_rendering(section_id, rendering)
        outcomes.append(RenderedSection(section_id, version, rendering))
        ctx.emit(ProgressEvent(
            type="step-progress",
            step=WEB_RENDERING,
            page_id=page_id,
            message=f"Rendered section {index + 1}/{total}",
        ))

    if total == 0:
        section_id = layout.section_id(page_id, 0)
        version = await storage.put_section_rendering(section_id, None)
        outcomes.append(RenderedSection(section_id, version, None))

    await _reset_stale_sections(ctx, page_id, {o.section_id for o in outcomes})
    if sectioning_version is not None:
        await storage.put_render_manifest(
            page_id,
            RenderManifest(
                sectioning_version=sectioning_version,
                section_ids=[o.section_id for o in outcomes],
            ),
        )
    return outcomes


async def _reset_stale_sections(ctx: PipelineContext, page_id: str, current: set[str]) -> None:
    """Drop the history of sections a previous, longer sectioning produced."""
    prefix = f"{page_id}_s"
    for item_id in await ctx.storage.nodes.list_items(ctx.label, WEB_RENDERING, prefix):
        if item_id not in current:
            await ctx.storage.nodes.reset_versions(ctx.label, WEB_RENDERING, item_id)


async def _resolve(ctx: PipelineContext, page_id: str) -> list[RenderedSection]:
    sectioning = await resolve_node(page_sectioning_node, ctx, page_id)

    async def work() -> list[RenderedSection]:
        async with ctx.stage_slot(STAGE):
            return await render_page(ctx, page_id, sectioning.data, sectioning.version)

    return await tracked_step(
        ctx, WEB_RENDERING, work, page_id=page_id, version_of=lambda r: max(o.version for o in r)
    )


async def _is_complete(ctx: PipelineContext, page_id: str) -> list[RenderedSection] | None:
    sectioning = await ctx.storage.get_page_sectioning(page_id)
    if sectioning is None:
        return None
    manifest = await ctx.storage.get_render_manifest(page_id)
    if manifest is None or manifest.sectioning_version != sectioning.version:
        return None
    outcomes: list[RenderedSection] = []
    for section_id in section_ids_for(page_id, sectioning.data):
        record = await ctx.storage.get_section_record(section_id)
        if record is None:
            return None
        outcomes.append(RenderedSection(section_id, record.version, record.data))
    return outcomes


web_rendering_node: Node[list[RenderedSection]] = Node(
    name=WEB_RENDERING, resolve=_resolve, is_complete=_is_complete
)
