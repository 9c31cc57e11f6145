# src/pipeline/steps/page_sectioning.py — v2
"""LLM page sectioning: group text groups and images into visual sections.

The stored record embeds the group and image state it was computed from
(classification versions plus resolved pruning), so rendering never has to
recombine classification records that may have moved on since.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from bookweb.config.book_config import BookConfig
from bookweb.llm.validated_caller import ValidatedCaller, ValidationResult, Validator
from bookweb.pipeline.node import Node, PipelineContext, resolve_node, tracked_step
from bookweb.pipeline.prompt import render_prompt
from bookweb.pipeline.schemas import (
    PAGE_SECTIONING,
    ImageClassification,
    PageSectioning,
    Section,
    SectioningGroup,
    SectioningImage,
    TextClassification,
    build_page_sectioning_model,
)
from bookweb.pipeline.steps.image_classification import image_classification_node
from bookweb.pipeline.steps.text_classification import text_classification_node
from bookweb.storage.models import PageImage, PageRecord
from bookweb.storage.node_store import VersionedRecord

STAGE = "page_sectioning"
NO_CONTENT_REASONING = "No content to section"


def build_group_summaries(text_classification: TextClassification) -> list[dict[str, str]]:
    """One line per group with its unpruned texts; empty groups are dropped."""
    summaries: list[dict[str, str]] = []
    for group in text_classification.groups:
        texts = [t.text for t in group.texts if not t.is_pruned]
        if not texts:
            continue
        summaries.append(
            {"group_id": group.group_id, "group_type": group.group_type, "text": " ".join(texts)}
        )
    return summaries


def unique_parts_validator() -> Validator:
    """Reject answers that put the same part in more than one section."""

    def validate(obj: dict[str, Any]) -> ValidationResult:
        counts = Counter(
            part for section in obj.get("sections", []) for part in section.get("part_ids", [])
        )
        errors = [f'Part id "{p}" is used {n} times' for p, n in counts.items() if n > 1]
        if not errors:
            return ValidationResult.ok()
        return ValidationResult(valid=False, errors=errors)

    return validate


async def section_page(
    caller: ValidatedCaller,
    page: PageRecord,
    text_classification: VersionedRecord,
    image_classification: VersionedRecord,
    images: list[PageImage],
    config: BookConfig,
    prompt_name: str,
    max_retries: int = 0,
) -> PageSectioning:
    """Section one page.

    Args:
        text_classification: Latest text classification (data + version).
        image_classification: Latest image classification (data + version).
        images: Page images with base64 payloads.

    Raises:
        ValueError: If sections are needed but no section types are configured.
    """
    texts: TextClassification = text_classification.data
    classified: ImageClassification = image_classification.data

    pruned_images = {img.image_id for img in classified.images if img.is_pruned}
    unpruned = [img for img in images if img.image_id not in pruned_images]
    summaries = build_group_summaries(texts)

    def embedded(assigned: set[str]) -> dict[str, Any]:
        # Groups and images no section uses are stored pruned.
        return {
            "text_classification_version": text_classification.version,
            "image_classification_version": image_classification.version,
            "groups": {
                g.group_id: SectioningGroup(
                    group_type=g.group_type,
                    is_pruned=g.group_id not in assigned,
                    texts=g.texts,
                )
                for g in texts.groups
            },
            "images": {
                img.image_id: SectioningImage(is_pruned=img.image_id not in assigned)
                for img in unpruned
            },
        }

    part_ids = [s["group_id"] for s in summaries] + [img.image_id for img in unpruned]
    if not part_ids:
        return PageSectioning(reasoning=NO_CONTENT_REASONING, sections=[], **embedded(set()))

    schema = build_page_sectioning_model(list(config.section_types), part_ids)
    prompt = render_prompt(
        prompt_name,
        {
            "page": page,
            "section_types": config.vocabulary("section_types"),
            "groups": summaries,
            "images": [
                {"image_id": img.image_id, "image_base64": img.image_base64} for img in unpruned
            ],
        },
    )
    result = await caller.generate_object(
        schema=schema,
        messages=prompt.messages,
        system=prompt.system,
        validate=unique_parts_validator(),
        max_retries=max_retries,
        task_type=PAGE_SECTIONING,
        page_id=page.page_id,
        prompt_name=prompt_name,
    )

    pruned_types = set(config.pruned_section_types)
    sections = [
        Section(
            section_type=s["section_type"],
            part_ids=list(s["part_ids"]),
            background_color=s["background_color"],
            text_color=s["text_color"],
            page_number=s.get("page_number"),
            is_pruned=s["section_type"] in pruned_types,
        )
        for s in result.object["sections"]
    ]
    assigned = {part for section in sections for part in section.part_ids}
    return PageSectioning(
        reasoning=result.object["reasoning"], sections=sections, **embedded(assigned)
    )


async def _resolve(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    image_classification = await resolve_node(image_classification_node, ctx, page_id)
    text_classification = await resolve_node(text_classification_node, ctx, page_id)

    async def work() -> VersionedRecord:
        page = await ctx.storage.require_page(page_id)
        images = await ctx.storage.get_page_images(page_id)
        async with ctx.stage_slot(STAGE):
            result = await section_page(
                ctx.caller(STAGE),
                page,
                text_classification,
                image_classification,
                images,
                ctx.config,
                prompt_name=ctx.config.prompt_for(STAGE),
                max_retries=ctx.config.max_retries_for(STAGE),
            )
        version = await ctx.storage.put_page_sectioning(page_id, result)
        return VersionedRecord(data=result, version=version)

    return await tracked_step(
        ctx, PAGE_SECTIONING, work, page_id=page_id, version_of=lambda r: r.version
    )


async def _is_complete(ctx: PipelineContext, page_id: str) -> VersionedRecord | None:
    return await ctx.storage.get_page_sectioning(page_id)


page_sectioning_node: Node[VersionedRecord] = Node(
    name=PAGE_SECTIONING, resolve=_resolve, is_complete=_is_complete
)
