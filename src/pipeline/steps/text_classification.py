# src/pipeline/steps/text_classification.py — v2
"""LLM text classification: split a page's text into typed groups."""

from __future__ import annotations

from bookweb.config.book_config import BookConfig
from bookweb.llm.validated_caller import ValidatedCaller
from bookweb.pipeline.node import Node, PipelineContext, tracked_step
from bookweb.pipeline.prompt import render_prompt
from bookweb.pipeline.schemas import (
    TEXT_CLASSIFICATION,
    TextClassification,
    TextEntry,
    TextGroup,
    build_text_classification_model,
)
from bookweb.storage import layout
from bookweb.storage.models import PageRecord
from bookweb.storage.node_store import VersionedRecord

STAGE = "text_classification"


async def classify_text(
    caller: ValidatedCaller,
    page: PageRecord,
    config: BookConfig,
    language: str,
    prompt_name: str,
    max_retries: int = 0,
) -> TextClassification:
    """Classify one page and assign group ids and text pruning.

    Raises:
        ValueError: If the text or group vocabulary is empty.
    """
    schema = build_text_classification_model(
        list(config.text_types), list(config.text_group_types)
    )
    prompt = render_prompt(
        prompt_name,
        {
            "page": page,
            "language": language,
            "text_types": config.vocabulary("text_types"),
            "text_group_types": config.vocabulary("text_group_types"),
        },
    )
    result = await caller.generate_object(
        schema=schema,
        messages=prompt.messages,
        system=prompt.system,
        max_retries=max_retries,
        task_type=TEXT_CLASSIFICATION,
        page_id=page.page_id,
        prompt_name=prompt_name,
    )

    pruned = set(config.pruned_text_types)
    groups = [
        TextGroup(
            group_id=layout.group_id(page.page_id, idx),
            group_type=group["group_type"],
            texts=[
                TextEntry(
                    text_type=t["text_type"],
                    text=t["text"],
                    is_pruned=t["text_type"] in pruned,
                )
                for t in group["texts"]
            ],
        )
        for idx, group in enumerate(result.object["groups"])
    ]
    return TextClassification(reasoning=result.object["reasoning"], groups=groups)


async def _resolve(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    async def work() -> VersionedRecord:
        page = await ctx.storage.require_page(page_id)
        language = await ctx.storage.get_book_language()
        async with ctx.stage_slot(STAGE):
            result = await classify_text(
                ctx.caller(STAGE),
                page,
                ctx.config,
                language=language,
                prompt_name=ctx.config.prompt_for(STAGE),
                max_retries=ctx.config.max_retries_for(STAGE),
            )
        version = await ctx.storage.put_text_classification(page_id, result)
        return VersionedRecord(data=result, version=version)

    return await tracked_step(
        ctx, TEXT_CLASSIFICATION, work, page_id=page_id, version_of=lambda r: r.version
    )


async def _is_complete(ctx: PipelineContext, page_id: str) -> VersionedRecord | None:
    return await ctx.storage.get_text_classification(page_id)


text_classification_node: Node[VersionedRecord] = Node(
    name=TEXT_CLASSIFICATION, resolve=_resolve, is_complete=_is_complete
)
