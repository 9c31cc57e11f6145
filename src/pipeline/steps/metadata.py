# src/pipeline/steps/metadata.py — v2
"""LLM book metadata from the first pages."""

from __future__ import annotations

from bookweb.llm.validated_caller import ValidatedCaller
from bookweb.pipeline.node import Node, PipelineContext, tracked_step
from bookweb.pipeline.prompt import render_prompt
from bookweb.pipeline.schemas import METADATA, BookMetadata
from bookweb.storage.models import PageRecord

STAGE = "metadata"


class NoPagesError(ValueError):
    """The book has no extracted pages to read metadata from."""

    def __init__(self) -> None:
        super().__init__("No pages available for metadata extraction")


async def extract_metadata(
    caller: ValidatedCaller,
    pages: list[PageRecord],
    prompt_name: str,
    max_retries: int = 0,
) -> BookMetadata:
    if not pages:
        raise NoPagesError()
    prompt = render_prompt(prompt_name, {"pages": pages})
    result = await caller.generate_object(
        schema=BookMetadata,
        messages=prompt.messages,
        system=prompt.system,
        max_retries=max_retries,
        task_type=METADATA,
        prompt_name=prompt_name,
    )
    return BookMetadata.model_validate(result.object)


async def _resolve(ctx: PipelineContext, label: str) -> BookMetadata:
    async def work() -> BookMetadata:
        pages = await ctx.storage.get_first_pages(ctx.settings.metadata_page_count)
        async with ctx.stage_slot(STAGE):
            metadata = await extract_metadata(
                ctx.caller(STAGE),
                pages,
                prompt_name=ctx.config.prompt_for(STAGE),
                max_retries=ctx.config.max_retries_for(STAGE),
            )
        await ctx.storage.put_book_metadata(metadata, "llm")
        return metadata

    return await tracked_step(ctx, METADATA, work)


async def _is_complete(ctx: PipelineContext, label: str) -> BookMetadata | None:
    if not await ctx.storage.has_llm_metadata():
        return None
    return await ctx.storage.get_book_metadata()


metadata_node: Node[BookMetadata] = Node(name=METADATA, resolve=_resolve, is_complete=_is_complete)
