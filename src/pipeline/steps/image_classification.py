# src/pipeline/steps/image_classification.py — v2
"""Rule-based image classification.

Full-page renders and images outside the configured size window are
pruned: kept in storage, excluded from sectioning and rendering.
"""

from __future__ import annotations

from bookweb.config.book_config import ImageFilters
from bookweb.pipeline.node import Node, PipelineContext, tracked_step
from bookweb.pipeline.schemas import IMAGE_CLASSIFICATION, ClassifiedImage, ImageClassification
from bookweb.storage import layout
from bookweb.storage.models import ImageRow
from bookweb.storage.node_store import VersionedRecord

STAGE = "image_classification"


def _px(value: float) -> str:
    return f"{value:g}px"


def classify_image(image: ImageRow, filters: ImageFilters) -> ClassifiedImage:
    base = ClassifiedImage(
        image_id=image.image_id, path=image.path, width=image.width, height=image.height
    )
    min_dim = min(image.width, image.height)
    max_dim = max(image.width, image.height)
    size = filters.size

    if image.image_id.endswith(layout.PAGE_IMAGE_SUFFIX):
        reason = "full-page-render"
    elif size.min_side is not None and min_dim < size.min_side:
        reason = f"too-small: {_px(min_dim)} < {_px(size.min_side)} min"
    elif size.max_side is not None and max_dim > size.max_side:
        reason = f"too-large: {_px(max_dim)} > {_px(size.max_side)} max"
    else:
        return base
    return base.model_copy(update={"is_pruned": True, "reason": reason})


def classify_images(images: list[ImageRow], filters: ImageFilters) -> ImageClassification:
    return ImageClassification(images=[classify_image(img, filters) for img in images])


async def _resolve(ctx: PipelineContext, page_id: str) -> VersionedRecord:
    async def work() -> VersionedRecord:
        rows = await ctx.storage.get_extracted_images(page_id)
        async with ctx.stage_slot(STAGE):
            result = classify_images(rows, ctx.config.image_filters)
        version = await ctx.storage.put_image_classification(page_id, result)
        return VersionedRecord(data=result, version=version)

    return await tracked_step(
        ctx, IMAGE_CLASSIFICATION, work, page_id=page_id, version_of=lambda r: r.version
    )


async def _is_complete(ctx: PipelineContext, page_id: str) -> VersionedRecord | None:
    return await ctx.storage.get_image_classification(page_id)


image_classification_node: Node[VersionedRecord] = Node(
    name=IMAGE_CLASSIFICATION, resolve=_resolve, is_complete=_is_complete
)
