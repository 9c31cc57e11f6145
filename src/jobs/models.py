# src/jobs/models.py — v1
"""Job records and the typed job kinds.

Each kind is a params model tagged by ``kind``; ``JobParams`` is the
discriminated union of all of them, so a job's payload is validated when
it is enqueued rather than when an executor reads it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from bookweb.pipeline.schemas import Annotation

JobStatus = Literal["queued", "running", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class MetadataJob(BaseModel):
    kind: Literal["metadata"] = "metadata"


class PagePipelineJob(BaseModel):
    kind: Literal["page-pipeline"] = "page-pipeline"
    page_id: str


class ImageClassificationJob(BaseModel):
    kind: Literal["image-classification"] = "image-classification"
    page_id: str


class TextClassificationJob(BaseModel):
    kind: Literal["text-classification"] = "text-classification"
    page_id: str


class PageSectioningJob(BaseModel):
    kind: Literal["page-sectioning"] = "page-sectioning"
    page_id: str


class WebRenderingJob(BaseModel):
    kind: Literal["web-rendering"] = "web-rendering"
    page_id: str


class WebRenderingSectionJob(BaseModel):
    kind: Literal["web-rendering-section"] = "web-rendering-section"
    page_id: str
    section_index: int = Field(ge=0)


class WebEditJob(BaseModel):
    kind: Literal["web-edit"] = "web-edit"
    page_id: str
    section_index: int = Field(ge=0)
    annotation_image_base64: str
    annotations: list[Annotation] = Field(default_factory=list)
    current_html: str


JobParams = Annotated[
    Union[
        MetadataJob,
        PagePipelineJob,
        ImageClassificationJob,
        TextClassificationJob,
        PageSectioningJob,
        WebRenderingJob,
        WebRenderingSectionJob,
        WebEditJob,
    ],
    Field(discriminator="kind"),
]

JOB_KINDS: tuple[str, ...] = (
    "metadata",
    "page-pipeline",
    "image-classification",
    "text-classification",
    "page-sectioning",
    "web-rendering",
    "web-rendering-section",
    "web-edit",
)


class Job(BaseModel):
    """One unit of queued work on a book."""

    id: str
    type: str
    label: str
    status: JobStatus = "queued"
    params: JobParams
    progress: str | None = None
    result: Any = None
    error: str | None = None
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class QueueStats:
    queued: int
    running: int


@dataclass(frozen=True)
class JobEvent:
    """Emitted on every job state change; carries a snapshot of the job."""

    job: Job
    type: Literal["job"] = "job"


@dataclass(frozen=True)
class StatsEvent:
    stats: QueueStats
    type: Literal["stats"] = "stats"


QueueEvent = Union[JobEvent, StatsEvent]
