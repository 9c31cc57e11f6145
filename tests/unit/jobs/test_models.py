# tests/unit/jobs/test_models.py — v1
"""Tests for jobs/models.py — typed job params."""

from __future__ import annotations

from typing import get_args

import pytest
from pydantic import TypeAdapter, ValidationError

from bookweb.jobs.models import (
    JOB_KINDS,
    Job,
    JobParams,
    WebEditJob,
    WebRenderingSectionJob,
)

PARAMS = TypeAdapter(JobParams)


class TestJobParams:
    def test_dispatch_on_kind(self):
        params = PARAMS.validate_python(
            {"kind": "web-rendering-section", "page_id": "pg001", "section_index": 2}
        )
        assert isinstance(params, WebRenderingSectionJob)
        assert params.section_index == 2

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            PARAMS.validate_python({"kind": "typeset", "page_id": "pg001"})

    def test_negative_section_index(self):
        with pytest.raises(ValidationError):
            WebRenderingSectionJob(page_id="pg001", section_index=-1)

    def test_web_edit_annotations(self):
        params = PARAMS.validate_python({
            "kind": "web-edit",
            "page_id": "pg001",
            "section_index": 0,
            "annotation_image_base64": "AAAA",
            "annotations": [{"x": 1, "y": 2, "width": 3, "height": 4, "text": "bolder"}],
            "current_html": "<p>x</p>",
        })
        assert isinstance(params, WebEditJob)
        assert params.annotations[0].text == "bolder"

    def test_kinds_cover_union(self):
        kinds = {arg.model_fields["kind"].default for arg in get_args(get_args(JobParams)[0])}
        assert kinds == set(JOB_KINDS)


class TestJob:
    def test_terminal(self):
        job = Job(id="job_1", type="metadata", label="b", params={"kind": "metadata"}, created_at=0)
        assert not job.is_terminal
        job.status = "failed"
        assert job.is_terminal
