# src/pipeline/errors.py — v1
"""Pipeline-level errors."""

from __future__ import annotations


class MissingPrerequisite(Exception):
    """A single-step run needs an upstream record that was never produced."""

    def __init__(self, step: str, page_id: str, requires: str):
        self.step = step
        self.page_id = page_id
        self.requires = requires
        super().__init__(f"{requires} required for {step} of {page_id}")
