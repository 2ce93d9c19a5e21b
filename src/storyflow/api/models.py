"""Pydantic request models for the StoryFlow API.

Workflows travel in the scripting protocol's wire form: a list of
single-key objects such as ``{"prompt": "a cat"}`` or
``{"loop": {"loop": 3, "start": 0}}``.  Decoding into typed instructions
happens in the route handlers so that decode errors can be reported per
index alongside validation issues.

Models
------
WorkflowRequest
    Payload for ``POST /api/workflows/validate`` and
    ``POST /api/workflows/analyze``.
RunRequest
    Payload for ``POST /api/workflows/run``; adds execution options.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class WorkflowRequest(BaseModel):
    """A workflow in wire form.

    Attributes:
        instructions: Ordered list of single-key instruction objects.
    """

    instructions: list[Any] = Field(
        ...,
        description="Instruction list in wire form, e.g. [{'prompt': 'a cat'}, {'canvasSave': 'out.png'}].",
    )


class RunRequest(WorkflowRequest):
    """Request body for ``POST /api/workflows/run``.

    Attributes:
        enforce_validation: Refuse to run (HTTP 422) when validation reports
            errors.  Warnings never block.
        check_connection: Check the provider connection before running.  ``None`` uses
            the server's ``check_connection_before_run`` setting.
    """

    enforce_validation: bool = Field(
        default=True,
        description="Reject workflows with validation errors instead of running them.",
    )
    check_connection: bool | None = Field(
        default=None,
        description="Check the provider connection before running (default: server setting).",
    )
