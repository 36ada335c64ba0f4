"""Pydantic request models for the Photoforge API.

Field names follow the camelCase JSON the web frontend sends; Python code
uses the snake_case attribute names.  Shape is checked here, while content
rules (URL safety, batch size, prompt length) are enforced by
:mod:`photoforge.core.validation` so that every caller of the coordinator
gets the same checks.

Models
------
ProcessPhotosRequest
    Payload for ``POST /api/process-photos``.
GroupNameRequest
    Payload for ``PATCH /api/jobs/{id}``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProcessPhotosRequest(BaseModel):
    """Request body for the ``POST /api/process-photos`` endpoint.

    Attributes:
        file_urls: HTTPS URLs of the source photos (1–30).
        prompt: Enhancement instruction applied to every photo.
        group_name: Optional label shown on the dashboard (≤ 140 chars).
    """

    model_config = ConfigDict(populate_by_name=True)

    file_urls: list[str] = Field(
        ...,
        alias="fileUrls",
        description="HTTPS URLs of the source photos.",
    )
    prompt: str = Field(
        ...,
        description="Enhancement instruction applied to every photo.",
    )
    group_name: str | None = Field(
        default=None,
        alias="groupName",
        description="Optional job label (140 characters or less).",
    )


class GroupNameRequest(BaseModel):
    """Request body for the ``PATCH /api/jobs/{id}`` endpoint.

    An empty string clears the label.
    """

    model_config = ConfigDict(populate_by_name=True)

    group_name: str = Field(
        ...,
        alias="groupName",
        description="New job label; empty string clears it.",
    )
