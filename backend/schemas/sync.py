"""Sync wire schemas.

Wire names are camelCase. Pushed mutations are accepted as raw objects and
validated one by one by the sync service, so a single bad record is rejected
on its own instead of failing the whole batch.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for camelCase wire models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushRequest(WireModel):
    """Ordered batch of mutations drained from a device's log."""

    mutations: list[dict[str, Any]] = Field(max_length=10_000)


class PushResult(WireModel):
    """Outcome for one pushed mutation, aligned by position with the request."""

    id: str
    applied: bool
    resulting_updated_at: str | None = None
    reason: str | None = None


class PushResponse(WireModel):
    """Push response."""

    ok: bool = True
    results: list[PushResult]


class FeedMutation(WireModel):
    """One change-feed entry: exactly the fields one server write changed."""

    entity: str
    op: str
    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: str
    origin_device: str


class PullResponse(WireModel):
    """A page of the user's change feed."""

    mutations: list[FeedMutation]
    cursor: str
    has_more: bool = False


class DigestResponse(WireModel):
    """Per-kind digests of the user's server state, at ``cursor``."""

    digests: dict[str, str]
    cursor: str
