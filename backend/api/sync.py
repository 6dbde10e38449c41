"""Sync API endpoints: push device mutations, pull the change feed, compare digests."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_device_id,
    get_entity_locks,
    get_session,
    get_settings,
    require_auth,
)
from backend.config import Settings
from backend.models.user import User
from backend.schemas.sync import (
    DigestResponse,
    FeedMutation,
    PullResponse,
    PushRequest,
    PushResponse,
    PushResult,
)
from backend.services.lock_service import KeyedLocks
from backend.services.sync_service import apply_push, compute_digests, fetch_changes
from domain.timestamps import format_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post(
    "/push",
    response_model=PushResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def push(
    body: PushRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    locks: Annotated[KeyedLocks, Depends(get_entity_locks)],
    device_id: Annotated[str, Depends(get_device_id)],
    user: Annotated[User, Depends(require_auth)],
) -> PushResponse:
    """Merge an ordered batch of device mutations; one result per mutation."""
    if len(body.mutations) > settings.sync_max_push_batch:
        raise HTTPException(
            status_code=413,
            detail=f"Push batch exceeds {settings.sync_max_push_batch} mutations",
        )

    outcomes = await apply_push(
        session,
        user.id,
        device_id,
        body.mutations,
        locks=locks,
        max_clock_skew_seconds=settings.sync_max_clock_skew_seconds,
    )
    return PushResponse(
        results=[
            PushResult(
                id=o.id,
                applied=o.applied,
                resulting_updated_at=(
                    format_timestamp(o.resulting_updated_at)
                    if o.resulting_updated_at is not None
                    else None
                ),
                reason=o.reason,
            )
            for o in outcomes
        ]
    )


@router.get("/pull", response_model=PullResponse, response_model_by_alias=True)
async def pull(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    user: Annotated[User, Depends(require_auth)],
    since: Annotated[str | None, Query(max_length=200)] = None,
) -> PullResponse:
    """Return the change-feed page after the ``since`` cursor."""
    page = await fetch_changes(session, user.id, since, settings.sync_pull_page_size)
    logger.debug(
        "Pull for user %s since %r: %d changes, has_more=%s",
        user.id,
        since,
        len(page.mutations),
        page.has_more,
    )
    return PullResponse(
        mutations=[FeedMutation.model_validate(m) for m in page.mutations],
        cursor=page.cursor,
        has_more=page.has_more,
    )


@router.get("/digest", response_model=DigestResponse)
async def digest(
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> DigestResponse:
    """Per-kind digests of the user's server state, for drift detection."""
    digests, cursor = await compute_digests(session, user.id)
    return DigestResponse(digests=digests, cursor=cursor)
