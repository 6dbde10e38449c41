"""Sync service: push merge, change feed, cursors, and state digests."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from backend.exceptions import CursorDivergenceError, InternalServerError
from backend.models.sync import ChangeFeedEntry, EntityRow, FeedHead, ServerMeta
from domain.digest import state_digest
from domain.entities import DELETED_AT, EntityKind, EntityState
from domain.errors import EntityValidationError
from domain.mutations import MutationOp, MutationRecord
from domain.resolver import merge
from domain.timestamps import format_iso, format_timestamp, now_ms, now_utc

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.services.lock_service import KeyedLocks

logger = logging.getLogger(__name__)

EPOCH_KEY = "epoch"
REASON_FORBIDDEN = "forbidden"


@dataclass
class PushOutcome:
    """Server decision for one pushed mutation."""

    id: str
    applied: bool
    resulting_updated_at: int | None = None
    reason: str | None = None


@dataclass
class FeedPage:
    """A page of change-feed entries and the cursor after it."""

    mutations: list[dict[str, Any]] = field(default_factory=list)
    cursor: str = ""
    has_more: bool = False


# ── Epoch & cursors ──────────────────────────────────


async def ensure_server_epoch(session: AsyncSession) -> str:
    """Return the data-set epoch, creating it on first start."""
    meta = await session.get(ServerMeta, EPOCH_KEY)
    if meta is not None:
        return meta.value
    epoch = secrets.token_hex(8)
    session.add(ServerMeta(key=EPOCH_KEY, value=epoch))
    await session.commit()
    logger.info("Initialized server epoch %s", epoch)
    return epoch


async def get_server_epoch(session: AsyncSession) -> str:
    """Return the data-set epoch. It must have been created at startup."""
    meta = await session.get(ServerMeta, EPOCH_KEY)
    if meta is None:
        raise InternalServerError("Server epoch is not initialized")
    return meta.value


def format_cursor(epoch: str, seq: int) -> str:
    """Format a pull cursor."""
    return f"{epoch}:{seq}"


def parse_cursor(cursor: str | None, epoch: str) -> int:
    """Return the feed sequence encoded in *cursor*.

    An empty cursor means "from the beginning". Cursors from another epoch or
    that cannot be parsed raise CursorDivergenceError.
    """
    if not cursor:
        return 0
    cursor_epoch, sep, raw_seq = cursor.rpartition(":")
    if not sep or cursor_epoch != epoch or not raw_seq.isdigit():
        raise CursorDivergenceError(f"Unknown cursor {cursor!r}")
    return int(raw_seq)


# ── Row conversion ───────────────────────────────────


def row_to_state(row: EntityRow) -> EntityState:
    """Convert a stored entity row to resolver state."""
    try:
        return EntityState(
            kind=EntityKind(row.entity),
            id=row.entity_id,
            fields=dict(row.fields),
            clocks=EntityState.clocks_from_json(row.field_clocks),
            deleted_at=row.deleted_at,
        )
    except (ValueError, TypeError, IndexError) as exc:
        raise InternalServerError(
            f"Corrupt entity row {row.entity}/{row.entity_id}: {exc}"
        ) from exc


def _write_state(row: EntityRow, state: EntityState) -> None:
    row.fields = dict(state.fields)
    row.field_clocks = state.clocks_to_json()
    row.updated_at = state.updated_at
    row.deleted_at = state.deleted_at


async def ensure_feed_head(session: AsyncSession, user_id: int) -> None:
    """Create the user's feed counter row if missing."""
    if await session.get(FeedHead, user_id) is not None:
        return
    session.add(FeedHead(user_id=user_id, last_seq=0))
    try:
        await session.commit()
    except IntegrityError:
        # Created concurrently
        await session.rollback()


async def _claim_next_seq(session: AsyncSession, user_id: int) -> int | None:
    # Writing the counter first takes the user's write lock for the rest of the
    # transaction, so feed sequence order equals commit order.
    result = await session.execute(
        update(FeedHead)
        .where(FeedHead.user_id == user_id)
        .values(last_seq=FeedHead.last_seq + 1)
        .returning(FeedHead.last_seq)
    )
    return result.scalar_one_or_none()


# ── Push ─────────────────────────────────────────────


def _feed_op(changed: Mapping[str, Any]) -> MutationOp:
    if changed.get(DELETED_AT) is not None:
        return MutationOp.DELETE
    return MutationOp.UPSERT


async def _apply_record(
    session: AsyncSession,
    user_id: int,
    record: MutationRecord,
) -> PushOutcome:
    seq = await _claim_next_seq(session, user_id)
    if seq is None:
        await session.rollback()
        await ensure_feed_head(session, user_id)
        seq = await _claim_next_seq(session, user_id)
        if seq is None:
            raise InternalServerError(f"Feed head missing for user {user_id}")

    stmt = (
        select(EntityRow)
        .where(EntityRow.entity == str(record.entity), EntityRow.entity_id == record.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is not None and row.owner_id != user_id:
        await session.rollback()
        logger.warning(
            "User %s pushed to %s %s owned by another user", user_id, record.entity, record.id
        )
        return PushOutcome(id=record.id, applied=False, reason=REASON_FORBIDDEN)

    current = row_to_state(row) if row is not None else None
    outcome = merge(current, record)
    if outcome.stale:
        # Nothing written: give the claimed sequence back.
        await session.rollback()
        logger.debug("Stale %s for %s %s discarded", record.op, record.entity, record.id)
        return PushOutcome(
            id=record.id,
            applied=True,
            resulting_updated_at=outcome.state.updated_at,
        )

    if row is None:
        row = EntityRow(entity=str(record.entity), entity_id=record.id, owner_id=user_id)
        session.add(row)
    _write_state(row, outcome.state)

    op = _feed_op(outcome.changed)
    data = {} if op is MutationOp.DELETE else dict(outcome.changed)
    session.add(
        ChangeFeedEntry(
            user_id=user_id,
            seq=seq,
            entity=str(record.entity),
            entity_id=record.id,
            op=str(op),
            data=data,
            updated_at=record.updated_at,
            origin_device=record.origin_device,
            recorded_at=format_iso(now_utc()),
        )
    )
    await session.commit()
    return PushOutcome(
        id=record.id,
        applied=True,
        resulting_updated_at=outcome.state.updated_at,
    )


async def apply_push(
    session: AsyncSession,
    user_id: int,
    device_id: str,
    mutations: Sequence[Mapping[str, Any]],
    *,
    locks: KeyedLocks,
    max_clock_skew_seconds: int,
) -> list[PushOutcome]:
    """Merge pushed mutations into the user's server state, in order.

    Each record is resolved in its own transaction while holding the
    per-entity lock. Results are aligned by position with *mutations*.
    Validation and ownership failures are reported per record; database
    errors propagate, leaving earlier records of the batch committed.
    """
    results: list[PushOutcome] = []
    applied = rejected = 0
    for raw in mutations:
        raw_id = raw.get("id")
        try:
            record = MutationRecord.from_wire(raw, origin_device=device_id)
        except EntityValidationError as exc:
            results.append(PushOutcome(id=str(raw_id or ""), applied=False, reason=str(exc)))
            rejected += 1
            continue

        horizon = now_ms() + max_clock_skew_seconds * 1000
        if record.updated_at > horizon:
            results.append(
                PushOutcome(
                    id=record.id,
                    applied=False,
                    reason="updatedAt is too far in the future",
                )
            )
            rejected += 1
            continue

        async with locks.hold((str(record.entity), record.id)):
            try:
                outcome = await _apply_record(session, user_id, record)
            except IntegrityError:
                # Another user created the same id concurrently; resolve again.
                await session.rollback()
                outcome = await _apply_record(session, user_id, record)
        results.append(outcome)
        if outcome.applied:
            applied += 1
        else:
            rejected += 1

    logger.info(
        "Push from device %s (user %s): %d mutations, %d applied, %d rejected",
        device_id,
        user_id,
        len(mutations),
        applied,
        rejected,
    )
    return results


# ── Pull ─────────────────────────────────────────────


def feed_entry_to_wire(entry: ChangeFeedEntry) -> dict[str, Any]:
    """Serialize a change-feed entry to the pull mutation shape."""
    return {
        "entity": entry.entity,
        "op": entry.op,
        "id": entry.entity_id,
        "data": dict(entry.data),
        "updatedAt": format_timestamp(entry.updated_at),
        "originDevice": entry.origin_device,
    }


async def fetch_changes(
    session: AsyncSession,
    user_id: int,
    since: str | None,
    limit: int,
) -> FeedPage:
    """Return the user's feed entries after *since*, at most *limit* of them."""
    epoch = await get_server_epoch(session)
    after = parse_cursor(since, epoch)
    head = await session.get(FeedHead, user_id, populate_existing=True)
    last_seq = head.last_seq if head is not None else 0
    if after > last_seq:
        raise CursorDivergenceError(f"Cursor {since!r} is beyond feed head {last_seq}")

    stmt = (
        select(ChangeFeedEntry)
        .where(ChangeFeedEntry.user_id == user_id, ChangeFeedEntry.seq > after)
        .order_by(ChangeFeedEntry.seq)
        .limit(limit + 1)
    )
    entries = list((await session.execute(stmt)).scalars().all())
    has_more = len(entries) > limit
    entries = entries[:limit]
    next_seq = entries[-1].seq if entries else after
    return FeedPage(
        mutations=[feed_entry_to_wire(e) for e in entries],
        cursor=format_cursor(epoch, next_seq),
        has_more=has_more,
    )


# ── Digest ───────────────────────────────────────────


async def compute_digests(session: AsyncSession, user_id: int) -> tuple[dict[str, str], str]:
    """Return per-kind state digests for *user* and the cursor they correspond to."""
    epoch = await get_server_epoch(session)
    head = await session.get(FeedHead, user_id, populate_existing=True)
    cursor = format_cursor(epoch, head.last_seq if head is not None else 0)

    stmt = select(EntityRow).where(EntityRow.owner_id == user_id)
    by_kind: dict[str, list[EntityState]] = {str(kind): [] for kind in EntityKind}
    for row in (await session.execute(stmt)).scalars():
        state = row_to_state(row)
        by_kind[str(state.kind)].append(state)
    return {kind: state_digest(states) for kind, states in by_kind.items()}, cursor
