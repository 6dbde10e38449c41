"""Local mutation log: durable, ordered queue of mutations awaiting the server.

Appending a mutation and applying it to the local projection happen in one
local transaction, so the projection never shows a write the log could lose.
Entries leave the log only when the server acknowledges them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update

from cli.clock import DeviceClock
from cli.models import LogEntry
from domain.entities import EntityKind, generate_entity_id, parse_entity_kind, validate_fields
from domain.errors import EntityValidationError
from domain.mutations import MutationOp, MutationRecord
from domain.timestamps import format_iso, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.orm import Session

    from cli.local_store import LocalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingMutation:
    """A log entry: local sequence number, the record, and its rejection state."""

    seq: int
    record: MutationRecord
    rejected_reason: str | None = None


def _entry_to_pending(entry: LogEntry) -> PendingMutation:
    return PendingMutation(
        seq=entry.seq,
        record=MutationRecord(
            entity=EntityKind(entry.entity),
            op=MutationOp(entry.op),
            id=entry.entity_id,
            updated_at=entry.updated_at,
            origin_device=entry.origin_device,
            fields=dict(entry.fields),
        ),
        rejected_reason=entry.rejected_reason,
    )


class MutationLog:
    """Device mutation queue bound to one local store and one device id."""

    def __init__(
        self,
        store: LocalStore,
        device_id: str,
        clock: DeviceClock | None = None,
    ) -> None:
        self.store = store
        self.device_id = device_id
        self.clock = clock or DeviceClock()

    # ── Writing ──────────────────────────────────────

    def _append(self, session: Session, record: MutationRecord) -> int:
        entry = LogEntry(
            entity=str(record.entity),
            op=str(record.op),
            entity_id=record.id,
            fields=dict(record.fields),
            updated_at=record.updated_at,
            origin_device=record.origin_device,
            created_at=format_iso(now_utc()),
        )
        session.add(entry)
        session.flush()
        self.store.apply(session, record)
        return entry.seq

    def append(self, record: MutationRecord) -> int:
        """Persist *record* at the tail and apply it to the projection.

        *record* must come from this device and be stamped later than anything
        the device clock has issued; otherwise EntityValidationError is raised.
        Returns the log sequence number. Raises PersistenceError when the
        local store refuses the write, in which case nothing was recorded.
        """
        if record.origin_device != self.device_id:
            raise EntityValidationError(
                f"Record from {record.origin_device!r} cannot be queued by {self.device_id!r}"
            )
        with self.store.transaction() as session:
            self.clock.advance_to(session, record.updated_at)
            seq = self._append(session, record)
        logger.debug("Queued %s %s %s as #%d", record.op, record.entity, record.id, seq)
        return seq

    def record_upsert(
        self,
        entity: EntityKind | str,
        entity_id: str | None,
        fields: dict[str, Any],
    ) -> MutationRecord:
        """Validate *fields*, stamp them with the device clock and queue an upsert.

        A missing *entity_id* mints a new one.
        """
        kind = parse_entity_kind(str(entity))
        clean = validate_fields(kind, fields)
        with self.store.transaction() as session:
            record = MutationRecord(
                entity=kind,
                op=MutationOp.UPSERT,
                id=entity_id or generate_entity_id(),
                updated_at=self.clock.issue(session),
                origin_device=self.device_id,
                fields=clean,
            )
            self._append(session, record)
        return record

    def record_delete(self, entity: EntityKind | str, entity_id: str) -> MutationRecord:
        """Queue a soft delete stamped with the device clock."""
        kind = parse_entity_kind(str(entity))
        with self.store.transaction() as session:
            record = MutationRecord(
                entity=kind,
                op=MutationOp.DELETE,
                id=entity_id,
                updated_at=self.clock.issue(session),
                origin_device=self.device_id,
            )
            self._append(session, record)
        return record

    # ── Draining ─────────────────────────────────────

    def drain(self, max_batch: int) -> list[PendingMutation]:
        """Return up to *max_batch* pushable entries in insertion order.

        Entries stay in the log until acknowledged. Rejected entries are skipped.
        """
        with self.store.transaction() as session:
            stmt = (
                select(LogEntry)
                .where(LogEntry.rejected_reason.is_(None))
                .order_by(LogEntry.seq)
                .limit(max_batch)
            )
            return [_entry_to_pending(e) for e in session.scalars(stmt)]

    def acknowledge(self, seqs: Iterable[int]) -> int:
        """Remove acknowledged entries. Unknown sequence numbers are ignored."""
        wanted = list(seqs)
        if not wanted:
            return 0
        with self.store.transaction() as session:
            result = session.execute(delete(LogEntry).where(LogEntry.seq.in_(wanted)))
            removed = result.rowcount or 0
        logger.debug("Acknowledged %d of %d log entries", removed, len(wanted))
        return removed

    def reject(self, seq: int, reason: str) -> None:
        """Mark an entry as refused by the server; it is no longer drained."""
        with self.store.transaction() as session:
            session.execute(
                update(LogEntry).where(LogEntry.seq == seq).values(rejected_reason=reason)
            )
        logger.warning("Mutation #%d rejected by server: %s", seq, reason)

    def retry(self, seqs: Iterable[int]) -> None:
        """Clear the rejection mark so the entries are pushed again."""
        wanted = list(seqs)
        if not wanted:
            return
        with self.store.transaction() as session:
            session.execute(
                update(LogEntry).where(LogEntry.seq.in_(wanted)).values(rejected_reason=None)
            )

    def discard(self, seqs: Iterable[int]) -> int:
        """Drop rejected entries the user gave up on.

        Their optimistic effect stays in the projection until the next resync.
        """
        wanted = list(seqs)
        if not wanted:
            return 0
        with self.store.transaction() as session:
            result = session.execute(
                delete(LogEntry).where(
                    LogEntry.seq.in_(wanted), LogEntry.rejected_reason.is_not(None)
                )
            )
            return result.rowcount or 0

    # ── Inspection ───────────────────────────────────

    def rejected(self) -> list[PendingMutation]:
        """Entries refused by the server, oldest first."""
        with self.store.transaction() as session:
            stmt = (
                select(LogEntry)
                .where(LogEntry.rejected_reason.is_not(None))
                .order_by(LogEntry.seq)
            )
            return [_entry_to_pending(e) for e in session.scalars(stmt)]

    def pending_count(self) -> int:
        """Number of entries still waiting to be pushed (rejected ones excluded)."""
        with self.store.transaction() as session:
            stmt = (
                select(func.count())
                .select_from(LogEntry)
                .where(LogEntry.rejected_reason.is_(None))
            )
            return int(session.scalar(stmt) or 0)

    def entries(self) -> list[PendingMutation]:
        """Every entry in the log, rejected or not, in insertion order."""
        with self.store.transaction() as session:
            return self._entries(session)

    @staticmethod
    def _entries(session: Session) -> list[PendingMutation]:
        stmt = select(LogEntry).order_by(LogEntry.seq)
        return [_entry_to_pending(e) for e in session.scalars(stmt)]

    # ── Recovery ─────────────────────────────────────

    def replay(self, session: Session | None = None) -> int:
        """Re-apply every log entry, in order, to the projection.

        Pass *session* to replay inside a caller's transaction (e.g. right after
        a resync rebuilt the server-sourced state). Returns the number of
        entries replayed.
        """
        if session is not None:
            return self._replay(session)
        with self.store.transaction() as own:
            return self._replay(own)

    def _replay(self, session: Session) -> int:
        entries = self._entries(session)
        for pending in entries:
            self.store.apply(session, pending.record)
        if entries:
            logger.info("Replayed %d queued mutations over the projection", len(entries))
        return len(entries)
