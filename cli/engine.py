"""Sync engine: drives the mutation log against the server.

Phase one (local apply) already happened when a mutation was appended to the
log. This module runs phase two: push queued mutations, pull the change feed,
and recover from cursor divergence or drift by rebuilding from the server.

Local state changes only after a definitive server answer. Cancelling a cycle
while a request is in flight leaves the log, projection and cursor untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from domain.digest import state_digest
from domain.entities import EntityKind
from domain.errors import (
    CursorDivergence,
    EntityValidationError,
    PersistenceError,
    PushRejected,
    TransportError,
)
from domain.mutations import MutationRecord

if TYPE_CHECKING:
    from collections.abc import Callable

    from cli.local_store import LocalStore
    from cli.mutation_log import MutationLog
    from cli.transport import SyncTransport

logger = logging.getLogger(__name__)

CURSOR_KEY = "pull_cursor"
DIGEST_KEY_PREFIX = "verified_digest:"


@dataclass
class SyncReport:
    """What one sync cycle did."""

    pushed: int = 0
    rejected: list[PushRejected] = field(default_factory=list)
    pulled: int = 0
    resynced: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncEngine:
    """Pushes the mutation log and pulls the change feed for one device."""

    def __init__(
        self,
        store: LocalStore,
        log: MutationLog,
        transport: SyncTransport,
        *,
        push_batch: int = 100,
        on_rejected: Callable[[PushRejected], None] | None = None,
    ) -> None:
        self.store = store
        self.log = log
        self.transport = transport
        self.push_batch = push_batch
        self.on_rejected = on_rejected
        self._cycle_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def cursor(self) -> str | None:
        return self.store.read_meta(CURSOR_KEY)

    # ── Push ─────────────────────────────────────────

    async def push_pending(self) -> tuple[int, list[PushRejected]]:
        """Push queued mutations until none are left to push.

        Returns the number acknowledged and the rejections. Raises
        TransportError if the server cannot be reached; entries of an
        unanswered batch stay queued.
        """
        acknowledged = 0
        rejections: list[PushRejected] = []
        while True:
            batch = self.log.drain(self.push_batch)
            if not batch:
                break
            results = await self.transport.push([p.record.to_wire() for p in batch])

            for pending, result in zip(batch, results, strict=True):
                if result.get("id") != pending.record.id:
                    raise TransportError(
                        f"Push result for {result.get('id')!r} does not match "
                        f"queued mutation #{pending.seq} ({pending.record.id!r})"
                    )

            applied: list[int] = []
            for pending, result in zip(batch, results, strict=True):
                if result.get("applied"):
                    applied.append(pending.seq)
                    continue
                rejection = PushRejected(
                    pending.seq,
                    str(pending.record.entity),
                    pending.record.id,
                    str(result.get("reason") or "rejected"),
                )
                self.log.reject(pending.seq, rejection.reason)
                rejections.append(rejection)
                if self.on_rejected is not None:
                    self.on_rejected(rejection)

            acknowledged += self.log.acknowledge(applied)
        return acknowledged, rejections

    # ── Pull ─────────────────────────────────────────

    @staticmethod
    def _parse_feed(mutations: list[dict]) -> list[MutationRecord]:
        try:
            return [MutationRecord.from_feed(m) for m in mutations]
        except EntityValidationError as exc:
            raise TransportError(f"Malformed change-feed entry: {exc}") from exc

    async def pull_changes(self) -> int:
        """Apply change-feed pages from the stored cursor until caught up.

        Each page is applied together with its cursor in one local
        transaction. Raises CursorDivergence if the server rejects the cursor.
        """
        cursor = self.cursor
        applied = 0
        while True:
            page = await self.transport.pull(cursor)
            records = self._parse_feed(page.mutations)
            with self.store.transaction() as session:
                for record in records:
                    self.store.apply(session, record)
                self.store.set_meta(session, CURSOR_KEY, page.cursor)
            applied += len(records)
            cursor = page.cursor
            if not page.has_more:
                return applied

    # ── Cycle ────────────────────────────────────────

    async def sync_once(self) -> SyncReport:
        """Run one push-then-pull cycle.

        Transport failures end the cycle and are reported, not raised. Cursor
        divergence triggers a full resync.
        """
        report = SyncReport()
        async with self._cycle_lock:
            try:
                report.pushed, report.rejected = await self.push_pending()
                try:
                    report.pulled = await self.pull_changes()
                except CursorDivergence:
                    logger.warning("Pull cursor %r diverged; resyncing from scratch", self.cursor)
                    report.pulled = await self._resync()
                    report.resynced = True
            except TransportError as exc:
                logger.warning("Sync cycle interrupted: %s", exc)
                report.error = str(exc)
        logger.info(
            "Sync cycle: pushed=%d rejected=%d pulled=%d resynced=%s",
            report.pushed,
            len(report.rejected),
            report.pulled,
            report.resynced,
        )
        return report

    async def resync_from_scratch(self) -> int:
        """Rebuild the projection from the full change feed, then replay the log."""
        async with self._cycle_lock:
            return await self._resync()

    async def _resync(self) -> int:
        # Fetch everything before touching local state.
        cursor: str | None = None
        records: list[MutationRecord] = []
        while True:
            page = await self.transport.pull(cursor)
            records.extend(self._parse_feed(page.mutations))
            cursor = page.cursor
            if not page.has_more:
                break

        with self.store.transaction() as session:
            self.store.clear_entities(session)
            for record in records:
                self.store.apply(session, record)
            self.store.set_meta(session, CURSOR_KEY, cursor)
            self.log.replay(session)
        logger.info("Resynced %d change-feed entries up to cursor %s", len(records), cursor)
        return len(records)

    # ── Drift detection ──────────────────────────────

    def local_digests(self) -> dict[str, str]:
        """Per-kind digests of the local projection."""
        return {
            str(kind): state_digest(self.store.list_entities(kind, include_deleted=True))
            for kind in EntityKind
        }

    async def check_drift(self) -> bool:
        """Compare local and server digests; resync on mismatch.

        Only meaningful with an empty log (queued writes make the replicas
        differ legitimately) and a cursor equal to the server's head. Returns
        True when drift was found and repaired.
        """
        async with self._cycle_lock:
            if self.log.entries():
                logger.debug("Skipping drift check: mutation log is not empty")
                return False
            await self.pull_changes()
            snapshot = await self.transport.digest()
            if snapshot.cursor != self.cursor:
                logger.debug("Skipping drift check: server moved to %s", snapshot.cursor)
                return False

            local = self.local_digests()
            drifted = sorted(k for k, v in snapshot.digests.items() if local.get(k) != v)
            if not drifted:
                with self.store.transaction() as session:
                    for kind, value in local.items():
                        self.store.set_meta(session, DIGEST_KEY_PREFIX + kind, value)
                return False

            logger.warning("Local state drifted from server for %s; resyncing", ", ".join(drifted))
            await self._resync()
            return True

    # ── Background loop ──────────────────────────────

    def start(self, interval: float = 30.0) -> None:
        """Run sync cycles in the background every *interval* seconds or on trigger."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(interval), name="sync-engine")

    def trigger(self) -> None:
        """Wake the background loop now (e.g. connectivity came back)."""
        self._wakeup.set()

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self, interval: float) -> None:
        while True:
            self._wakeup.clear()
            try:
                await self.sync_once()
            except PersistenceError:
                logger.exception("Sync cycle could not write the local store")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
