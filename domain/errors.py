"""Sync error taxonomy.

Convention:
- ``PersistenceError``: a local durable write failed. Surfaced to the caller;
  the user action must be reported as failed, never silently queued.
- ``TransportError``: the server could not be reached or answered with a
  transient failure. Handled inside the sync transport and never surfaced to
  the user; the mutation log is left untouched.
- ``PushRejected``: the server refused one specific mutation for validation or
  authorization reasons. Not retried automatically.
- ``CursorDivergence``: the server does not recognise the pull cursor. Triggers
  a full resync.
- ``EntityValidationError``: entity kind, operation, fields or timestamp are
  malformed. Subclass of ``ValueError`` so the API layer maps it to 422.

A stale mutation losing the LWW comparison is *not* an error: it is reported
through ``MergeOutcome.stale``.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine errors."""


class PersistenceError(SyncError):
    """Raised when the local durable store cannot accept a write."""


class TransportError(SyncError):
    """Raised when a push or pull exchange fails for a transient reason."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PushRejected(SyncError):
    """Raised (or reported) when the server refuses a specific mutation."""

    def __init__(self, seq: int, entity: str, entity_id: str, reason: str) -> None:
        super().__init__(f"{entity} {entity_id} rejected: {reason}")
        self.seq = seq
        self.entity = entity
        self.entity_id = entity_id
        self.reason = reason


class CursorDivergence(SyncError):
    """Raised when the server has no record of the client's cursor."""


class EntityValidationError(ValueError):
    """Raised when a mutation's entity kind, op, fields or timestamp are invalid."""
