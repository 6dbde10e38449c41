"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (corrupt stored rows, config validation, etc.). The global handler logs the
  full message at ERROR and returns a generic "Internal server error" (500).
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (bad timestamps, unknown entity kinds, etc.). The global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``CursorDivergenceError``: a pull cursor the server has no record of. The
  handler returns 409 ``cursor_divergence`` so devices start a full resync.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class CursorDivergenceError(Exception):
    """Raised when a pull cursor belongs to another epoch or lies beyond the feed head."""
