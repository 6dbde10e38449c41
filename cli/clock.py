"""Device clock: wall-clock milliseconds that never repeat or go backwards."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cli.local_store import LocalStore
from domain.errors import EntityValidationError
from domain.timestamps import now_ms

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.orm import Session

CLOCK_KEY = "clock_last_issued"


class DeviceClock:
    """Issues ``max(wall clock, last issued + 1)``.

    The last issued value is persisted in the same transaction as the write it
    stamps, so timestamps stay strictly increasing across restarts and wall
    clock adjustments.
    """

    def __init__(self, wall: Callable[[], int] = now_ms) -> None:
        self._wall = wall

    def issue(self, session: Session) -> int:
        last = int(LocalStore.get_meta(session, CLOCK_KEY) or 0)
        issued = max(self._wall(), last + 1)
        LocalStore.set_meta(session, CLOCK_KEY, str(issued))
        return issued

    def advance_to(self, session: Session, updated_at: int) -> None:
        """Accept a timestamp stamped outside this clock.

        It must be later than everything issued so far; later issues continue
        after it.
        """
        last = int(LocalStore.get_meta(session, CLOCK_KEY) or 0)
        if updated_at <= last:
            raise EntityValidationError(
                f"updatedAt {updated_at} is not after the device clock ({last})"
            )
        LocalStore.set_meta(session, CLOCK_KEY, str(updated_at))
