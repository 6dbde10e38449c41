"""Canonical digests of entity state, for drift detection between replicas."""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from domain.entities import EntityState


def state_digest(states: Iterable[EntityState]) -> str:
    """Compute a SHA-256 digest over the visible state of *states*.

    Only values take part, not field clocks: replicas record different origins
    for the same write. Order of *states* does not matter.
    """
    sha = hashlib.sha256()
    for state in sorted(states, key=lambda s: s.id):
        canonical = json.dumps(
            [state.id, state.fields, state.deleted_at],
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        sha.update(canonical.encode("utf-8"))
        sha.update(b"\n")
    return sha.hexdigest()
