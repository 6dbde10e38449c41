"""Conflict resolver: per-field last-write-wins merge of one mutation into one entity.

The same function runs on the server (merging device pushes) and on the device
(applying pulled changes and its own optimistic writes), so every replica
orders writes the same way.

Rules:
- Each field written by the record is compared against that field's clock
  ``(updated_at, origin)``. A newer record wins the field, an older one loses it.
  All fields of one record carry the record's single ``updated_at``.
- A field that was never written has no clock and accepts the incoming value.
- Equal timestamps are settled by the greater origin device id. Pulled changes
  carry the origin of the device that made the winning write, so a device
  settles ties exactly as the server did. An identical ``(updated_at, origin)``
  is the same write and never changes anything, which makes the merge
  idempotent.
- Deletes write ``deletedAt``; device upserts write ``deletedAt = None``. Changes
  pulled from the server name exactly the fields they wrote (see
  ``MutationRecord.effective_fields``).

Because every field converges to the greatest write that ever touched it, the
final state does not depend on the order in which records are applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from domain.entities import DELETED_AT, EntityState, FieldClock

if TYPE_CHECKING:
    from domain.mutations import MutationRecord


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merging one record into one entity.

    ``changed`` maps every field whose clock advanced to its new value, even when
    the value itself is unchanged; the new clock still has to reach other replicas.
    """

    state: EntityState
    changed: dict[str, Any] = field(default_factory=dict)
    created: bool = False

    @property
    def stale(self) -> bool:
        """True when the record lost on every field (a StaleDiscard)."""
        return not self.changed


def _incoming_wins(incoming: FieldClock, current: FieldClock | None) -> bool:
    if current is None:
        return True
    return (incoming.updated_at, incoming.origin) > (current.updated_at, current.origin)


def merge(current: EntityState | None, record: MutationRecord) -> MergeOutcome:
    """Merge *record* into *current* and return the resulting state.

    *current* is None when the entity does not exist yet; a delete of an unknown
    entity creates a tombstone so that an older upsert delivered later cannot
    resurrect it.
    """
    if current is None:
        current = EntityState(kind=record.entity, id=record.id)
        created = True
    else:
        created = False

    incoming_clock = FieldClock(updated_at=record.updated_at, origin=record.origin_device)
    fields = dict(current.fields)
    clocks = dict(current.clocks)
    deleted_at = current.deleted_at
    changed: dict[str, Any] = {}

    for name, value in record.effective_fields().items():
        if not _incoming_wins(incoming_clock, clocks.get(name)):
            continue
        clocks[name] = incoming_clock
        changed[name] = value
        if name == DELETED_AT:
            deleted_at = value
        else:
            fields[name] = value

    if not changed:
        return MergeOutcome(state=current)

    state = EntityState(
        kind=current.kind,
        id=current.id,
        fields=fields,
        clocks=clocks,
        deleted_at=deleted_at,
    )
    return MergeOutcome(state=state, changed=changed, created=created)
