"""Mutation Record: the immutable unit of change exchanged by devices and server."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from domain.entities import DELETED_AT, EntityKind, parse_entity_kind, validate_fields
from domain.errors import EntityValidationError
from domain.timestamps import format_timestamp, parse_timestamp

if TYPE_CHECKING:
    from collections.abc import Mapping


class MutationOp(StrEnum):
    """Mutation operation."""

    UPSERT = "upsert"
    DELETE = "delete"


def parse_op(value: str) -> MutationOp:
    """Return the MutationOp named by *value* or raise EntityValidationError."""
    try:
        return MutationOp(value)
    except ValueError as exc:
        raise EntityValidationError(f"Unknown op: {value!r}") from exc


@dataclass(frozen=True)
class MutationRecord:
    """One create/update/delete intent.

    ``fields`` is present for upserts and ignored for deletes. ``updated_at`` is
    epoch milliseconds from the originating device's clock. ``exact`` marks a
    change served by the server's change feed: its fields are exactly what the
    server wrote, ``deletedAt`` included, with nothing implied.
    """

    entity: EntityKind
    op: MutationOp
    id: str
    updated_at: int
    origin_device: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    exact: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise EntityValidationError("Mutation id must be non-empty")
        # Freeze the mapping so an appended record cannot be mutated in place.
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def effective_fields(self) -> dict[str, Any]:
        """Fields this record writes, including the soft-delete marker.

        A delete writes ``deletedAt`` at the record's timestamp. A device upsert
        writes its fields plus ``deletedAt = None``, so a newer upsert un-deletes
        and an older one cannot.
        """
        if self.op is MutationOp.DELETE:
            return {DELETED_AT: self.updated_at}
        if self.exact:
            return dict(self.fields)
        return {**self.fields, DELETED_AT: None}

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the ``/sync/push`` mutation shape."""
        wire: dict[str, Any] = {
            "entity": str(self.entity),
            "op": str(self.op),
            "id": self.id,
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.op is MutationOp.UPSERT:
            wire["data"] = dict(self.fields)
        return wire

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any], *, origin_device: str) -> MutationRecord:
        """Build a device record from a pushed wire mutation.

        Raises EntityValidationError for unknown kinds/ops, bad ids or
        timestamps, and fields outside the kind's whitelist.
        """
        kind = parse_entity_kind(str(raw.get("entity", "")))
        op = parse_op(str(raw.get("op", "")))
        entity_id = raw.get("id")
        if not isinstance(entity_id, str) or not entity_id or len(entity_id) > 128:
            raise EntityValidationError("id must be a non-empty string of at most 128 chars")
        updated_at = parse_timestamp(raw.get("updatedAt", ""))

        fields: dict[str, Any] = {}
        if op is MutationOp.UPSERT:
            fields = validate_fields(kind, raw.get("data") or {})
        return cls(
            entity=kind,
            op=op,
            id=entity_id,
            updated_at=updated_at,
            origin_device=origin_device,
            fields=fields,
        )

    @classmethod
    def from_feed(cls, raw: Mapping[str, Any]) -> MutationRecord:
        """Build a record from a pulled change-feed entry.

        Feed entries were validated when the server accepted them, so fields are
        taken as-is. ``originDevice`` names the device whose write the server
        kept, which lets the device settle timestamp ties the way the server did.
        """
        op = parse_op(str(raw.get("op", "")))
        origin_device = raw.get("originDevice")
        if not isinstance(origin_device, str) or not origin_device:
            raise EntityValidationError("Change-feed entry has no originDevice")
        return cls(
            entity=parse_entity_kind(str(raw.get("entity", ""))),
            op=op,
            id=str(raw.get("id", "")),
            updated_at=parse_timestamp(raw.get("updatedAt", "")),
            origin_device=origin_device,
            fields=dict(raw.get("data") or {}) if op is MutationOp.UPSERT else {},
            exact=True,
        )
