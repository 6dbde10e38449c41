"""Entity model: kinds, per-kind field schemas, and the stored entity state."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from domain.errors import EntityValidationError
from domain.timestamps import parse_timestamp

DELETED_AT = "deletedAt"

EntityId = Annotated[str, Field(min_length=1, max_length=128)]


class EntityKind(StrEnum):
    """Entity kinds that participate in sync."""

    TASK = "Task"
    PROJECT = "Project"
    GROUP = "Group"
    CHECK_IN = "CheckIn"
    TIME_ENTRY = "TimeEntry"
    SPRINT_SESSION = "SprintSession"
    HABIT = "Habit"
    HABIT_LOG = "HabitLog"


def generate_entity_id() -> str:
    """Mint a collision-resistant id on the device, without a server round trip."""
    return secrets.token_urlsafe(16)


# ── Per-kind field schemas ───────────────────────────


class EntityFields(BaseModel):
    """Base for per-kind field whitelists.

    Every field is optional (mutations are partial) and nullable. Wire names
    are camelCase; unknown fields are rejected.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        extra="forbid",
        str_strip_whitespace=True,
    )


def _check_timestamp(value: str) -> str:
    parse_timestamp(value)
    return value


Timestamp = Annotated[str, Field(min_length=1, max_length=64), AfterValidator(_check_timestamp)]


class TaskFields(EntityFields):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=20_000)
    project_id: EntityId | None = None
    group_id: EntityId | None = None
    status: Literal["todo", "in_progress", "done"] | None = None
    priority: int | None = Field(default=None, ge=0, le=3)
    due_at: Timestamp | None = None
    completed_at: Timestamp | None = None
    is_top3: bool | None = None
    estimate_minutes: int | None = Field(default=None, ge=0)
    sort_order: float | None = None


class ProjectFields(EntityFields):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    color: str | None = Field(default=None, max_length=32)
    archived: bool | None = None
    sort_order: float | None = None


class GroupFields(EntityFields):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    project_id: EntityId | None = None
    sort_order: float | None = None


class CheckInFields(EntityFields):
    task_id: EntityId | None = None
    note: str | None = Field(default=None, max_length=5_000)
    mood: int | None = Field(default=None, ge=1, le=5)
    checked_in_at: Timestamp | None = None


class TimeEntryFields(EntityFields):
    task_id: EntityId | None = None
    started_at: Timestamp | None = None
    ended_at: Timestamp | None = None
    duration_seconds: int | None = Field(default=None, ge=0)
    note: str | None = Field(default=None, max_length=5_000)


class SprintSessionFields(EntityFields):
    task_id: EntityId | None = None
    started_at: Timestamp | None = None
    ended_at: Timestamp | None = None
    planned_minutes: int | None = Field(default=None, ge=1)
    status: Literal["running", "completed", "abandoned"] | None = None


class HabitFields(EntityFields):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    cadence: Literal["daily", "weekly"] | None = None
    target_per_period: int | None = Field(default=None, ge=1)
    archived: bool | None = None


class HabitLogFields(EntityFields):
    habit_id: EntityId | None = None
    logged_on: date | None = None
    count: int | None = Field(default=None, ge=0)


FIELD_SCHEMAS: dict[EntityKind, type[EntityFields]] = {
    EntityKind.TASK: TaskFields,
    EntityKind.PROJECT: ProjectFields,
    EntityKind.GROUP: GroupFields,
    EntityKind.CHECK_IN: CheckInFields,
    EntityKind.TIME_ENTRY: TimeEntryFields,
    EntityKind.SPRINT_SESSION: SprintSessionFields,
    EntityKind.HABIT: HabitFields,
    EntityKind.HABIT_LOG: HabitLogFields,
}


def parse_entity_kind(value: str) -> EntityKind:
    """Return the EntityKind named by *value* or raise EntityValidationError."""
    try:
        return EntityKind(value)
    except ValueError as exc:
        raise EntityValidationError(f"Unknown entity kind: {value!r}") from exc


def validate_fields(kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
    """Whitelist and coerce *data* for *kind*.

    Returns only the fields present in *data*, keyed by their camelCase wire
    names, with JSON-compatible values.
    """
    if not isinstance(data, dict):
        raise EntityValidationError("data must be an object")
    if DELETED_AT in data:
        raise EntityValidationError(f"{DELETED_AT} cannot be set by upsert; use delete")
    schema = FIELD_SCHEMAS[kind]
    try:
        parsed = schema.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
            for err in exc.errors()
        )
        raise EntityValidationError(f"Invalid {kind} fields: {problems}") from exc
    return parsed.model_dump(mode="json", by_alias=True, exclude_unset=True)


# ── Stored state ─────────────────────────────────────


@dataclass(frozen=True)
class FieldClock:
    """Timestamp and origin of the last write to one field."""

    updated_at: int
    origin: str

    def to_json(self) -> list[Any]:
        return [self.updated_at, self.origin]

    @classmethod
    def from_json(cls, raw: list[Any]) -> FieldClock:
        return cls(updated_at=int(raw[0]), origin=str(raw[1]))


@dataclass(frozen=True)
class EntityState:
    """Persisted state of one entity, on either the device or the server.

    ``fields`` holds entity-specific values. ``deleted_at`` is clocked like a
    field under the name ``deletedAt``. ``updated_at`` is the newest field clock.
    """

    kind: EntityKind
    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    clocks: dict[str, FieldClock] = field(default_factory=dict)
    deleted_at: int | None = None

    @property
    def updated_at(self) -> int:
        return max((c.updated_at for c in self.clocks.values()), default=0)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def clocks_to_json(self) -> dict[str, list[Any]]:
        return {name: clock.to_json() for name, clock in self.clocks.items()}

    @staticmethod
    def clocks_from_json(raw: dict[str, list[Any]]) -> dict[str, FieldClock]:
        return {name: FieldClock.from_json(value) for name, value in raw.items()}

    def to_dict(self) -> dict[str, Any]:
        """Readable projection of the entity, as consumed by UI layers."""
        return {
            "id": self.id,
            "entity": str(self.kind),
            **self.fields,
            "updatedAt": self.updated_at,
            DELETED_AT: self.deleted_at,
        }
