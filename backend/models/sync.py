"""Server-side sync models: entity rows, per-user change feed, and server metadata."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class EntityRow(Base):
    """Current merged state of one entity, with per-field clocks.

    Entity ids are minted by devices and globally unique, so the key is
    ``(entity, entity_id)``; ``owner_id`` scopes access.
    """

    __tablename__ = "entities"

    entity: Mapped[str] = mapped_column(String(32), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    field_clocks: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deleted_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("ix_entities_owner_entity", "owner_id", "entity"),)


class ChangeFeedEntry(Base):
    """One state change recorded by the server, served to devices by pull."""

    __tablename__ = "change_feed"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    entity: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    op: Mapped[str] = mapped_column(String(16), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    origin_device: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[str] = mapped_column(Text, nullable=False)


class FeedHead(Base):
    """Per-user change-feed counter. Locking this row serializes feed appends."""

    __tablename__ = "feed_heads"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    last_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class ServerMeta(Base):
    """Key/value server metadata (e.g. the data-set epoch used in cursors)."""

    __tablename__ = "server_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
