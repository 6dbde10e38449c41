"""Local durable store: SQLite through SQLAlchemy, one transaction per user action.

Everything that must survive a crash together (a log entry and its projection
update, a pulled page and the cursor after it) is written inside a single
``LocalStore.transaction()`` block.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cli.models import DeviceMeta, LocalBase, LocalEntity
from domain.entities import EntityKind, EntityState
from domain.errors import PersistenceError
from domain.resolver import MergeOutcome, merge

if TYPE_CHECKING:
    from collections.abc import Iterator

    from domain.mutations import MutationRecord

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5000


def _set_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


class LocalStore:
    """Device database holding the mutation log, the projection and sync metadata."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(f"sqlite:///{self.path}")
        event.listen(self._engine, "connect", _set_sqlite_pragmas)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False)
        try:
            LocalBase.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Cannot open local store at {self.path}: {exc}") from exc

    def close(self) -> None:
        """Release database connections."""
        self._engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session whose work commits atomically on exit.

        Any database failure rolls the whole block back and is raised as
        PersistenceError.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Local store transaction failed: %s", exc)
            raise PersistenceError(f"Local store write failed: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Projection ───────────────────────────────────

    @staticmethod
    def load_entity(session: Session, kind: EntityKind, entity_id: str) -> EntityState | None:
        row = session.get(LocalEntity, (str(kind), entity_id))
        if row is None:
            return None
        return EntityState(
            kind=kind,
            id=entity_id,
            fields=dict(row.fields),
            clocks=EntityState.clocks_from_json(row.field_clocks),
            deleted_at=row.deleted_at,
        )

    @staticmethod
    def save_entity(session: Session, state: EntityState) -> None:
        row = session.get(LocalEntity, (str(state.kind), state.id))
        if row is None:
            row = LocalEntity(entity=str(state.kind), entity_id=state.id)
            session.add(row)
        row.fields = dict(state.fields)
        row.field_clocks = state.clocks_to_json()
        row.updated_at = state.updated_at
        row.deleted_at = state.deleted_at

    def apply(self, session: Session, record: MutationRecord) -> MergeOutcome:
        """Merge *record* into the projection within *session*."""
        current = self.load_entity(session, record.entity, record.id)
        outcome = merge(current, record)
        if not outcome.stale:
            self.save_entity(session, outcome.state)
        return outcome

    @staticmethod
    def clear_entities(session: Session) -> None:
        session.execute(delete(LocalEntity))

    def get_entity(self, kind: EntityKind, entity_id: str) -> EntityState | None:
        """Read one projected entity, deleted or not."""
        with self.transaction() as session:
            return self.load_entity(session, kind, entity_id)

    def list_entities(
        self, kind: EntityKind, *, include_deleted: bool = False
    ) -> list[EntityState]:
        """Read all projected entities of *kind*, ordered by id."""
        with self.transaction() as session:
            stmt = (
                select(LocalEntity)
                .where(LocalEntity.entity == str(kind))
                .order_by(LocalEntity.entity_id)
            )
            if not include_deleted:
                stmt = stmt.where(LocalEntity.deleted_at.is_(None))
            return [
                EntityState(
                    kind=kind,
                    id=row.entity_id,
                    fields=dict(row.fields),
                    clocks=EntityState.clocks_from_json(row.field_clocks),
                    deleted_at=row.deleted_at,
                )
                for row in session.scalars(stmt)
            ]

    # ── Metadata ─────────────────────────────────────

    @staticmethod
    def get_meta(session: Session, key: str) -> str | None:
        meta = session.get(DeviceMeta, key)
        return meta.value if meta is not None else None

    @staticmethod
    def set_meta(session: Session, key: str, value: str | None) -> None:
        meta = session.get(DeviceMeta, key)
        if value is None:
            if meta is not None:
                session.delete(meta)
            return
        if meta is None:
            session.add(DeviceMeta(key=key, value=value))
        else:
            meta.value = value

    def read_meta(self, key: str) -> str | None:
        """Read one metadata value in its own transaction."""
        with self.transaction() as session:
            return self.get_meta(session, key)
