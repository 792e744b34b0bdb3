"""Persistence layer for the pipeline session checkpoint and the character gallery."""

from __future__ import annotations

import json
import random
import sqlite3
import string
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from loguru import logger

from amico.core.errors import GalleryPersistError, SessionPersistError
from amico.core.models import GalleryEntity, PipelineSession

SESSION_KEY = "amico_session"
_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Generate a unique gallery id."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"amico_{int(time.time() * 1000)}_{suffix}"


class _SqliteStore(ABC):
    """Shared connection handling for the small SQLite-backed stores."""

    def __init__(self, database_path: Union[str, Path]) -> None:
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.database_path)

    @abstractmethod
    def initialize(self) -> None:
        """Create the backing table if it does not exist."""


class SessionStore(_SqliteStore):
    """Single-slot store for the in-flight pipeline session."""

    def initialize(self) -> None:
        """Initialize the persistence backend."""
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )

    def _read_raw(self, conn: sqlite3.Connection) -> Dict[str, object]:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (SESSION_KEY,)).fetchone()
        if not row or not row[0]:
            return {}
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable pipeline session checkpoint")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> Optional[PipelineSession]:
        """Return the saved session, or None when nothing is stored."""
        with self._connect() as conn:
            data = self._read_raw(conn)
        if not data:
            return None
        return PipelineSession.from_dict(data)

    def save(self, patch: Mapping[str, object]) -> PipelineSession:
        """Merge ``patch`` into the stored session and commit it.

        Keys absent from the patch keep their stored values.
        """
        try:
            with self._connect() as conn:
                merged = self._read_raw(conn)
                merged.update(patch)
                merged["saved_at"] = utc_now()
                conn.execute(
                    """
                    INSERT INTO settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value
                    """,
                    (SESSION_KEY, json.dumps(merged)),
                )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.error(f"Failed to checkpoint pipeline session: {exc}")
            raise SessionPersistError(f"Could not save pipeline session: {exc}") from exc
        return PipelineSession.from_dict(merged)

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (SESSION_KEY,))


class GalleryStore(_SqliteStore):
    """Stores completed characters, newest first."""

    _COLUMNS = (
        "id, name, gender, profile, created_at, thumbnail, "
        "model_task_id, rig_task_id, last_model_url"
    )

    def initialize(self) -> None:
        """Initialize the persistence backend."""
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gallery (
                    id TEXT PRIMARY KEY,
                    position INTEGER NOT NULL,
                    name TEXT,
                    gender TEXT,
                    profile TEXT,
                    created_at TEXT,
                    thumbnail TEXT,
                    model_task_id TEXT,
                    rig_task_id TEXT,
                    last_model_url TEXT
                )
                """
            )

    def upsert(self, entity: GalleryEntity) -> None:
        """Insert a new entity at the front, or overwrite an existing one in place."""
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO gallery (position, {self._COLUMNS})
                    VALUES (
                        (SELECT COALESCE(MAX(position), 0) + 1 FROM gallery),
                        ?, ?, ?, ?, ?, ?, ?, ?, ?
                    )
                    ON CONFLICT(id) DO UPDATE SET
                        name=excluded.name,
                        gender=excluded.gender,
                        profile=excluded.profile,
                        created_at=excluded.created_at,
                        thumbnail=excluded.thumbnail,
                        model_task_id=excluded.model_task_id,
                        rig_task_id=excluded.rig_task_id,
                        last_model_url=excluded.last_model_url
                    """,
                    (
                        entity.id,
                        entity.name,
                        entity.gender,
                        entity.profile,
                        entity.created_at,
                        entity.thumbnail,
                        entity.model_task_id,
                        entity.rig_task_id,
                        entity.last_model_url,
                    ),
                )
        except sqlite3.Error as exc:
            logger.error(f"Failed to save {entity.id} to the gallery: {exc}")
            raise GalleryPersistError(f"Could not save {entity.id}: {exc}") from exc

    def list_all(self) -> List[GalleryEntity]:
        """Return all entities, most recently inserted first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM gallery ORDER BY position DESC"
            ).fetchall()
        return [self._row_to_entity(row) for row in rows]

    def get(self, entity_id: str) -> Optional[GalleryEntity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM gallery WHERE id = ?",
                    (entity_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise GalleryPersistError(f"Could not read {entity_id}: {exc}") from exc
        if not row:
            return None
        return self._row_to_entity(row)

    def delete(self, entity_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM gallery WHERE id = ?", (entity_id,))

    def update_last_model_url(self, entity_id: str, model_url: str) -> bool:
        """Record a fresher idle-animation URL. Returns False for unknown ids."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE gallery SET last_model_url = ? WHERE id = ?",
                (model_url, entity_id),
            )
        return cursor.rowcount > 0

    def _row_to_entity(self, row: tuple) -> GalleryEntity:
        return GalleryEntity(
            id=row[0],
            name=row[1] or "",
            gender=row[2],
            profile=row[3],
            created_at=row[4] or "",
            thumbnail=row[5] or "",
            model_task_id=row[6],
            rig_task_id=row[7],
            last_model_url=row[8],
        )
