"""Local cache for binary assets behind short-lived signed URLs."""

from __future__ import annotations

import os
import re
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import httpx
from loguru import logger

from amico.core.errors import CacheWriteError
from amico.core.models import CachedAsset
from amico.core.signed_url import is_expired as _is_expired
from amico.core.storage import utc_now

DEFAULT_CONTENT_TYPE = "model/gltf-binary"
DEFAULT_VARIANT = "idle"

_EXTENSIONS = {
    "model/gltf-binary": ".glb",
    "model/gltf+json": ".gltf",
    "image/png": ".png",
    "image/jpeg": ".jpg",
}
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class CachedHandle:
    """Locally addressable copy of cached bytes."""

    entity_id: str
    variant: str
    path: Path
    content_type: str

    @property
    def uri(self) -> str:
        return self.path.resolve().as_uri()


def cache_key(entity_id: str, variant: str = DEFAULT_VARIANT) -> str:
    return f"{entity_id}::{variant}"


class SignedAssetCache:
    """Fetches signed URLs once and serves the bytes from SQLite afterwards.

    Writes replace a whole (entity, variant) row in one statement, so readers
    see either the old bytes or the new ones.
    """

    def __init__(
        self,
        database_path: Union[str, Path],
        handles_dir: Union[str, Path, None] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ) -> None:
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.handles_dir = Path(handles_dir) if handles_dir else self.database_path.parent / "handles"
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self.initialize()

    def initialize(self) -> None:
        with sqlite3.connect(self.database_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assets (
                    key TEXT PRIMARY KEY,
                    entity_id TEXT NOT NULL,
                    variant TEXT NOT NULL,
                    data BLOB NOT NULL,
                    content_type TEXT,
                    updated_at TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS assets_entity ON assets (entity_id)")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def is_expired(url: str, leeway_s: float = 0, now: Optional[float] = None) -> bool:
        return _is_expired(url, leeway_s, now)

    async def cache_from_url(self, entity_id: str, variant: str, url: str) -> bool:
        """Download ``url`` and store it under (entity_id, variant).

        Never raises: caching is best-effort and failures are logged.
        """
        try:
            response = await self._http().get(url, timeout=self.timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning(f"Asset cache fetch failed for {cache_key(entity_id, variant)}: {exc}")
            return False
        if response.status_code >= 400:
            logger.warning(
                f"Asset cache fetch for {cache_key(entity_id, variant)} "
                f"returned HTTP {response.status_code}"
            )
            return False
        content_type = response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE
        content_type = content_type.split(";", 1)[0].strip() or DEFAULT_CONTENT_TYPE
        try:
            self.put(CachedAsset(entity_id, variant, response.content, content_type, utc_now()))
        except CacheWriteError as exc:
            logger.warning(str(exc))
            return False
        logger.info(f"Cached {len(response.content) // 1024} KB for {cache_key(entity_id, variant)}")
        return True

    def put(self, asset: CachedAsset) -> None:
        try:
            with sqlite3.connect(self.database_path) as conn:
                conn.execute(
                    """
                    INSERT INTO assets (key, entity_id, variant, data, content_type, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        data=excluded.data,
                        content_type=excluded.content_type,
                        updated_at=excluded.updated_at
                    """,
                    (
                        cache_key(asset.entity_id, asset.variant),
                        asset.entity_id,
                        asset.variant,
                        sqlite3.Binary(asset.data),
                        asset.content_type,
                        asset.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise CacheWriteError(
                f"Could not store asset {cache_key(asset.entity_id, asset.variant)}: {exc}"
            ) from exc

    def get(self, entity_id: str, variant: str = DEFAULT_VARIANT) -> Optional[CachedAsset]:
        with sqlite3.connect(self.database_path) as conn:
            row = conn.execute(
                "SELECT data, content_type, updated_at FROM assets WHERE key = ?",
                (cache_key(entity_id, variant),),
            ).fetchone()
        if not row:
            return None
        return CachedAsset(
            entity_id=entity_id,
            variant=variant,
            data=bytes(row[0]),
            content_type=row[1] or DEFAULT_CONTENT_TYPE,
            updated_at=row[2] or "",
        )

    def get_cached_handle(self, entity_id: str, variant: str = DEFAULT_VARIANT) -> Optional[CachedHandle]:
        """Return a file handle for cached bytes, or None when nothing is cached."""
        try:
            asset = self.get(entity_id, variant)
        except sqlite3.Error as exc:
            logger.warning(f"Asset cache read failed for {cache_key(entity_id, variant)}: {exc}")
            return None
        if asset is None or not asset.data:
            return None
        path = self._handle_path(entity_id, variant, asset.content_type)
        try:
            self._write_atomic(path, asset.data)
        except OSError as exc:
            logger.warning(f"Could not materialize cached asset {path}: {exc}")
            return None
        return CachedHandle(entity_id, variant, path, asset.content_type)

    def remove(self, entity_id: str, variant: str = DEFAULT_VARIANT) -> bool:
        with sqlite3.connect(self.database_path) as conn:
            cursor = conn.execute("DELETE FROM assets WHERE key = ?", (cache_key(entity_id, variant),))
        self._unlink_handles(entity_id, variant)
        return cursor.rowcount > 0

    def remove_for_entity(self, entity_id: str) -> int:
        """Evict every cached variant of one entity. Returns the number removed."""
        if not entity_id:
            return 0
        with sqlite3.connect(self.database_path) as conn:
            cursor = conn.execute("DELETE FROM assets WHERE entity_id = ?", (entity_id,))
        self._unlink_handles(entity_id)
        removed = max(cursor.rowcount, 0)
        logger.info(f"Evicted {removed} cached asset(s) for {entity_id}")
        return removed

    def _handle_stem(self, entity_id: str, variant: str) -> str:
        return f"{_UNSAFE.sub('_', entity_id)}__{_UNSAFE.sub('_', variant)}"

    def _handle_path(self, entity_id: str, variant: str, content_type: str) -> Path:
        extension = _EXTENSIONS.get(content_type, ".bin")
        return self.handles_dir / f"{self._handle_stem(entity_id, variant)}{extension}"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(temp_name, path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def _unlink_handles(self, entity_id: str, variant: Optional[str] = None) -> None:
        if not self.handles_dir.exists():
            return
        if variant is None:
            pattern = f"{_UNSAFE.sub('_', entity_id)}__*"
        else:
            pattern = f"{self._handle_stem(entity_id, variant)}.*"
        for path in self.handles_dir.glob(pattern):
            path.unlink(missing_ok=True)
