"""
Repository: the durable profile document.

All profiles live in ONE JSON document (`externalId -> WellnessRecord`).
Because every write rewrites the whole document, writes are serialized
with a single process-wide `asyncio.Lock`: the load -> mutate -> save
cycle of one delivery finishes (durable write included) before the next
one starts, whichever profile each targets. Locking per profile would
not help, since two full-document rewrites still lose each other's
updates.

Important notes:
- A missing document is an empty store, not an error.
- Reads (`load_all`, `get`) take no lock. Saves replace the document
  atomically, so a reader sees the previous or the next version, never
  a partial one.
- Storage failures raise `StoreReadError` / `StorePersistError`; errors
  raised by the caller's mutation propagate unchanged. The lock is
  released in every case.
"""

import asyncio
import contextlib
import json
import logging
import os
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, Optional

import psycopg
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from db import get_async_conn
from models import WellnessRecord, utc_now_iso

log = logging.getLogger(__name__)

Document = Dict[str, Dict[str, Any]]
Mutation = Callable[[WellnessRecord, str], None]

STORE_TABLE = "wellness_store"
STORE_DOCUMENT_ID = "profiles"
SEED_DOCUMENT_SQL = (
    f"INSERT INTO {STORE_TABLE} (id, document) VALUES (%s, '{{}}'::jsonb) "
    "ON CONFLICT (id) DO NOTHING"
)


class StoreError(Exception):
    """Base class for durable storage failures."""


class StoreReadError(StoreError):
    """The stored document exists but could not be read or decoded."""


class StorePersistError(StoreError):
    """The document could not be written; the mutation did not happen."""


class ProfileRepo:
    """Storage access only. No event rules here.

    Responsibilities:
    - Hold the exclusive section around every read-modify-write
    - Create missing records with defaults
    - Stamp `lastUpdated` on every applied mutation

    Subclasses provide `_document()` (locked load + save) and
    `load_all()` (lock-free read).
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    def _document(self) -> AsyncContextManager[Document]:
        raise NotImplementedError

    async def load_all(self) -> Document:
        raise NotImplementedError

    async def update(self, external_id: str, mutate: Mutation) -> WellnessRecord:
        """Apply `mutate(record, now)` to one profile and persist the store.

        The record is created with empty sub-maps when `external_id` has
        not been seen before. Returns the record as persisted.
        """

        async with self._lock:
            async with self._document() as document:
                now = utc_now_iso()
                raw = document.get(external_id)
                if raw:
                    try:
                        record = WellnessRecord.from_stored(external_id, raw, now)
                    except (ValidationError, TypeError) as e:
                        raise StoreReadError(
                            f"Stored profile {external_id} is invalid: {e}"
                        ) from e
                else:
                    record = WellnessRecord.new(external_id, now)
                mutate(record, now)
                record.last_updated = now
                document[external_id] = record.to_document()
            return record

    async def clear(self) -> int:
        """Remove every profile. Returns how many were removed."""

        async with self._lock:
            async with self._document() as document:
                removed = len(document)
                document.clear()
            return removed

    async def get(self, external_id: str) -> Optional[Dict[str, Any]]:
        document = await self.load_all()
        return document.get(external_id)

    async def ping(self) -> None:
        """Raise if the store cannot be read."""

        await self.load_all()


class FileProfileRepo(ProfileRepo):
    """JSON document on the local filesystem, with a one-step backup.

    Each save copies the current document to `backup_path`, then writes
    the new one to a temp file and `os.replace()`s it into place. When
    the main document is unreadable, loads fall back to the backup.
    """

    def __init__(self, path: Path, backup_path: Path):
        super().__init__()
        self.path = Path(path)
        self.backup_path = Path(backup_path)

    @asynccontextmanager
    async def _document(self) -> AsyncIterator[Document]:
        document = await self.load_all()
        yield document
        await asyncio.to_thread(self._write_document, document)
        log.info("Saved %d profiles to %s", len(document), self.path)

    async def load_all(self) -> Document:
        return await asyncio.to_thread(self._read_document)

    def _read_document(self) -> Document:
        main_error: Optional[Exception] = None
        try:
            return _read_json(self.path)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            main_error = e
            log.warning("Profile store %s unreadable: %s", self.path, e)

        try:
            document = _read_json(self.backup_path)
        except FileNotFoundError:
            if main_error is None:
                return {}
            raise StoreReadError(f"Failed to read {self.path}: {main_error}") from main_error
        except (OSError, ValueError) as e:
            raise StoreReadError(f"Failed to read {self.backup_path}: {e}") from e
        log.info("Loaded profiles from backup %s", self.backup_path)
        return document

    def _write_document(self, document: Document) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                shutil.copyfile(self.path, self.backup_path)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)  # atomic on POSIX
        except (OSError, TypeError, ValueError) as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StorePersistError(f"Failed to write {self.path}: {e}") from e


class PostgresProfileRepo(ProfileRepo):
    """The same single document, stored as one JSONB row.

    The row is read `FOR UPDATE` inside a transaction, so writers in
    other processes are serialized as well. Table DDL lives in
    `scripts/create_store_table.py`.
    """

    def __init__(self, db_url: str):
        super().__init__()
        self.db_url = db_url

    @asynccontextmanager
    async def _document(self) -> AsyncIterator[Document]:
        try:
            conn = await get_async_conn(self.db_url)
        except psycopg.Error as e:
            raise StoreReadError(f"Database unavailable: {e}") from e

        # Mutation errors roll the transaction back; a failed commit is a
        # failed write.
        try:
            async with conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        try:
                            # FOR UPDATE only locks a row that exists.
                            await cur.execute(SEED_DOCUMENT_SQL, (STORE_DOCUMENT_ID,))
                            await cur.execute(
                                f"SELECT document FROM {STORE_TABLE} WHERE id=%s FOR UPDATE",
                                (STORE_DOCUMENT_ID,),
                            )
                            row = await cur.fetchone()
                        except psycopg.Error as e:
                            raise StoreReadError(f"Failed to read profile document: {e}") from e
                        document = dict(row[0]) if row else {}

                        yield document

                        await cur.execute(
                            f"INSERT INTO {STORE_TABLE} (id, document, updated_at) "
                            "VALUES (%s, %s, now()) "
                            "ON CONFLICT (id) DO UPDATE "
                            "SET document = EXCLUDED.document, updated_at = EXCLUDED.updated_at",
                            (STORE_DOCUMENT_ID, Jsonb(document)),
                        )
        except psycopg.Error as e:
            raise StorePersistError(f"Failed to write profile document: {e}") from e

    async def load_all(self) -> Document:
        try:
            async with await get_async_conn(self.db_url) as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT document FROM {STORE_TABLE} WHERE id=%s",
                        (STORE_DOCUMENT_ID,),
                    )
                    row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreReadError(f"Failed to read profile document: {e}") from e
        return dict(row[0]) if row else {}


def _read_json(path: Path) -> Document:
    with open(path, "r", encoding="utf-8") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError("profile document must be a JSON object")
    return document


def build_repo(cfg) -> ProfileRepo:
    """Pick the store backend named by `cfg.store_backend`."""

    if cfg.store_backend == "postgres":
        return PostgresProfileRepo(cfg.db_url)
    if cfg.store_backend != "file":
        raise ValueError(f"Unsupported STORE_BACKEND: {cfg.store_backend}")
    return FileProfileRepo(cfg.store_file, cfg.backup_file)
