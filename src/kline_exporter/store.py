"""
Durable storage for the job snapshot.

Two tiers, composed rather than branched at call sites:

- ``PostgresStateBackend``: primary, async, JSONB document in PostgreSQL.
- ``FileStateBackend``: fallback, synchronous JSON file with a size ceiling.

``FallbackStateStore`` tries the primary for every operation and falls through
to the fallback on any failure (including "no primary configured"). Backends
deal in plain JSON documents; the store converts to and from ``Job``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import psycopg
import pydantic
from loguru import logger
from psycopg import sql as psql
from psycopg.types.json import Jsonb

from .errors import PersistenceFailure
from .metrics import STORE_FALLBACK_TOTAL
from .models import Job

STATE_ID = "latest"
DEFAULT_TABLE = "exporter_state"

Document = Dict[str, Any]


class AsyncStateBackend(Protocol):
    async def get(self) -> Optional[Document]: ...

    async def set(self, doc: Document) -> None: ...

    async def clear(self) -> None: ...


class StateBackend(Protocol):
    def get(self) -> Optional[Document]: ...

    def set(self, doc: Document) -> None: ...

    def clear(self) -> None: ...


class StateStore(Protocol):
    """What the orchestrator persists through."""

    async def get(self) -> Optional[Job]: ...

    async def set(self, job: Job) -> None: ...

    async def clear(self) -> None: ...


class PostgresStateBackend:
    """One JSONB row per state id; the table is created on first use."""

    def __init__(
        self,
        dsn: str,
        *,
        state_id: str = STATE_ID,
        table: str = DEFAULT_TABLE,
        connect_timeout: int = 5,
    ):
        if not dsn:
            raise ValueError("dsn required")
        self._dsn = dsn
        self._state_id = state_id
        self._table = psql.Identifier(table)
        self._connect_timeout = connect_timeout
        self._table_ready = False

    async def _connect(self) -> psycopg.AsyncConnection:
        conn = await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True, connect_timeout=self._connect_timeout
        )
        if not self._table_ready:
            await conn.execute(
                psql.SQL(
                    "CREATE TABLE IF NOT EXISTS {} ("
                    "id TEXT PRIMARY KEY, doc JSONB NOT NULL, "
                    "updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW())"
                ).format(self._table)
            )
            self._table_ready = True
        return conn

    async def get(self) -> Optional[Document]:
        async with await self._connect() as conn:
            cur = await conn.execute(
                psql.SQL("SELECT doc FROM {} WHERE id = %s").format(self._table),
                (self._state_id,),
            )
            row = await cur.fetchone()
            return row[0] if row else None

    async def set(self, doc: Document) -> None:
        async with await self._connect() as conn:
            await conn.execute(
                psql.SQL(
                    "INSERT INTO {} (id, doc) VALUES (%s, %s) "
                    "ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc, updated_at = NOW()"
                ).format(self._table),
                (self._state_id, Jsonb(doc)),
            )

    async def clear(self) -> None:
        async with await self._connect() as conn:
            await conn.execute(
                psql.SQL("DELETE FROM {} WHERE id = %s").format(self._table),
                (self._state_id,),
            )


class FileStateBackend:
    """JSON file on local disk. Writes are atomic (temp file + rename)."""

    def __init__(self, path: Path | str, *, max_bytes: int = 5 * 1024 * 1024):
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes

    def get(self) -> Optional[Document]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable state file {self.path}")
            return None
        return raw if isinstance(raw, dict) else None

    def set(self, doc: Document) -> None:
        encoded = json.dumps(doc, separators=(",", ":")).encode("utf-8")
        if len(encoded) > self.max_bytes:
            raise PersistenceFailure(
                f"snapshot is {len(encoded)} bytes, file store limit is {self.max_bytes}"
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(encoded)
        os.replace(tmp, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class FallbackStateStore:
    """Primary-then-fallback snapshot store.

    A failing primary is logged and counted, never surfaced. Only when the
    fallback fails as well does the caller get a ``PersistenceFailure``.
    """

    def __init__(self, primary: Optional[AsyncStateBackend], fallback: StateBackend):
        self.primary = primary
        self.fallback = fallback

    async def get(self) -> Optional[Job]:
        if self.primary is not None:
            try:
                return self._decode(await self.primary.get())
            except Exception as exc:
                self._fell_through("get", exc)
        try:
            return self._decode(self.fallback.get())
        except Exception as exc:
            raise PersistenceFailure(f"could not load snapshot: {exc}") from exc

    async def set(self, job: Job) -> None:
        doc = job.to_snapshot()
        if self.primary is not None:
            try:
                await self.primary.set(doc)
                return
            except Exception as exc:
                self._fell_through("set", exc)
        try:
            self.fallback.set(doc)
        except PersistenceFailure:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"could not save snapshot: {exc}") from exc

    async def clear(self) -> None:
        # Always erase both tiers.
        if self.primary is not None:
            try:
                await self.primary.clear()
            except Exception as exc:
                self._fell_through("clear", exc)
        try:
            self.fallback.clear()
        except Exception as exc:
            raise PersistenceFailure(f"could not clear snapshot: {exc}") from exc

    @staticmethod
    def _decode(doc: Optional[Document]) -> Optional[Job]:
        if doc is None:
            return None
        try:
            return Job.from_snapshot(doc)
        except pydantic.ValidationError as exc:
            logger.warning(f"Discarding unreadable snapshot: {exc.error_count()} errors")
            return None

    @staticmethod
    def _fell_through(op: str, exc: Exception) -> None:
        STORE_FALLBACK_TOTAL.labels(op=op).inc()
        logger.warning(
            f"Primary state store {op} failed, using fallback: {type(exc).__name__}: {exc}"
        )


def build_state_store(settings) -> FallbackStateStore:
    """Compose the store tiers from ``Settings``."""
    primary = PostgresStateBackend(settings.state_dsn) if settings.state_dsn else None
    fallback = FileStateBackend(settings.state_file, max_bytes=settings.state_file_max_bytes)
    return FallbackStateStore(primary, fallback)
