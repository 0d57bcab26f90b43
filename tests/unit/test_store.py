"""
Unit tests for the two-tier snapshot store.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kline_exporter.errors import PersistenceFailure
from kline_exporter.metrics import STORE_FALLBACK_TOTAL
from kline_exporter.models import Job, TaskStatus
from kline_exporter.settings import Settings
from kline_exporter.store import (
    FallbackStateStore,
    FileStateBackend,
    PostgresStateBackend,
    build_state_store,
)


class FailingBackend:
    """Primary that is unavailable for every operation."""

    def __init__(self):
        self.calls = []

    async def get(self):
        self.calls.append("get")
        raise ConnectionError("primary down")

    async def set(self, doc):
        self.calls.append("set")
        raise ConnectionError("primary down")

    async def clear(self):
        self.calls.append("clear")
        raise ConnectionError("primary down")


class DictBackend:
    """In-memory async primary."""

    def __init__(self):
        self.doc = None

    async def get(self):
        return self.doc

    async def set(self, doc):
        self.doc = doc

    async def clear(self):
        self.doc = None


def fallback_count(op: str) -> float:
    samples = list(STORE_FALLBACK_TOTAL.collect())[0].samples
    return sum(s.value for s in samples if s.name.endswith("_total") and s.labels.get("op") == op)


@pytest.mark.asyncio
async def test_file_only_round_trip(store, state_path):
    assert await store.get() is None

    job = Job(symbol="BTCUSDT").with_task("1m", status=TaskStatus.DONE, count=3)
    await store.set(job)
    assert json.loads(state_path.read_text())["symbol"] == "BTCUSDT"
    assert await store.get() == job

    await store.clear()
    assert await store.get() is None
    assert not state_path.exists()


@pytest.mark.asyncio
async def test_set_overwrites_whole_document(store):
    await store.set(Job(symbol="BTCUSDT"))
    second = Job(symbol="ETHUSDT")
    await store.set(second)
    assert await store.get() == second


@pytest.mark.asyncio
async def test_primary_preferred_when_healthy(state_path):
    primary = DictBackend()
    store = FallbackStateStore(primary, FileStateBackend(state_path))

    job = Job(symbol="BTCUSDT")
    await store.set(job)
    assert primary.doc["id"] == job.id
    assert not state_path.exists()
    assert await store.get() == job


@pytest.mark.asyncio
async def test_failing_primary_falls_through(state_path):
    primary = FailingBackend()
    store = FallbackStateStore(primary, FileStateBackend(state_path))
    before = fallback_count("set")

    job = Job(symbol="BTCUSDT")
    await store.set(job)
    assert await store.get() == job
    await store.clear()
    assert await store.get() is None

    assert primary.calls == ["set", "get", "clear", "get"]
    assert fallback_count("set") == before + 1


@pytest.mark.asyncio
async def test_clear_erases_both_tiers(state_path):
    primary = DictBackend()
    fallback = FileStateBackend(state_path)
    stale = Job(symbol="ETHUSDT")
    fallback.set(stale.to_snapshot())
    store = FallbackStateStore(primary, fallback)
    await store.set(Job(symbol="BTCUSDT"))

    await store.clear()

    assert primary.doc is None
    assert not state_path.exists()
    outage = FallbackStateStore(FailingBackend(), FileStateBackend(state_path))
    assert await outage.get() is None


@pytest.mark.asyncio
async def test_both_tiers_failing_raises_persistence_failure(state_path):
    store = FallbackStateStore(FailingBackend(), FileStateBackend(state_path, max_bytes=10))
    with pytest.raises(PersistenceFailure):
        await store.set(Job(symbol="BTCUSDT"))


@pytest.mark.asyncio
async def test_file_size_limit(state_path, rows):
    backend = FileStateBackend(state_path, max_bytes=2048)
    small = Job(symbol="BTCUSDT")
    backend.set(small.to_snapshot())

    big = small.with_data("1m", rows(100))
    with pytest.raises(PersistenceFailure):
        backend.set(big.to_snapshot())
    # previous snapshot left intact
    assert backend.get()["id"] == small.id


@pytest.mark.asyncio
async def test_corrupt_file_reads_as_empty(state_path):
    state_path.write_text("{not json")
    store = FallbackStateStore(None, FileStateBackend(state_path))
    assert await store.get() is None


@pytest.mark.asyncio
async def test_unreadable_snapshot_reads_as_empty(state_path):
    state_path.write_text(json.dumps({"tasks": "nope"}))
    store = FallbackStateStore(None, FileStateBackend(state_path))
    assert await store.get() is None


@pytest.mark.asyncio
async def test_postgres_backend_upserts_jsonb():
    cursor = MagicMock()
    cursor.fetchone = AsyncMock(return_value=({"id": "abc", "symbol": "BTCUSDT"},))
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=cursor)
    conn.__aenter__ = AsyncMock(return_value=conn)
    conn.__aexit__ = AsyncMock(return_value=False)

    with patch(
        "kline_exporter.store.psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)
    ) as connect:
        backend = PostgresStateBackend("postgresql://test", table="state_t")
        await backend.set({"id": "abc"})
        doc = await backend.get()
        await backend.clear()

    assert doc == {"id": "abc", "symbol": "BTCUSDT"}
    assert connect.await_count == 3
    statements = [repr(c.args[0]) for c in conn.execute.call_args_list]
    assert "CREATE TABLE IF NOT EXISTS" in statements[0]
    assert sum("CREATE TABLE" in s for s in statements) == 1
    assert any("ON CONFLICT (id) DO UPDATE" in s for s in statements)
    assert any("DELETE FROM" in s for s in statements)


def test_postgres_backend_requires_dsn():
    with pytest.raises(ValueError):
        PostgresStateBackend("")


def test_build_state_store_tiers(tmp_path):
    file_only = build_state_store(Settings(state_file=tmp_path / "s.json"))
    assert file_only.primary is None
    assert file_only.fallback.path == tmp_path / "s.json"

    both = build_state_store(
        Settings(state_file=tmp_path / "s.json", state_dsn="postgresql://test")
    )
    assert isinstance(both.primary, PostgresStateBackend)
