"""
Pytest configuration and fixtures for kline-exporter.

Provides cross-platform event loop configuration, a fake clock, a scripted
fetcher and a file-backed state store rooted in ``tmp_path``.
"""

import asyncio
import sys
from collections import defaultdict, deque

import pytest

from kline_exporter.errors import FatalRemoteError, TransientRemoteError
from kline_exporter.models import Kline
from kline_exporter.store import FallbackStateStore, FileStateBackend

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


START_MS = 1_700_000_000_000


def raw_row(i: int, minutes: int = 1) -> list:
    open_ms = START_MS + i * minutes * 60_000
    return [
        open_ms,
        "42000.10",
        "42100.00",
        "41950.55",
        "42050.00",
        "12.345",
        open_ms + minutes * 60_000 - 1,
        "519000.12",
        321,
        "6.1",
        "256000.5",
    ]


def make_rows(n: int) -> list[Kline]:
    return [Kline.from_row(raw_row(i)) for i in range(n)]


class FakeClock:
    """Clock whose sleep advances virtual time instantly."""

    def __init__(self, start_ms: int = START_MS):
        self.t = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += int(seconds * 1000)
        await asyncio.sleep(0)


class BlockingClock(FakeClock):
    """Clock whose sleep never finishes on its own."""

    def __init__(self, start_ms: int = START_MS):
        super().__init__(start_ms)
        self.sleeping = asyncio.Event()
        self.blocking = True

    async def sleep(self, seconds: float) -> None:
        if not self.blocking:
            return await super().sleep(seconds)
        self.sleeps.append(seconds)
        self.sleeping.set()
        await asyncio.Event().wait()


class ScriptedFetcher:
    """Fetcher returning queued outcomes per interval; default is 1000 rows."""

    def __init__(self, default_rows: int = 1000):
        self.default_rows = default_rows
        self.script: dict[str, deque] = defaultdict(deque)
        self.calls: list[str] = []

    def queue(self, interval: str, *outcomes) -> "ScriptedFetcher":
        self.script[interval].extend(outcomes)
        return self

    async def fetch_klines(self, symbol, interval, *, limit, base_url=None):
        self.calls.append(interval)
        await asyncio.sleep(0)
        outcome = self.script[interval].popleft() if self.script[interval] else self.default_rows
        if isinstance(outcome, BaseException):
            raise outcome
        return make_rows(outcome)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetcher():
    return ScriptedFetcher(default_rows=10)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state.json"


@pytest.fixture
def store(state_path):
    """File-only store (no primary configured)."""
    return FallbackStateStore(None, FileStateBackend(state_path))


@pytest.fixture
def throttled():
    """429 with a 5 second retry hint."""
    return TransientRemoteError("HTTP 429: too many requests", status=429, retry_after_ms=5000)


@pytest.fixture
def forbidden():
    return FatalRemoteError('HTTP 403: {"code":-2015,"msg":"forbidden"}', status=403)


@pytest.fixture
def rows():
    """Factory: ``rows(n)`` builds n decoded klines."""
    return make_rows


@pytest.fixture
def raw():
    """Factory: ``raw(i)`` builds the i-th raw /klines tuple."""
    return raw_row


@pytest.fixture
def blocking_clock():
    return BlockingClock()
