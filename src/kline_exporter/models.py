"""
Pydantic data models for kline export jobs.

A ``Job`` is the whole persisted/observed snapshot. Models are frozen: every
change produces a new snapshot via ``model_copy`` so observers and the
durable store never share mutable state with the orchestrator.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import PayloadError

INTERVALS = ("1m", "5m", "15m", "1h", "2h", "4h", "12h", "1w", "1M")
DEFAULT_TIMEZONE = "UTC"
MAX_LOGS = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ms_to_iso(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TaskStatus(str, Enum):
    """Per-series lifecycle state."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"  # terminal
    ERROR = "error"  # terminal

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.ERROR)


class Kline(BaseModel):
    """One candle. Prices and volumes stay decimal strings; times are ints."""

    model_config = ConfigDict(frozen=True)

    open_time_ms: int
    open_time_iso: str
    open: str
    high: str
    low: str
    close: str
    volume: str
    close_time_ms: int
    close_time_iso: str
    quote_volume: Optional[str] = None
    num_trades: Optional[int] = None
    taker_buy_base_volume: Optional[str] = None
    taker_buy_quote_volume: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Kline":
        """Decode one ``/klines`` tuple."""
        if not isinstance(row, (list, tuple)) or len(row) < 7:
            raise PayloadError("Invalid candle payload")

        def opt(i: int) -> Optional[str]:
            return str(row[i]) if len(row) > i and row[i] is not None else None

        try:
            open_ms = int(row[0])
            close_ms = int(row[6])
            trades = int(row[8]) if len(row) > 8 and row[8] is not None else None
            open_iso = ms_to_iso(open_ms)
            close_iso = ms_to_iso(close_ms)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise PayloadError(f"Invalid candle payload: {exc}") from exc

        return cls(
            open_time_ms=open_ms,
            open_time_iso=open_iso,
            open=str(row[1]),
            high=str(row[2]),
            low=str(row[3]),
            close=str(row[4]),
            volume=str(row[5]),
            close_time_ms=close_ms,
            close_time_iso=close_iso,
            quote_volume=opt(7),
            num_trades=trades,
            taker_buy_base_volume=opt(9),
            taker_buy_quote_volume=opt(10),
        )


class SeriesTask(BaseModel):
    """Progress record of one series."""

    model_config = ConfigDict(frozen=True)

    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    retry_at_ms: Optional[int] = None
    error_message: Optional[str] = None
    count: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _retry_at_only_while_retrying(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        status = data.get("status", TaskStatus.PENDING)
        if isinstance(status, TaskStatus):
            status = status.value
        if status != TaskStatus.RETRYING.value and data.get("retry_at_ms") is not None:
            data = {**data, "retry_at_ms": None}
        return data


def initial_tasks() -> Dict[str, SeriesTask]:
    return {interval: SeriesTask() for interval in INTERVALS}


class Job(BaseModel):
    """One export run over every configured series for one symbol."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    symbol: str
    proxy_base_url: str = ""
    auto_resume: bool = True
    timezone: str = DEFAULT_TIMEZONE
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    tasks: Dict[str, SeriesTask] = Field(default_factory=initial_tasks)
    data: Dict[str, List[Kline]] = Field(default_factory=dict)
    logs: List[str] = Field(default_factory=list)

    @field_validator("tasks")
    @classmethod
    def _exactly_configured_intervals(cls, v: Dict[str, SeriesTask]) -> Dict[str, SeriesTask]:
        return {interval: v.get(interval, SeriesTask()) for interval in INTERVALS}

    @field_validator("timezone", mode="before")
    @classmethod
    def _default_timezone(cls, v: Any) -> Any:
        return v or DEFAULT_TIMEZONE

    # ---------- queries ----------

    @property
    def fully_complete(self) -> bool:
        return all(task.status.terminal for task in self.tasks.values())

    @property
    def partially_usable(self) -> bool:
        return self.done_count > 0

    @property
    def done_count(self) -> int:
        return sum(1 for task in self.tasks.values() if task.status == TaskStatus.DONE)

    def unfinished_intervals(self) -> List[str]:
        return [i for i in INTERVALS if not self.tasks[i].status.terminal]

    # ---------- copy-on-write updates ----------

    def touched(self, **changes: Any) -> "Job":
        return self.model_copy(update={**changes, "updated_at": utc_now()})

    def with_task(self, interval: str, **changes: Any) -> "Job":
        task = self.tasks[interval].model_copy(update=changes)
        return self.touched(tasks={**self.tasks, interval: task})

    def with_data(self, interval: str, rows: Sequence[Kline]) -> "Job":
        return self.touched(data={**self.data, interval: list(rows)})

    def with_log(self, message: str, max_logs: int = MAX_LOGS) -> "Job":
        line = f"{utc_now().isoformat(timespec='milliseconds').replace('+00:00', 'Z')} {message}"
        return self.touched(logs=[*self.logs, line][-max_logs:])

    # ---------- persistence ----------

    def to_snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, raw: Dict[str, Any]) -> "Job":
        return cls.model_validate(raw)
