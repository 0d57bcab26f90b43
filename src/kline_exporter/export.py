"""
CSV export of fetched klines.

One file per completed interval, usable for partially finished jobs. Each row
carries the open time in the job's timezone next to the raw UTC fields.
"""

from __future__ import annotations

import csv
from datetime import datetime, timezone
from pathlib import Path
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from .errors import ValidationError
from .models import INTERVALS, Job, TaskStatus

COLUMNS = [
    "open_time_local",
    "open_time_iso",
    "open_time_ms",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time_iso",
    "close_time_ms",
    "quote_volume",
    "num_trades",
    "taker_buy_base_volume",
    "taker_buy_quote_volume",
]


def validate_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def interval_file_name(symbol: str, interval: str) -> str:
    # "1M" and "1m" would collide on case-insensitive filesystems
    suffix = "1Mo" if interval == "1M" else interval
    return f"{symbol}_{suffix}.csv"


def export_csv(job: Job, out_dir: Path | str) -> List[Path]:
    """Write every ``done`` interval of ``job`` to ``out_dir``; return the paths."""
    done = [i for i in INTERVALS if job.tasks[i].status == TaskStatus.DONE and i in job.data]
    if not done:
        raise ValueError("no completed intervals to export")

    tz = validate_timezone(job.timezone)
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    written: List[Path] = []
    for interval in done:
        path = out / interval_file_name(job.symbol, interval)
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=COLUMNS)
            writer.writeheader()
            for k in job.data[interval]:
                opened = datetime.fromtimestamp(k.open_time_ms / 1000, tz=timezone.utc)
                local = opened.astimezone(tz)
                writer.writerow(
                    {
                        "open_time_local": local.strftime("%Y-%m-%d %H:%M:%S"),
                        **k.model_dump(include=set(COLUMNS)),
                    }
                )
        written.append(path)
        logger.info(f"Exported {len(job.data[interval])} rows to {path}")
    return written
