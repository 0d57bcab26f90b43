"""
Unit tests for job snapshot models.
"""

import pydantic
import pytest

from kline_exporter.errors import PayloadError
from kline_exporter.models import INTERVALS, Job, Kline, SeriesTask, TaskStatus


def test_new_job_has_every_interval_pending():
    job = Job(symbol="BTCUSDT")
    assert list(job.tasks) == list(INTERVALS)
    assert all(t.status == TaskStatus.PENDING and t.attempts == 0 for t in job.tasks.values())
    assert job.data == {}
    assert not job.fully_complete
    assert not job.partially_usable


def test_fully_complete_iff_all_terminal():
    job = Job(symbol="BTCUSDT")
    for i, interval in enumerate(INTERVALS):
        assert not job.fully_complete
        status = TaskStatus.DONE if i % 2 else TaskStatus.ERROR
        job = job.with_task(interval, status=status)
    assert job.fully_complete
    assert job.partially_usable

    job = job.with_task("1h", status=TaskStatus.RETRYING)
    assert not job.fully_complete
    assert job.unfinished_intervals() == ["1h"]


def test_snapshots_are_frozen():
    job = Job(symbol="BTCUSDT")
    with pytest.raises(pydantic.ValidationError):
        job.symbol = "ETHUSDT"  # type: ignore


def test_with_task_is_copy_on_write():
    job = Job(symbol="BTCUSDT")
    updated = job.with_task("5m", status=TaskStatus.RUNNING)
    assert job.tasks["5m"].status == TaskStatus.PENDING
    assert updated.tasks["5m"].status == TaskStatus.RUNNING
    assert updated.updated_at >= job.updated_at


def test_log_is_bounded_and_ordered():
    job = Job(symbol="BTCUSDT")
    for n in range(60):
        job = job.with_log(f"line {n}", max_logs=50)
    assert len(job.logs) == 50
    assert job.logs[0].endswith("line 10")
    assert job.logs[-1].endswith("line 59")


def test_snapshot_round_trip_and_older_schema(rows):
    job = Job(symbol="BTCUSDT", proxy_base_url="http://proxy").with_data("1m", rows(3))
    restored = Job.from_snapshot(job.to_snapshot())
    assert restored == job

    older = job.to_snapshot()
    del older["timezone"]
    del older["tasks"]["12h"]
    older["tasks"]["1m"] = {"status": "done"}
    restored = Job.from_snapshot(older)
    assert restored.timezone == "UTC"
    assert restored.tasks["12h"] == SeriesTask()
    assert restored.tasks["1m"].attempts == 0
    assert list(restored.tasks) == list(INTERVALS)


def test_retry_at_dropped_outside_retrying():
    task = SeriesTask.model_validate({"status": "done", "retry_at_ms": 123})
    assert task.retry_at_ms is None
    task = SeriesTask.model_validate({"status": "retrying", "retry_at_ms": 123})
    assert task.retry_at_ms == 123


def test_kline_from_full_row(raw):
    k = Kline.from_row(raw(0))
    assert k.open == "42000.10"
    assert k.volume == "12.345"
    assert k.num_trades == 321
    assert k.taker_buy_quote_volume == "256000.5"
    assert k.open_time_iso == "2023-11-14T22:13:20.000Z"
    assert k.close_time_ms == k.open_time_ms + 59_999


def test_kline_from_short_row_omits_extended_fields(raw):
    k = Kline.from_row(raw(0)[:7])
    assert k.quote_volume is None
    assert k.num_trades is None


@pytest.mark.parametrize("bad", [None, {}, [1, 2, 3], ["x", 1, 1, 1, 1, 1, 2]])
def test_kline_rejects_malformed_rows(bad):
    with pytest.raises(PayloadError):
        Kline.from_row(bad)


@pytest.mark.parametrize("field", [0, 6])
def test_kline_rejects_out_of_range_timestamps(raw, field):
    row = list(raw(0))
    row[field] = -(10**17)
    with pytest.raises(PayloadError, match="Invalid candle payload"):
        Kline.from_row(row)
