"""
Kline Exporter

Fetches every configured kline interval for one futures symbol, one interval
at a time, retrying transient failures with capped backoff and persisting
progress so an interrupted job resumes where it stopped.

Usage:
    from kline_exporter import JobOrchestrator, KlineFetcher, build_state_store, get_settings

    settings = get_settings()
    async with KlineFetcher() as fetcher:
        orch = JobOrchestrator(fetcher, build_state_store(settings))
        orch.subscribe(print)
        await orch.start_new_job("BTCUSDT")
"""

from .classifier import Fatal, Retryable, classify_exception, classify_status
from .errors import (
    ExporterError,
    FatalRemoteError,
    PayloadError,
    PersistenceFailure,
    TransientRemoteError,
    ValidationError,
)
from .fetcher import KlineFetcher, normalize_symbol, validate_symbol
from .models import INTERVALS, Job, Kline, SeriesTask, TaskStatus
from .orchestrator import JobOrchestrator
from .policy import MAX_BACKOFF_MS, RetryPolicy, compute_wait
from .settings import Settings, get_settings
from .store import FallbackStateStore, FileStateBackend, PostgresStateBackend, build_state_store

__version__ = "0.1.0"
__all__ = [
    "JobOrchestrator",
    "KlineFetcher",
    "normalize_symbol",
    "validate_symbol",
    "INTERVALS",
    "Job",
    "Kline",
    "SeriesTask",
    "TaskStatus",
    "RetryPolicy",
    "compute_wait",
    "MAX_BACKOFF_MS",
    "Retryable",
    "Fatal",
    "classify_status",
    "classify_exception",
    "FallbackStateStore",
    "FileStateBackend",
    "PostgresStateBackend",
    "build_state_store",
    "Settings",
    "get_settings",
    "ExporterError",
    "ValidationError",
    "TransientRemoteError",
    "FatalRemoteError",
    "PayloadError",
    "PersistenceFailure",
]
