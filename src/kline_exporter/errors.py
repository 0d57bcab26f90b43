"""
Custom exceptions for the kline exporter.

Separates failures that are worth retrying from the ones that are not, so the
orchestrator can decide between backoff and a permanent per-series error.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base error for the kline exporter."""

    pass


class ValidationError(ExporterError):
    """Malformed user input (e.g. a symbol failing the format check)."""

    pass


class RemoteError(ExporterError):
    """A remote call did not produce a usable batch."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientRemoteError(RemoteError):
    """Temporary upstream failure that should be retried with backoff."""

    def __init__(
        self, message: str, *, status: int | None = None, retry_after_ms: int | None = None
    ):
        super().__init__(message, status=status)
        self.retry_after_ms = retry_after_ms


class PayloadError(TransientRemoteError):
    """Response body could not be decoded into klines."""

    pass


class FatalRemoteError(RemoteError):
    """Permanent failure for one series; no further attempts."""

    pass


class PersistenceFailure(ExporterError):
    """Snapshot could not be read or written by any storage tier."""

    pass
