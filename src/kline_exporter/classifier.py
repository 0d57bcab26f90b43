"""
Failure classification for remote kline calls.

Every failed call ends up as one of two verdicts: ``Retryable`` (back off and
try again, optionally after a server-suggested wait) or ``Fatal`` (record the
error on the series and move on).
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional, Union

import httpx

from .errors import FatalRemoteError, RemoteError, TransientRemoteError

RETRY_AFTER_HEADERS = ("retry-after", "x-retry-after", "retry-after-ms")
RETRYABLE_STATUSES = frozenset({418, 429})
MAX_DETAIL_CHARS = 250
# Hint values above this are taken to be milliseconds already.
HINT_MS_THRESHOLD = 1000


@dataclass(frozen=True)
class Retryable:
    message: str
    hint_ms: Optional[int] = None
    status: Optional[int] = None

    def to_error(self) -> TransientRemoteError:
        return TransientRemoteError(self.message, status=self.status, retry_after_ms=self.hint_ms)


@dataclass(frozen=True)
class Fatal:
    message: str
    status: Optional[int] = None

    def to_error(self) -> FatalRemoteError:
        return FatalRemoteError(self.message, status=self.status)


Verdict = Union[Retryable, Fatal]


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_retry_after_ms(
    headers: Mapping[str, str], now_ms: Optional[int] = None
) -> Optional[int]:
    """Extract a server-suggested wait in milliseconds, if any.

    Numeric values are seconds unless they exceed ``HINT_MS_THRESHOLD``, in
    which case they are used as milliseconds. Anything else is parsed as an
    HTTP date and turned into the time remaining until it (never negative).
    """
    raw = None
    for name in RETRY_AFTER_HEADERS:
        raw = _header(headers, name)
        if raw:
            break
    if not raw:
        return None

    raw = raw.strip()
    try:
        numeric = float(raw)
    except ValueError:
        numeric = None

    if numeric is not None:
        if not math.isfinite(numeric):
            return None
        return int(numeric) if numeric > HINT_MS_THRESHOLD else int(numeric * 1000)

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return max(0, int(when.timestamp() * 1000) - now)


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES or status >= 500


def classify_status(
    status: int,
    headers: Mapping[str, str],
    body: str = "",
    *,
    now_ms: Optional[int] = None,
) -> Verdict:
    """Classify a non-2xx HTTP response."""
    detail = (body or "")[:MAX_DETAIL_CHARS]
    message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"

    if is_retryable_status(status):
        return Retryable(message, hint_ms=parse_retry_after_ms(headers, now_ms), status=status)
    return Fatal(message, status=status)


def classify_exception(exc: BaseException) -> Verdict:
    """Classify an exception raised while fetching one series."""
    if isinstance(exc, TransientRemoteError):
        return Retryable(str(exc), hint_ms=exc.retry_after_ms, status=exc.status)
    if isinstance(exc, RemoteError):
        return Fatal(str(exc), status=exc.status)
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return Retryable("Request timeout")
    if isinstance(exc, httpx.DecodingError):
        return Retryable(str(exc) or "Undecodable response body")
    if isinstance(exc, (httpx.TransportError, OSError)):
        return Retryable(str(exc) or "Network error")
    return Fatal(str(exc) or type(exc).__name__)
