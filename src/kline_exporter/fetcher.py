"""
HTTP client for the futures ``/klines`` endpoint.

One call fetches one series. Failures are raised as ``TransientRemoteError``
or ``FatalRemoteError`` according to ``classifier``; callers never see raw
httpx exceptions.
"""

from __future__ import annotations

import re
from typing import List, Optional, Protocol

import httpx
from loguru import logger

from .classifier import classify_exception, classify_status
from .errors import PayloadError, ValidationError
from .models import Kline

DEFAULT_BASE_URL = "https://fapi.binance.com"
KLINES_PATH = "/fapi/v1/klines"
EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"
DEFAULT_LIMIT = 1000

_SYMBOL_RE = re.compile(r"[A-Z0-9]{4,20}")


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


def is_valid_symbol(symbol: str) -> bool:
    return bool(_SYMBOL_RE.fullmatch(symbol))


def validate_symbol(symbol: str) -> str:
    """Normalize ``symbol`` or raise ``ValidationError``."""
    normalized = normalize_symbol(symbol)
    if not is_valid_symbol(normalized):
        raise ValidationError("Symbol format invalid. Use A-Z0-9, 4-20 chars.")
    return normalized


def resolve_base_url(proxy_base_url: Optional[str], default: str = DEFAULT_BASE_URL) -> str:
    return (proxy_base_url or default).rstrip("/")


class Fetcher(Protocol):
    """Anything that can fetch one series for the orchestrator."""

    async def fetch_klines(
        self, symbol: str, interval: str, *, limit: int, base_url: Optional[str] = None
    ) -> List[Kline]: ...


class KlineFetcher:
    """Async client for kline requests."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._default_base_url = base_url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "KlineFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        *,
        limit: int = DEFAULT_LIMIT,
        base_url: Optional[str] = None,
    ) -> List[Kline]:
        url = resolve_base_url(base_url, self._default_base_url) + KLINES_PATH
        params = {"symbol": symbol, "interval": interval, "limit": str(limit)}

        try:
            response = await self._client.get(url, params=params)
        except httpx.DecodingError as exc:
            raise PayloadError(f"Undecodable response body: {exc}") from exc
        except httpx.HTTPError as exc:
            raise classify_exception(exc).to_error() from exc

        if not response.is_success:
            verdict = classify_status(response.status_code, response.headers, response.text)
            logger.debug(f"{symbol} {interval}: {verdict}")
            raise verdict.to_error()

        try:
            payload = response.json()
        except ValueError as exc:
            raise PayloadError("Unexpected response format") from exc
        if not isinstance(payload, list):
            raise PayloadError("Unexpected response format")

        return [Kline.from_row(row) for row in payload]

    async def symbol_is_trading(self, symbol: str, base_url: Optional[str] = None) -> bool:
        """Whether ``symbol`` is listed and trading. Advisory: errors read as False."""
        url = resolve_base_url(base_url, self._default_base_url) + EXCHANGE_INFO_PATH
        try:
            response = await self._client.get(url, params={"symbol": symbol})
            if not response.is_success:
                return False
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug(f"exchangeInfo lookup failed for {symbol}: {exc}")
            return False

        if not isinstance(payload, dict):
            return False
        for item in payload.get("symbols") or []:
            if item.get("symbol") == symbol:
                return item.get("status") == "TRADING"
        return False
