"""
Snapshot notification for the surrounding application.

Observers receive the new immutable ``Job`` snapshot after every state change,
or ``None`` after the job is cleared. Delivery is best-effort: one observer's
failure is logged and does not affect the others.
"""

from __future__ import annotations

import inspect
from typing import Awaitable, Optional, Protocol, Union

from loguru import logger

from .models import Job


class SnapshotObserver(Protocol):
    """Sync or async callable accepting the latest snapshot."""

    def __call__(self, snapshot: Optional[Job]) -> Union[None, Awaitable[None]]: ...


class SnapshotBus:
    """Ordered fan-out of snapshots to registered observers."""

    def __init__(self) -> None:
        self._subs: list[SnapshotObserver] = []

    def subscribe(self, callback: SnapshotObserver) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Snapshot observer added (total: {len(self._subs)})")

    def unsubscribe(self, callback: SnapshotObserver) -> None:
        """No-op if ``callback`` was never subscribed."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Snapshot observer removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, snapshot: Optional[Job]) -> None:
        # Iterate over copy to allow unsubscribe during delivery
        for callback in list(self._subs):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.debug(f"Snapshot observer error (ignored): {type(exc).__name__}: {exc}")
