"""
Job orchestration and retry/resume engine.

``JobOrchestrator`` owns the in-memory ``Job``, drives each configured series
through ``pending -> running -> {done | error | retrying}`` one at a time, and
after every mutation persists the snapshot and hands it to observers.

Suspension points are the fetch, the snapshot write and the retry wait. A
clear (or a new job) bumps an internal generation; a run that finds its
generation stale at a suspension point stops and discards whatever it was
holding.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence

from loguru import logger

from .classifier import Retryable, classify_exception
from .clock import Clock, SystemClock
from .errors import PersistenceFailure
from .fetcher import DEFAULT_LIMIT, Fetcher
from .metrics import FETCH_TOTAL, RETRY_WAIT_SECONDS
from .models import DEFAULT_TIMEZONE, INTERVALS, MAX_LOGS, Job, Kline, TaskStatus
from .observers import SnapshotBus, SnapshotObserver
from .policy import RetryPolicy
from .store import StateStore


class JobOrchestrator:
    """Single-owner runner for one export job at a time.

    Example:
        orch = JobOrchestrator(KlineFetcher(), build_state_store(settings))
        orch.subscribe(render)
        await orch.resume_if_needed()
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: StateStore,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        kline_limit: int = DEFAULT_LIMIT,
        log_max: int = MAX_LOGS,
    ):
        self._fetcher = fetcher
        self._store = store
        self._policy = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._limit = kline_limit
        self._log_max = log_max
        self._bus = SnapshotBus()

        self._job: Optional[Job] = None
        self._generation = 0
        self._active = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._wake = asyncio.Event()
        self._persist_lock = asyncio.Lock()

    # ---------- observers / queries ----------

    def subscribe(self, callback: SnapshotObserver) -> None:
        self._bus.subscribe(callback)

    def unsubscribe(self, callback: SnapshotObserver) -> None:
        self._bus.unsubscribe(callback)

    def get_state(self) -> Optional[Job]:
        return self._job

    @property
    def running(self) -> bool:
        return self._active

    # ---------- public operations ----------

    async def start_new_job(
        self,
        symbol: str,
        proxy_base_url: str = "",
        auto_resume: bool = True,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        """Discard any previous job, start a fresh one and run it.

        ``symbol`` must already be validated (see ``fetcher.validate_symbol``).
        """
        await self._stop_current()

        job = Job(
            symbol=symbol,
            proxy_base_url=proxy_base_url,
            auto_resume=auto_resume,
            timezone=timezone,
        ).with_log(f"Started job for {symbol}", self._log_max)
        self._job = job
        logger.info(f"Started job {job.id} for {symbol}")

        await self._commit(self._generation, lambda j: j)
        await self.run()

    async def load_saved_state(self) -> Optional[Job]:
        """Replace the in-memory job with the persisted one (if any)."""
        try:
            saved = await self._store.get()
        except PersistenceFailure as exc:
            logger.error(f"Failed to load saved job state: {exc}")
            saved = None

        self._job = saved
        await self._bus.publish(saved)
        return saved

    async def resume_if_needed(self) -> Optional[Job]:
        """Load the persisted job and keep processing it if it asks to be resumed."""
        if self._active:
            logger.debug("resume_if_needed ignored: a run is in progress")
            return self._job

        saved = await self.load_saved_state()
        if saved is None:
            return None

        pending = saved.unfinished_intervals()
        if saved.auto_resume and pending:
            logger.info(f"Resuming job {saved.id} ({len(pending)} intervals left)")
            await self._commit(
                self._generation, lambda j: j.with_log("Resuming unfinished job", self._log_max)
            )
            await self.run()
        return self._job

    async def update_settings(
        self,
        *,
        proxy_base_url: Optional[str] = None,
        auto_resume: Optional[bool] = None,
        timezone: Optional[str] = None,
    ) -> None:
        """Change job settings without touching task progress."""
        if self._job is None:
            return

        changes = {
            k: v
            for k, v in (
                ("proxy_base_url", proxy_base_url),
                ("auto_resume", auto_resume),
                ("timezone", timezone),
            )
            if v is not None
        }
        await self._commit(self._generation, lambda j: j.touched(**changes))

    async def clear_saved_state(self) -> None:
        """Stop processing, forget the job and erase the durable snapshot."""
        self._invalidate()
        self._job = None

        async with self._persist_lock:
            try:
                await self._store.clear()
            except PersistenceFailure as exc:
                logger.error(f"Failed to clear saved job state: {exc}")

        logger.info("Cleared saved job state")
        await self._bus.publish(None)

    # ---------- run loop ----------

    async def run(self) -> None:
        """Process every unfinished series in configured order.

        No-op when there is no job or a run is already in progress.
        """
        if self._job is None or self._active:
            return

        self._active = True
        self._idle.clear()
        gen = self._generation
        try:
            for interval in INTERVALS:
                if not self._is_current(gen):
                    break
                if self._job.tasks[interval].status.terminal:
                    continue
                await self._execute_interval(gen, interval)

            if self._is_current(gen) and self._job.fully_complete:
                done = self._job.done_count
                failed = len(INTERVALS) - done
                logger.info(f"Job {self._job.id} finished: {done} done, {failed} failed")
                await self._commit(
                    gen,
                    lambda j: j.with_log(
                        f"All intervals finished ({done} done, {failed} failed)", self._log_max
                    ),
                )
        finally:
            self._active = False
            self._idle.set()

    async def _execute_interval(self, gen: int, interval: str) -> None:
        while self._is_current(gen):
            task = self._job.tasks[interval]
            if task.status.terminal:
                return

            now = self._clock.now_ms()
            if task.status == TaskStatus.RETRYING and task.retry_at_ms and task.retry_at_ms > now:
                if not await self._suspend(gen, (task.retry_at_ms - now) / 1000):
                    return

            started = await self._commit(
                gen,
                lambda j: j.with_task(
                    interval, status=TaskStatus.RUNNING, retry_at_ms=None, error_message=None
                ),
            )
            if not started:
                return

            job = self._job
            try:
                rows = await self._fetcher.fetch_klines(
                    job.symbol, interval, limit=self._limit, base_url=job.proxy_base_url or None
                )
            except Exception as exc:
                verdict = classify_exception(exc)
            else:
                if self._is_current(gen):
                    await self._on_success(gen, interval, rows)
                return

            if not self._is_current(gen):
                return

            if not isinstance(verdict, Retryable):
                FETCH_TOTAL.labels(interval=interval, outcome="fatal").inc()
                await self._on_fatal(gen, interval, verdict.message)
                return

            FETCH_TOTAL.labels(interval=interval, outcome="retryable").inc()
            attempts = self._job.tasks[interval].attempts + 1
            if self._policy.exhausted(attempts):
                await self._on_fatal(
                    gen,
                    interval,
                    f"gave up after {attempts} attempts: {verdict.message}",
                    attempts=attempts,
                )
                return

            wait_ms = self._policy.compute_wait_ms(attempts, verdict.hint_ms)
            scheduled = await self._on_retry(gen, interval, attempts, wait_ms, verdict.message)
            if not scheduled or not await self._suspend(gen, wait_ms / 1000):
                return

    async def _on_success(self, gen: int, interval: str, rows: Sequence[Kline]) -> None:
        FETCH_TOTAL.labels(interval=interval, outcome="success").inc()
        count = len(rows)
        advisory = f"Returned fewer than {self._limit} candles" if count < self._limit else None
        logger.info(f"{interval} completed with {count} candles")

        await self._commit(
            gen,
            lambda j: j.with_data(interval, rows)
            .with_task(
                interval,
                status=TaskStatus.DONE,
                count=count,
                retry_at_ms=None,
                error_message=advisory,
            )
            .with_log(f"{interval} completed with {count} candles", self._log_max),
        )

    async def _on_retry(
        self, gen: int, interval: str, attempts: int, wait_ms: int, message: str
    ) -> bool:
        retry_at_ms = self._clock.now_ms() + wait_ms
        wait_sec = -(-wait_ms // 1000)
        RETRY_WAIT_SECONDS.labels(interval=interval).observe(wait_ms / 1000)
        logger.warning(
            f"{interval} transient error (attempt {attempts}), retry in {wait_sec}s: {message}"
        )

        return await self._commit(
            gen,
            lambda j: j.with_task(
                interval,
                status=TaskStatus.RETRYING,
                attempts=attempts,
                retry_at_ms=retry_at_ms,
                error_message=message,
            ).with_log(
                f"{interval} transient error. Waiting {wait_sec}s before retry: {message}",
                self._log_max,
            ),
        )

    async def _on_fatal(
        self, gen: int, interval: str, message: str, attempts: Optional[int] = None
    ) -> None:
        logger.error(f"{interval} failed permanently: {message}")
        changes = {"status": TaskStatus.ERROR, "retry_at_ms": None, "error_message": message}
        if attempts is not None:
            changes["attempts"] = attempts

        await self._commit(
            gen,
            lambda j: j.with_task(interval, **changes).with_log(
                f"{interval} failed permanently: {message}", self._log_max
            ),
        )

    # ---------- state plumbing ----------

    def _is_current(self, gen: int) -> bool:
        return self._job is not None and gen == self._generation

    def _invalidate(self) -> None:
        self._generation += 1
        self._wake.set()
        self._wake = asyncio.Event()

    async def _stop_current(self) -> None:
        self._invalidate()
        await self._idle.wait()

    async def _commit(self, gen: int, mutate: Callable[[Job], Job]) -> bool:
        """Apply ``mutate``, persist, then notify. False if the job went away."""
        if not self._is_current(gen):
            return False
        job = mutate(self._job)
        self._job = job

        async with self._persist_lock:
            if not self._is_current(gen):
                return False
            try:
                await self._store.set(job)
            except PersistenceFailure as exc:
                # Durability is best-effort; the in-memory run carries on.
                logger.error(f"Failed to persist job {job.id}: {exc}")

        if not self._is_current(gen):
            return False
        await self._bus.publish(job)
        return True

    async def _suspend(self, gen: int, seconds: float) -> bool:
        """Wait ``seconds`` or until invalidated. True if still current afterwards."""
        wake = self._wake
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        waker = asyncio.ensure_future(wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (sleeper, waker) if not t.done()]
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return self._is_current(gen)
