"""
Demo script for JobOrchestrator.

Resumes a saved job if there is one, otherwise starts a new one for the symbol
given on the command line, printing per-interval progress as snapshots arrive.
"""

import asyncio
import sys
from typing import Optional

from loguru import logger

from kline_exporter import (
    INTERVALS,
    Job,
    JobOrchestrator,
    KlineFetcher,
    build_state_store,
    get_settings,
    validate_symbol,
)


def on_snapshot(job: Optional[Job]) -> None:
    if job is None:
        logger.info("Job cleared")
        return
    progress = " ".join(f"{i}:{job.tasks[i].status.value}" for i in INTERVALS)
    logger.info(f"[{job.done_count}/{len(INTERVALS)}] {progress}")


async def main(symbol: str) -> None:
    settings = get_settings()
    fetcher = KlineFetcher(base_url=settings.base_url, timeout=settings.request_timeout_s)
    async with fetcher:
        orch = JobOrchestrator(
            fetcher,
            build_state_store(settings),
            retry_policy=settings.retry_policy(),
            kline_limit=settings.kline_limit,
        )
        orch.subscribe(on_snapshot)

        job = await orch.resume_if_needed()
        if job is None or job.fully_complete:
            await orch.start_new_job(validate_symbol(symbol))

        job = orch.get_state()
        logger.info(f"Finished: {job.done_count} done, fully_complete={job.fully_complete}")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "BTCUSDT"))
