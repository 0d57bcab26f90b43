from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from .errors import ValidationError
from .export import export_csv, validate_timezone
from .fetcher import KlineFetcher, normalize_symbol, validate_symbol
from .models import Job
from .orchestrator import JobOrchestrator
from .settings import get_settings
from .store import build_state_store

app = typer.Typer(help="Resumable futures kline exporter")


def proxy_opt() -> str:
    return typer.Option("", "--proxy", envvar="KLINE_PROXY_BASE_URL", help="Base URL override")


def summarize(job: Optional[Job]) -> dict:
    if job is None:
        return {"job": None}
    return {
        "id": job.id,
        "symbol": job.symbol,
        "proxy_base_url": job.proxy_base_url,
        "auto_resume": job.auto_resume,
        "timezone": job.timezone,
        "updated_at": job.updated_at.isoformat(),
        "fully_complete": job.fully_complete,
        "partially_usable": job.partially_usable,
        "tasks": {
            k: t.model_dump(mode="json", exclude_none=True) for k, t in job.tasks.items()
        },
        "logs": job.logs[-10:],
    }


async def _with_orchestrator(action):
    settings = get_settings()
    async with KlineFetcher(
        base_url=settings.base_url, timeout=settings.request_timeout_s
    ) as fetcher:
        orch = JobOrchestrator(
            fetcher,
            build_state_store(settings),
            retry_policy=settings.retry_policy(),
            kline_limit=settings.kline_limit,
            log_max=settings.log_max,
        )
        await action(orch)
        return orch.get_state()


@app.command("start")
def start(
    symbol: str = typer.Argument(..., help="Futures symbol, e.g. BTCUSDT"),
    proxy: str = proxy_opt(),
    auto_resume: bool = typer.Option(True, "--auto-resume/--no-auto-resume"),
    timezone: Optional[str] = typer.Option(None, "--timezone", help="IANA timezone for export"),
):
    """Start a new job (discarding any saved one) and run it."""
    try:
        normalized = validate_symbol(symbol)
        tz = timezone or get_settings().default_timezone
        validate_timezone(tz)
    except ValidationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)

    job = asyncio.run(
        _with_orchestrator(
            lambda orch: orch.start_new_job(
                normalized, proxy_base_url=proxy.strip(), auto_resume=auto_resume, timezone=tz
            )
        )
    )
    typer.echo(json.dumps(summarize(job), indent=2))


@app.command("resume")
def resume():
    """Resume the saved job if it is unfinished and allows auto-resume."""
    job = asyncio.run(_with_orchestrator(lambda orch: orch.resume_if_needed()))
    typer.echo(json.dumps(summarize(job), indent=2))


@app.command("status")
def status():
    """Show the saved job without running it."""
    job = asyncio.run(_with_orchestrator(lambda orch: orch.load_saved_state()))
    typer.echo(json.dumps(summarize(job), indent=2))


@app.command("settings")
def update_settings(
    proxy: Optional[str] = typer.Option(None, "--proxy"),
    auto_resume: Optional[bool] = typer.Option(None, "--auto-resume/--no-auto-resume"),
    timezone: Optional[str] = typer.Option(None, "--timezone"),
):
    """Change settings of the saved job without touching its progress."""
    if timezone:
        try:
            validate_timezone(timezone)
        except ValidationError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=2)

    async def action(orch: JobOrchestrator):
        await orch.load_saved_state()
        await orch.update_settings(
            proxy_base_url=proxy.strip() if proxy is not None else None,
            auto_resume=auto_resume,
            timezone=timezone,
        )

    job = asyncio.run(_with_orchestrator(action))
    typer.echo(json.dumps(summarize(job), indent=2))


@app.command("clear")
def clear():
    """Erase the saved job."""
    asyncio.run(_with_orchestrator(lambda orch: orch.clear_saved_state()))
    typer.echo("ok")


@app.command("export")
def export(out_dir: Path = typer.Argument(..., help="Directory for CSV files")):
    """Write completed intervals of the saved job as CSV (partial jobs allowed)."""
    job = asyncio.run(_with_orchestrator(lambda orch: orch.load_saved_state()))
    if job is None:
        typer.echo("no saved job", err=True)
        raise typer.Exit(code=1)
    try:
        paths = export_csv(job, out_dir)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    for p in paths:
        typer.echo(str(p))


@app.command("check-symbol")
def check_symbol(symbol: str = typer.Argument(...), proxy: str = proxy_opt()):
    """Validate symbol format and whether it is trading."""
    normalized = normalize_symbol(symbol)
    try:
        validate_symbol(normalized)
    except ValidationError as e:
        typer.echo(json.dumps({"symbol": normalized, "valid": False, "reason": str(e)}))
        raise typer.Exit(code=2)

    async def lookup() -> bool:
        settings = get_settings()
        async with KlineFetcher(base_url=settings.base_url) as fetcher:
            return await fetcher.symbol_is_trading(normalized, proxy.strip() or None)

    trading = asyncio.run(lookup())
    if not trading:
        logger.warning(f"{normalized} not found or not trading; fetching may still work")
    typer.echo(json.dumps({"symbol": normalized, "valid": True, "trading": trading}))


if __name__ == "__main__":
    app()
