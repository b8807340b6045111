"""
CLI: ``cadence serve`` - run the scheduler loop in the foreground.

The first Ctrl+C / SIGTERM stops ticking and waits up to
``shutdown_timeout_seconds`` for running actions; a second one stops
waiting.  Actions still running after that are left behind and the
process exits with status 1.
"""

from __future__ import annotations

import os
import signal
import sys
import threading
from pathlib import Path

import typer

from cadence import create_engine
from cadence.cli.utils import DataDirOption, cli_errors, console, load_settings
from cadence.core.logging import get_logger
from cadence.scheduling.service import SchedulerService

logger = get_logger(__name__)


def serve(
    interval: float | None = typer.Option(None, "--interval", help="Tick interval in seconds", min=0.1),
    workers: int | None = typer.Option(None, "--workers", help="Worker pool size", min=1),
    shutdown_timeout: float | None = typer.Option(
        None, "--shutdown-timeout", help="Seconds to wait for running actions on shutdown", min=0
    ),
    data_dir: Path | None = DataDirOption,
) -> None:
    """Run the scheduler until interrupted (Ctrl+C / SIGTERM)."""
    settings = load_settings(data_dir)
    overrides = {}
    if interval is not None:
        overrides["tick_interval_seconds"] = interval
    if workers is not None:
        overrides["max_workers"] = workers
    if shutdown_timeout is not None:
        overrides["shutdown_timeout_seconds"] = shutdown_timeout
    if overrides:
        settings = settings.model_copy(update=overrides)

    stop = threading.Event()

    def _request_stop(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if stop.is_set():
            logger.warning("shutdown_forced", signal=name)
            raise KeyboardInterrupt
        logger.info("shutdown_requested", signal=name)
        stop.set()

    with cli_errors():
        engine = create_engine(settings, configure_logs=True)
        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

        partitions = engine.stores.list_partitions()
        console.print(
            f"[bold green]cadence[/bold green] scheduling {len(partitions)} partition(s) "
            f"every {settings.tick_interval_seconds}s with {settings.max_workers} worker(s)"
        )
        engine.start()
        try:
            while not stop.wait(1.0):
                pass
        finally:
            drained = shutdown(engine, settings.shutdown_timeout_seconds)

    if not drained:
        console.print("[yellow]actions still running; exiting without waiting for them[/yellow]")
        sys.stdout.flush()
        sys.stderr.flush()
        # worker threads would otherwise be joined at interpreter exit
        os._exit(1)
    console.print("[dim]scheduler stopped[/dim]")


def shutdown(engine: SchedulerService, timeout: float) -> bool:
    """Stop *engine*, waiting at most *timeout* seconds; False if runs were left running."""
    try:
        drained = engine.stop(timeout=timeout)
    except KeyboardInterrupt:
        drained = False
    engine.stores.close()
    return drained
