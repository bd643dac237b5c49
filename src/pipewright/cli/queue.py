"""Task queue CLI commands.

``queue run`` executes one cycle (or cycles until no due work remains),
``queue worker`` polls on a timer until interrupted, and ``queue stats``
prints task counts by status.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from pipewright.database.queries.queue import count_due_tasks, queue_stats
from pipewright.orchestrator.queue_manager import CycleResult
from pipewright.pipeline import Pipeline

app = typer.Typer(help="Task queue commands")
console = Console()


def cycle_table(result: CycleResult, title: str = "Queue Cycle") -> Table:
    """Render a CycleResult as a two-column table."""
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value", justify="right")
    table.add_row("Processed", str(result.processed))
    table.add_row("Succeeded", f"[green]{result.succeeded}[/green]")
    table.add_row("Retried", f"[yellow]{result.retried}[/yellow]")
    table.add_row("Failed", f"[red]{result.failed}[/red]")
    table.add_row("Skipped", str(result.skipped))
    table.add_row("More due", "yes" if result.has_more else "no")
    return table


@app.command()
def run(
    batch_size: Annotated[
        Optional[int],
        typer.Option("--batch-size", "-b", min=1, help="Tasks per cycle (default: queue.batch_size)"),
    ] = None,
    max_concurrency: Annotated[
        Optional[int],
        typer.Option("--max-concurrency", "-m", min=1, help="Tasks in flight per wave"),
    ] = None,
    until_empty: Annotated[
        bool,
        typer.Option("--until-empty", help="Keep cycling while due work remains"),
    ] = False,
) -> None:
    """Run one queue cycle."""
    from pipewright.main import get_app_context

    ctx = get_app_context()

    async def _run(pipeline: Pipeline) -> CycleResult:
        total = CycleResult()
        while True:
            result = await pipeline.queue.run_cycle(batch_size, max_concurrency)
            for name in ("processed", "succeeded", "failed", "retried", "skipped"):
                setattr(total, name, getattr(total, name) + getattr(result, name))
            total.has_more = result.has_more
            if not (until_empty and result.has_more and result.processed):
                return total

    result = ctx.run(_run)
    console.print(cycle_table(result))


@app.command()
def worker(
    poll_interval: Annotated[
        Optional[float],
        typer.Option("--poll-interval", help="Seconds between idle polls"),
    ] = None,
    max_cycles: Annotated[
        Optional[int],
        typer.Option("--max-cycles", min=1, help="Stop after this many cycles"),
    ] = None,
) -> None:
    """Poll the queue until interrupted with Ctrl+C."""
    from pipewright.main import get_app_context

    ctx = get_app_context()
    interval = poll_interval if poll_interval is not None else ctx.config.queue.poll_interval_seconds

    console.print("[bold cyan]Pipewright queue worker[/bold cyan]")
    console.print(f"[dim]Poll interval:[/dim] {interval}s")
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    async def _work(pipeline: Pipeline) -> int:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown.set)
            except NotImplementedError:
                pass

        cycles = 0
        while not shutdown.is_set():
            result = await pipeline.queue.run_cycle()
            cycles += 1
            if result.processed:
                console.print(
                    f"[dim]cycle {cycles}:[/dim] {result.succeeded} succeeded, "
                    f"{result.retried} retried, {result.failed} failed, {result.skipped} skipped"
                )
            if max_cycles is not None and cycles >= max_cycles:
                break
            if not result.has_more:
                try:
                    await asyncio.wait_for(shutdown.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        return cycles

    cycles = ctx.run(_work)
    console.print(f"[green]Worker stopped after {cycles} cycle(s)[/green]")


@app.command()
def stats() -> None:
    """Show task counts by status."""
    from pipewright.main import get_app_context

    ctx = get_app_context()

    async def _stats(pipeline: Pipeline) -> tuple[dict[str, int], int]:
        async with pipeline.session_factory() as session:
            return await queue_stats(session), await count_due_tasks(session)

    counts, due = ctx.run(_stats)

    table = Table(title="Processing Queue")
    table.add_column("Status", style="bold")
    table.add_column("Tasks", justify="right")
    for status, count in counts.items():
        table.add_row(status, str(count))
    table.add_row("[cyan]due now[/cyan]", str(due))
    console.print(table)
