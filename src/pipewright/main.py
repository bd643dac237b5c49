"""Main CLI entry point for Pipewright.

Usage:
    pipewright serve --port 8000
    pipewright queue run --batch-size 10
    pipewright queue worker
    pipewright project list --status failed
    pipewright project retry 42
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Optional, TypeVar

import typer
from rich.console import Console

from pipewright.cli import project as project_cli
from pipewright.cli import queue as queue_cli
from pipewright.config import PipewrightConfig, load_config
from pipewright.database.connection import get_engine, get_session_factory
from pipewright.logging import setup_logging
from pipewright.pipeline import Pipeline, create_pipeline

T = TypeVar("T")

app = typer.Typer(
    name="pipewright",
    help="Pipewright: conversation-to-build pipeline orchestration",
    no_args_is_help=True,
)

app.add_typer(queue_cli.app, name="queue", help="Run and inspect the task queue")
app.add_typer(project_cli.app, name="project", help="Inspect and control projects")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Pipewright configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: PipewrightConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

    def run(self, operation: Callable[[Pipeline], Awaitable[T]]) -> T:
        """Run an async operation against a fresh pipeline.

        The pipeline's HTTP clients and the engine's connections are bound to
        the event loop, so both are released before the loop closes.

        Args:
            operation: Coroutine function receiving the pipeline.

        Returns:
            Whatever the operation returns.
        """

        async def _run() -> T:
            pipeline = create_pipeline(self.config, self.session_factory)
            try:
                return await operation(pipeline)
            finally:
                await pipeline.close()
                await self.engine.dispose()

        return asyncio.run(_run())


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: PipewrightConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default: web.host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default: web.port)"),
    ] = None,
) -> None:
    """Start the Pipewright web server (webhooks, queue trigger, API, SSE)."""
    import uvicorn

    from pipewright.web.app import create_app

    config = get_app_context().config
    host = host or config.web.host
    port = port or config.web.port

    console.print("[bold cyan]Starting Pipewright Web Server[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {host}")
    console.print(f"[dim]Port:[/dim] {port}")
    console.print()

    uvicorn.run(create_app(config), host=host, port=port, log_level="info")


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration, configure logging and initialize the context."""
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1) from None

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
