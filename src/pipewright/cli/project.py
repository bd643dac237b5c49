"""Project inspection and control CLI commands."""

from __future__ import annotations

import json
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pipewright.database.models.build_event import BuildEvent
from pipewright.database.models.project import Project, ProjectStatus
from pipewright.database.queries.build_event import list_events
from pipewright.database.queries.project import get_project, list_projects
from pipewright.errors import ProjectNotFoundError
from pipewright.pipeline import Pipeline

app = typer.Typer(help="Project commands")
console = Console()

STATUS_STYLES = {
    ProjectStatus.analyzing: "cyan",
    ProjectStatus.planning: "cyan",
    ProjectStatus.ready_to_build: "blue",
    ProjectStatus.building: "yellow",
    ProjectStatus.completed: "green",
    ProjectStatus.failed: "red",
    ProjectStatus.cancelled: "dim",
}


def _styled(status: ProjectStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


@app.command("list")
def list_command(
    status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum rows")] = 50,
    output: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List projects, newest first."""
    from pipewright.main import get_app_context

    ctx = get_app_context()

    status_filter = None
    if status is not None:
        try:
            status_filter = ProjectStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status:[/red] {status}")
            console.print(f"Valid values: {', '.join(s.value for s in ProjectStatus)}")
            raise typer.Exit(code=1) from None

    async def _list(pipeline: Pipeline) -> list[Project]:
        async with pipeline.session_factory() as session:
            return await list_projects(session, status_filter=status_filter, limit=limit)

    projects = ctx.run(_list)

    if output == "json":
        rows = [
            {
                "id": p.id,
                "conversation_id": p.conversation_id,
                "project_name": p.project_name,
                "status": p.status.value,
                "build_ref": p.build_ref,
                "retry_count": p.retry_count,
                "created_at": p.created_at.isoformat(),
            }
            for p in projects
        ]
        console.print_json(json.dumps(rows))
        return

    if not projects:
        console.print("[dim]No projects found[/dim]")
        return

    table = Table(title=f"Projects ({len(projects)})")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Build")
    table.add_column("Retries", justify="right")
    table.add_column("Created")
    for p in projects:
        table.add_row(
            str(p.id),
            p.project_name,
            _styled(p.status),
            p.build_ref or "-",
            str(p.retry_count),
            p.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def show(
    project_id: Annotated[int, typer.Argument(help="Project ID")],
    events: Annotated[int, typer.Option("--events", "-e", min=0, help="Ledger entries to show")] = 20,
) -> None:
    """Show a project and its build event ledger."""
    from pipewright.main import get_app_context

    ctx = get_app_context()

    async def _show(pipeline: Pipeline) -> tuple[Project | None, list[BuildEvent]]:
        async with pipeline.session_factory() as session:
            project = await get_project(session, project_id)
            if project is None:
                return None, []
            return project, await list_events(session, project_id, limit=max(events, 1))

    project, ledger = ctx.run(_show)
    if project is None:
        console.print(f"[red]Project {project_id} not found[/red]")
        raise typer.Exit(code=1)

    metadata = project.metadata_ or {}
    lines = [
        f"[bold]Name:[/bold] {project.project_name}",
        f"[bold]Conversation:[/bold] {project.conversation_id}",
        f"[bold]Status:[/bold] {_styled(project.status)}",
        f"[bold]Build:[/bold] {project.build_ref or '-'}",
        f"[bold]Retries:[/bold] {project.retry_count}",
        f"[bold]Progress:[/bold] {metadata.get('latest_progress', '-')}",
    ]
    if project.error_message:
        lines.append(f"[bold]Error:[/bold] [red]{project.error_message}[/red] ({project.error_kind})")
    if metadata.get("permanently_failed"):
        lines.append("[bold red]Permanently failed[/bold red]")
    console.print(Panel("\n".join(lines), title=f"Project {project.id}", border_style="cyan"))

    if events and ledger:
        table = Table(title="Build Events")
        table.add_column("ID", justify="right")
        table.add_column("Time")
        table.add_column("Type", style="bold")
        table.add_column("Seq", justify="right")
        table.add_column("Message")
        for event in ledger:
            table.add_row(
                str(event.id),
                event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                event.event_type.value,
                str(event.sequence_number) if event.sequence_number is not None else "-",
                event.message or "",
            )
        console.print(table)


def _report(project_id: int, action: str, outcome: dict[str, Any]) -> None:
    if outcome["applied"]:
        console.print(f"[green]Project {project_id} {action}[/green] (status: {outcome['status']})")
        return
    console.print(
        f"[yellow]Project {project_id} not {action}:[/yellow] "
        f"{outcome.get('reason')} (status: {outcome['status']})"
    )
    raise typer.Exit(code=1)


@app.command()
def retry(project_id: Annotated[int, typer.Argument(help="Project ID")]) -> None:
    """Retry a failed project from analysis."""
    from pipewright.main import get_app_context

    ctx = get_app_context()
    try:
        outcome = ctx.run(lambda pipeline: pipeline.retry_project(project_id))
    except ProjectNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    _report(project_id, "retried", outcome)


@app.command()
def cancel(
    project_id: Annotated[int, typer.Argument(help="Project ID")],
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", "-r", help="Cancellation reason"),
    ] = None,
) -> None:
    """Cancel an active or failed project."""
    from pipewright.main import get_app_context

    ctx = get_app_context()
    try:
        outcome = ctx.run(
            lambda pipeline: pipeline.cancel_project(project_id, reason or "cancelled_via_cli")
        )
    except ProjectNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    _report(project_id, "cancelled", outcome)
