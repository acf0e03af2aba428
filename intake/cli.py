"""
CLI Interface
=============
Command-line interface for the exam intake pipeline.

Usage:
    python -m intake init
    python -m intake project create "Math 1T spring"
    python -m intake ingest <project_id> scans/*.pdf
    python -m intake rubric load <project_id> rubric.json
    python -m intake run <project_id>
    python -m intake serve
"""

from __future__ import annotations

import sys
from contextlib import contextmanager

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from . import crud
from .database import init_db
from .engine import PipelineConfig
from .exceptions import IntakeError

console = Console()


@contextmanager
def _errors_to_exit(debug: bool = False):
    """Print pipeline errors and exit non-zero."""
    try:
        yield
    except (IntakeError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if debug:
            console.print_exception()
        sys.exit(1)


def _config(ctx: click.Context, **overrides) -> PipelineConfig:
    obj = ctx.obj or {}
    return PipelineConfig.from_env(
        db_path=obj.get("db_path"),
        log_level=obj.get("log_level"),
        log_file=obj.get("log_file"),
        **overrides,
    )


@click.group()
@click.version_option(version=__version__, prog_name="exam-intake")
@click.option("--db", "db_path", default=None, help="SQLite database path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.pass_context
def cli(ctx: click.Context, db_path, log_level, log_file):
    """Exam Intake: scan ingestion, analysis and candidate reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj.update(db_path=db_path, log_level=log_level, log_file=log_file)


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the database schema."""
    config = _config(ctx)
    with _errors_to_exit():
        init_db(config.resolved_db_path())
    console.print(f"[green]✓[/] Database ready: {config.resolved_db_path()}")


# ─── Projects ─────────────────────────────────────────────────────────────────


@cli.group()
def project():
    """Create, inspect and delete projects."""


@project.command("create")
@click.argument("name")
@click.pass_context
def project_create(ctx: click.Context, name: str):
    """Create an empty project."""
    with _errors_to_exit():
        proj = crud.create_project(name, _config(ctx))
    console.print(f"[green]✓[/] Created project [bold]{proj.id}[/] ({name})")


@project.command("list")
@click.pass_context
def project_list(ctx: click.Context):
    """List all projects."""
    with _errors_to_exit():
        rows = crud.list_projects(_config(ctx))

    if not rows:
        console.print("[yellow]No projects yet.[/]")
        return

    table = Table(title="Projects", border_style="cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Status")
    for row in rows:
        table.add_row(row["id"], row["name"], row["status"])
    console.print(table)


@project.command("show")
@click.argument("project_id")
@click.pass_context
def project_show(ctx: click.Context, project_id: str):
    """Show candidates, pages and pool status of a project."""
    with _errors_to_exit():
        proj = crud.get_project(project_id, _config(ctx))
        if proj is None:
            raise IntakeError(f"Project not found: {project_id}")
    _display_project(proj)


@project.command("delete")
@click.argument("project_id")
@click.confirmation_option(prompt="Delete this project and all its media?")
@click.pass_context
def project_delete(ctx: click.Context, project_id: str):
    """Delete a project and its media."""
    with _errors_to_exit():
        deleted = crud.delete_project(project_id, _config(ctx))
    if deleted:
        console.print(f"[green]✓[/] Deleted project {project_id}")
    else:
        console.print(f"[yellow]Project not found: {project_id}[/]")


# ─── Ingestion / Rubric ───────────────────────────────────────────────────────


@cli.command()
@click.argument("project_id")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--dpi", default=None, type=int, help="PDF render resolution")
@click.pass_context
def ingest(ctx: click.Context, project_id: str, files: tuple, dpi):
    """Add scanned/digital files to a project's pending pool."""
    with _errors_to_exit():
        pages = crud.ingest_files(
            project_id, list(files), _config(ctx, render_dpi=dpi)
        )
    console.print(
        f"[green]✓[/] Ingested {len(pages)} page(s) from {len(files)} file(s)"
    )


@cli.group()
def rubric():
    """Manage the project rubric (task whitelist)."""


@rubric.command("load")
@click.argument("project_id")
@click.argument("rubric_path", type=click.Path(exists=True))
@click.pass_context
def rubric_load(ctx: click.Context, project_id: str, rubric_path: str):
    """Load a rubric from a JSON file."""
    with _errors_to_exit():
        rub = crud.load_rubric_file(rubric_path)
        crud.set_rubric(project_id, rub, _config(ctx))
    labels = ", ".join(
        f"{c.task_number}{c.sub_task}" for c in rub.criteria
    )
    console.print(
        f"[green]✓[/] Rubric loaded: {len(rub.criteria)} criteria [dim]({labels})[/]"
    )


# ─── Batch ────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("project_id")
@click.option("--model", default=None, help="Inference model name")
@click.option(
    "--halt-on-quota",
    is_flag=True,
    default=None,
    help="Stop the batch after the first quota failure",
)
@click.pass_context
def run(ctx: click.Context, project_id: str, model, halt_on_quota):
    """Analyze all pending pages of a project, one at a time."""
    config = _config(ctx, model=model, halt_on_quota=halt_on_quota)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Exam Intake v{__version__}[/]\n"
            f"[dim]Project: {project_id} | Model: {config.model}[/]",
            border_style="cyan",
        )
    )
    console.print()

    with _errors_to_exit(debug=config.log_level == "DEBUG"):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Analyzing pages...", total=None)

            def on_progress(completed: int, total: int):
                progress.update(task, completed=completed, total=total)

            result = crud.run_batch(
                project_id, config, progress_callback=on_progress
            )

    table = Table(title="Batch Summary", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Pages processed", f"{result.completed}/{result.total}")
    table.add_row(
        "Errors",
        f"[red]{result.errors}[/]" if result.errors else "0",
    )
    console.print(table)

    if result.total == 0:
        proj = crud.get_project(project_id, config)
        if proj is not None and proj.rubric is None:
            console.print(
                "[yellow]No rubric loaded: pages stay pending until one is.[/]"
            )


# ─── Page / Candidate Operations ──────────────────────────────────────────────


@cli.command()
@click.argument("project_id")
@click.argument("page_id")
@click.pass_context
def retry(ctx: click.Context, project_id: str, page_id: str):
    """Put a page back into the pending pool."""
    with _errors_to_exit():
        crud.retry_page(project_id, page_id, _config(ctx))
    console.print(f"[green]✓[/] Page {page_id} queued for retry")


@cli.command()
@click.argument("project_id")
@click.argument("page_id")
@click.pass_context
def rescan(ctx: click.Context, project_id: str, page_id: str):
    """Re-analyze a page, bypassing the result cache."""
    with _errors_to_exit():
        crud.rescan_page(project_id, page_id, _config(ctx))
    console.print(f"[green]✓[/] Page {page_id} queued for forced rescan")


@cli.command()
@click.argument("project_id")
@click.argument("page_id")
@click.pass_context
def rotate(ctx: click.Context, project_id: str, page_id: str):
    """Rotate a page a quarter turn clockwise."""
    with _errors_to_exit():
        page = crud.rotate_page(project_id, page_id, _config(ctx))
    console.print(f"[green]✓[/] Page {page_id} rotation: {page.rotation}°")


@cli.command()
@click.argument("project_id")
@click.argument("page_id")
@click.argument("target_candidate")
@click.pass_context
def move(ctx: click.Context, project_id: str, page_id: str, target_candidate: str):
    """Reassign a page to another candidate."""
    with _errors_to_exit():
        cand = crud.move_page(project_id, page_id, target_candidate, _config(ctx))
    console.print(f"[green]✓[/] Page {page_id} → {cand.name}")


@cli.command()
@click.argument("project_id")
@click.argument("source_candidate")
@click.argument("target_candidate")
@click.pass_context
def merge(ctx: click.Context, project_id: str, source_candidate: str, target_candidate: str):
    """Fold one candidate's pages into another and delete it."""
    with _errors_to_exit():
        cand = crud.merge_candidates(
            project_id, source_candidate, target_candidate, _config(ctx)
        )
    console.print(
        f"[green]✓[/] Merged {source_candidate} into {cand.id} "
        f"({len(cand.pages)} page(s))"
    )


# ─── Cache ────────────────────────────────────────────────────────────────────


@cli.group()
def cache():
    """Inspect or clear the global result cache."""


@cache.command("stats")
@click.pass_context
def cache_stats(ctx: click.Context):
    with _errors_to_exit():
        stats = crud.cache_stats(_config(ctx))
    console.print(f"Cache entries: [bold]{stats['entries']}[/] ({stats['db_path']})")


@cache.command("clear")
@click.confirmation_option(prompt="Clear every cached analysis result?")
@click.pass_context
def cache_clear(ctx: click.Context):
    with _errors_to_exit():
        removed = crud.clear_cache(_config(ctx))
    console.print(f"[green]✓[/] Removed {removed} cache entries")


# ─── Server ───────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, debug: bool):
    """Start the HTTP API for status polling and batch control."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Exam Intake API[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug, config=_config(ctx))


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_project(proj):
    summary = crud.project_summary(proj)

    console.print()
    info = Table(title=f"Project {proj.id}", border_style="cyan")
    info.add_column("Property", style="bold")
    info.add_column("Value")
    info.add_row("Name", proj.name)
    info.add_row("Status", proj.status.value)
    info.add_row("Rubric", "yes" if proj.rubric else "[yellow]none[/]")
    info.add_row("Candidates", str(summary["candidate_count"]))
    pool = summary["unprocessed"]
    info.add_row(
        "Pool",
        ", ".join(f"{k}: {v}" for k, v in sorted(pool.items())) or "empty",
    )
    console.print(info)
    console.print()

    if proj.candidates:
        table = Table(title="Candidates", border_style="green")
        table.add_column("Candidate", style="bold")
        table.add_column("Pages", justify="right")
        table.add_column("Order")
        table.add_column("Tasks")
        for cand in summary["candidates"]:
            order = " ".join(
                f"{(p['part'] or '?').replace('Part ', 'P')}:{p['page_number'] or '?'}"
                for p in cand["pages"]
            )
            tasks = sorted({t for p in cand["pages"] for t in p["tasks"]})
            table.add_row(
                f"{cand['name']} [dim]({cand['id']})[/]",
                str(len(cand["pages"])),
                order,
                ", ".join(tasks),
            )
        console.print(table)
        console.print()

    if summary["errors"]:
        errors = Table(title="Pages With Errors", border_style="red")
        errors.add_column("Page", style="bold")
        errors.add_column("File")
        errors.add_column("Cause")
        for err in summary["errors"]:
            errors.add_row(err["id"], err["file_name"], err["label"])
        console.print(errors)
        console.print()


# ─── Entry point (for python -m intake.cli) ───────────────────────────────────


if __name__ == "__main__":
    cli()
