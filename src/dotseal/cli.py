# src/dotseal/cli.py: Command-line interface.
# Implemented using Typer, this module provides the 'dotseal' command. It loads
# the configuration, sets up logging from it, and maps every DotsealError onto
# its exit code. Output is rendered with rich on stderr.

import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import load_config
from .ops import KEEP_LOCAL, KEEP_REMOTE, Dotseal
from .store import FileStatus
from .util.errors import DotsealError, ExitCode
from .util.log import setup_logging
from .util.paths import default_config_path

app = typer.Typer(
    name="dotseal",
    help="Synchronize encrypted dotfiles through a git remote.",
    add_completion=False,
)

console = Console(stderr=True)

STATUS_STYLES = {
    FileStatus.UNCHANGED: "green",
    FileStatus.MODIFIED: "yellow",
    FileStatus.MISSING: "red",
    FileStatus.PENDING: "cyan",
    FileStatus.CONFLICTED: "bold red",
    FileStatus.NOT_MATERIALIZED: "magenta",
}


def version_callback(value: bool):
    if value:
        print(f"dotseal version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to the config.toml file. [default: {default_config_path()}]",
    ),
    branch: Optional[str] = typer.Option(
        None,
        "--branch",
        "-b",
        help="Upstream branch to use for this run instead of upstream.branch. The config file is not changed.",
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """
    dotseal: encrypted dotfile synchronization.
    """
    # Each command loads the config itself, after its own options (--help) are parsed.
    ctx.obj = {"config_path": config_path, "branch": branch}


def _dotseal(ctx: typer.Context) -> Dotseal:
    options = ctx.obj
    try:
        cfg = load_config(options["config_path"])
    except DotsealError as e:
        console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
        raise typer.Exit(code=e.exit_code)
    setup_logging(cfg.logging.level, cfg.logging.json_format)
    return Dotseal(cfg, branch=options["branch"])


@app.command()
def init(ctx: typer.Context):
    """Clone the upstream repository into the local cache."""
    repo = _dotseal(ctx).init()
    console.print(f"[bold green]Cache ready at[/bold green] {repo.path}")


@app.command()
def track(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Files to start tracking."),
):
    """Track files. They are sealed and pushed by the next sync."""
    ds = _dotseal(ctx)
    for path in paths:
        tracked = ds.track(path)
        console.print(f"Tracking [bold cyan]{tracked.user_path}[/bold cyan]")


@app.command()
def untrack(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Files to stop tracking."),
):
    """Stop tracking files. The files themselves are left in place."""
    ds = _dotseal(ctx)
    for path in paths:
        tracked = ds.untrack(path)
        console.print(f"No longer tracking [bold cyan]{tracked.user_path}[/bold cyan]")


@app.command()
def sync(ctx: typer.Context):
    """Pull, apply, seal, commit, and push in one pass."""
    with console.status("Syncing...", spinner="dots"):
        result = _dotseal(ctx).sync()

    for path in sorted(result.applied):
        console.print(f"[green]updated[/green]   {path}")
    for path in sorted(result.conflicts):
        console.print(f"[bold red]conflict[/bold red]  {path}")
    for path, err in result.errors:
        console.print(f"[red]error[/red]     {path}: {err}", highlight=False)

    code = result.exit_code()
    if code == ExitCode.OK:
        pushed = " and pushed" if result.pushed else ""
        console.print(f"[bold green]Sync complete{pushed}.[/bold green]")
    elif result.conflicts:
        console.print("Resolve conflicts with [bold]dotseal resolve PATH --keep local|remote[/bold].")
    raise typer.Exit(code=int(code))


@app.command()
def status(ctx: typer.Context):
    """Show the local status of every tracked file."""
    entries = _dotseal(ctx).status()
    table = Table("Path", "Status")
    for tracked, file_status in entries:
        style = STATUS_STYLES[file_status]
        table.add_row(str(tracked.user_path), f"[{style}]{file_status.value}[/{style}]")
    Console().print(table)
    if any(file_status is FileStatus.CONFLICTED for _, file_status in entries):
        raise typer.Exit(code=int(ExitCode.CONFLICTS))


@app.command("list")
def list_files(ctx: typer.Context):
    """List tracked files and where their blobs live in the repository."""
    table = Table("Path", "Repository path")
    for tracked in _dotseal(ctx).manifest():
        table.add_row(str(tracked.user_path), tracked.repo_path)
    Console().print(table)


@app.command()
def branches(ctx: typer.Context):
    """List the branches known to the cache. The one in use is marked."""
    ds = _dotseal(ctx)
    current = ds.current_branch()
    names = ds.branches()
    if current not in names:
        names = sorted(names + [current])
    for name in names:
        marker = "*" if name == current else " "
        print(f"{marker} {name}")


@app.command()
def branch(ctx: typer.Context):
    """Show the branch this run syncs with."""
    print(_dotseal(ctx).current_branch())


@app.command()
def resolve(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="The conflicted file."),
    keep: str = typer.Option(..., "--keep", help=f"Which side to keep: '{KEEP_LOCAL}' or '{KEEP_REMOTE}'."),
):
    """Resolve a conflict by keeping the local or the remote version."""
    if keep not in (KEEP_LOCAL, KEEP_REMOTE):
        console.print(f"[bold red]Error:[/bold red] --keep must be '{KEEP_LOCAL}' or '{KEEP_REMOTE}'.")
        raise typer.Exit(code=int(ExitCode.UNKNOWN))
    tracked = _dotseal(ctx).resolve(path, keep)
    console.print(f"Resolved [bold cyan]{tracked.user_path}[/bold cyan] (kept {keep})")


def run_cli():
    """Main entry point for the CLI application."""
    try:
        app()
    except typer.Exit:
        raise
    except DotsealError as e:
        console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
        sys.exit(int(e.exit_code))
    except Exception as e:
        console.print(f"[bold red]An unexpected error occurred:[/bold red] {e}")
        sys.exit(int(ExitCode.UNKNOWN))


if __name__ == "__main__":
    run_cli()
