"""
CLI for atomdesk.

Drives the sync engine from the terminal: clone with a live progress bar,
inspect status and diffs, commit, and sync with a remote.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TextColumn
from rich.syntax import Syntax
from rich.table import Table

from atomdesk import __version__
from atomdesk.git.auth import AuthCredential, TokenCredential
from atomdesk.git.exceptions import GitError
from atomdesk.git.models import (
    Author,
    CloneRequest,
    FileStatus,
    ProgressEvent,
    PullStrategy,
    SyncResult,
)
from atomdesk.git.service import GitService
from atomdesk.settings.config import SyncSettings

# Load environment variables
load_dotenv()

console = Console()

_STATUS_STYLES = {
    FileStatus.ADDED: "green",
    FileStatus.MODIFIED: "yellow",
    FileStatus.DELETED: "red",
    FileStatus.RENAMED: "cyan",
}


def setup_logging(verbose: bool = False) -> None:
    """Setup rich logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    # Reduce noise from the git libraries
    logging.getLogger("git.cmd").setLevel(logging.WARNING)
    logging.getLogger("dulwich").setLevel(logging.WARNING)


def _service(ctx: click.Context, sink=None) -> GitService:
    return GitService(ctx.obj["settings"], sink=sink)


def _run(coro):
    """Run a service call, printing engine errors instead of tracebacks."""
    try:
        return asyncio.run(coro)
    except GitError as e:
        console.print(f"[bold red]Error ({e.kind.value}):[/bold red] {e.message}")
        sys.exit(1)


def _token(token: Optional[str]) -> Optional[AuthCredential]:
    return TokenCredential(token=token) if token else None


def _print_sync(result: SyncResult) -> None:
    if result.has_conflicts:
        console.print(f"[bold red]{result.message}[/bold red]")
        for path in result.conflicted_files:
            console.print(f"  [red]both modified:[/red] {path}")
        sys.exit(1)
    if not result.success:
        console.print(f"[bold yellow]{result.message}[/bold yellow]")
        sys.exit(1)
    console.print(f"[green]{result.message}[/green] [dim](ahead {result.ahead}, behind {result.behind})[/dim]")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to a YAML or JSON settings file",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool):
    """AtomDesk CLI - clone, inspect and sync Git repositories."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = SyncSettings.from_file(config) if config else SyncSettings()


@cli.command()
@click.argument("url")
@click.argument("destination", type=click.Path(file_okay=False))
@click.option("--branch", "-b", default=None, help="Branch to check out")
@click.option("--depth", type=int, default=None, help="Create a shallow clone")
@click.option("--recursive", is_flag=True, help="Initialize submodules")
@click.option("--token", envvar="ATOMDESK_TOKEN", default=None, help="Access token for HTTPS")
@click.pass_context
def clone(
    ctx: click.Context,
    url: str,
    destination: str,
    branch: Optional[str],
    depth: Optional[int],
    recursive: bool,
    token: Optional[str],
):
    """
    Clone a repository.

    Examples:

        atomdesk clone https://github.com/user/repo.git ./repo

        atomdesk clone git@github.com:user/repo.git ./repo --depth 1
    """
    request = CloneRequest(
        url=url,
        destination=Path(destination),
        branch=branch,
        depth=depth,
        recursive=recursive,
        credential=_token(token),
    )

    with Progress(
        TextColumn("[bold blue]{task.fields[stage]}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("clone", total=100, stage="Initializing")

        def on_event(event: ProgressEvent) -> None:
            progress.update(task, completed=event.percent, stage=event.stage.value)

        result = _run(_service(ctx, on_event).clone(request))

    console.print(
        f"[green]Cloned into {result.path}[/green] "
        f"[dim]({result.stats.object_count} objects, {result.stats.file_count} files, "
        f"{result.stats.duration_ms} ms{', external git' if result.used_external else ''})[/dim]"
    )


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.pass_context
def status(ctx: click.Context, path: str):
    """Show working tree status."""
    result = _run(_service(ctx).status(path))

    head = result.branch or f"detached at {(result.commit or '')[:7]}"
    line = f"On branch [bold]{head}[/bold]"
    if result.upstream:
        line += f" [dim]tracking {result.upstream} (ahead {result.ahead}, behind {result.behind})[/dim]"
    console.print(line)

    if result.is_clean:
        console.print("[green]Nothing to commit, working tree clean[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Staged")
    table.add_column("+/-", justify="right")
    for entry in result.files:
        style = _STATUS_STYLES.get(entry.status, "white")
        name = f"{entry.old_path} -> {entry.path}" if entry.old_path else entry.path
        table.add_row(
            name,
            f"[{style}]{entry.status.value}[/{style}]",
            "yes" if entry.staged else "",
            f"+{entry.additions}/-{entry.deletions}",
        )
    console.print(table)


@cli.command()
@click.argument("file")
@click.option("--path", "-p", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--staged", is_flag=True, help="Compare the index with HEAD")
@click.pass_context
def diff(ctx: click.Context, file: str, path: str, staged: bool):
    """Show the diff of one file."""
    text = _run(_service(ctx).diff(path, file, staged=staged))
    if text:
        console.print(Syntax(text, "diff"))


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--remote", "-r", default=None, help="Remote name (default: detected)")
@click.option("--token", envvar="ATOMDESK_TOKEN", default=None, help="Access token for HTTPS")
@click.pass_context
def fetch(ctx: click.Context, path: str, remote: Optional[str], token: Optional[str]):
    """Fetch from a remote."""
    _print_sync(_run(_service(ctx).fetch(path, remote, credential=_token(token))))


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--remote", "-r", default=None, help="Remote name (default: detected)")
@click.option("--rebase", is_flag=True, help="Rebase local commits instead of merging")
@click.option("--token", envvar="ATOMDESK_TOKEN", default=None, help="Access token for HTTPS")
@click.pass_context
def pull(ctx: click.Context, path: str, remote: Optional[str], rebase: bool, token: Optional[str]):
    """Fetch and integrate the upstream branch."""
    strategy = PullStrategy.REBASE if rebase else PullStrategy.MERGE
    _print_sync(_run(_service(ctx).pull(path, remote, strategy=strategy, credential=_token(token))))


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--remote", "-r", default=None, help="Remote name (default: detected)")
@click.option("--force", "-f", is_flag=True, help="Allow non-fast-forward updates")
@click.option("--token", envvar="ATOMDESK_TOKEN", default=None, help="Access token for HTTPS")
@click.pass_context
def push(ctx: click.Context, path: str, remote: Optional[str], force: bool, token: Optional[str]):
    """Push the current branch."""
    _print_sync(_run(_service(ctx).push(path, remote, force=force, credential=_token(token))))


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--create", "create_name", default=None, help="Create a branch with this name")
@click.option("--start-point", default=None, help="Start point for --create")
@click.option("--delete", "delete_name", default=None, help="Delete this branch")
@click.option("--force", is_flag=True, help="Delete even with unpushed commits")
@click.pass_context
def branches(
    ctx: click.Context,
    path: str,
    create_name: Optional[str],
    start_point: Optional[str],
    delete_name: Optional[str],
    force: bool,
):
    """List, create or delete branches."""
    service = _service(ctx)
    if create_name:
        created = _run(service.create_branch(path, create_name, start_point))
        console.print(f"[green]Created branch {created.name}[/green]")
        return
    if delete_name:
        _run(service.delete_branch(path, delete_name, force=force))
        console.print(f"[green]Deleted branch {delete_name}[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("")
    table.add_column("Branch")
    table.add_column("Upstream")
    table.add_column("Ahead/Behind", justify="right")
    table.add_column("Last commit")
    for info in _run(service.list_branches(path)):
        name = f"[red]{info.name}[/red]" if info.is_remote else info.name
        last = f"{info.last_commit.short_sha} {info.last_commit.subject}" if info.last_commit else ""
        table.add_row(
            "*" if info.is_current else "",
            name,
            info.upstream or "",
            f"{info.ahead}/{info.behind}" if info.upstream else "",
            last,
        )
    console.print(table)


@cli.command()
@click.argument("branch")
@click.option("--path", "-p", type=click.Path(exists=True, file_okay=False), default=".")
@click.pass_context
def switch(ctx: click.Context, branch: str, path: str):
    """
    Switch to a branch.

    A remote branch such as origin/feature is checked out as a new local
    branch tracking it.
    """
    service = _service(ctx)
    remotes = {r.name for r in _run(service.remotes(path))}
    if branch.partition("/")[0] in remotes:
        result = _run(service.checkout_remote_branch(path, branch))
    else:
        result = _run(service.switch_branch(path, branch))

    if result.success:
        console.print(f"[green]{result.message}[/green]")
        return
    console.print(f"[bold yellow]{result.message}[/bold yellow]")
    for file in result.uncommitted_files:
        console.print(f"  [yellow]{file}[/yellow]")
    sys.exit(1)


@cli.command()
@click.option("--path", "-p", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--message", "-m", required=True, help="Commit summary")
@click.option("--description", "-d", default=None, help="Commit body")
@click.option("--all", "-a", "stage_all", is_flag=True, help="Stage every change first")
@click.option("--amend", is_flag=True, help="Replace the last commit")
@click.option("--signoff", "-s", is_flag=True, help="Add a Signed-off-by trailer")
@click.option("--author", default=None, help="Author as 'Name <email>'")
@click.pass_context
def commit(
    ctx: click.Context,
    path: str,
    message: str,
    description: Optional[str],
    stage_all: bool,
    amend: bool,
    signoff: bool,
    author: Optional[str],
):
    """Commit staged changes."""
    author_model = None
    if author:
        name, _, email = author.partition("<")
        if not email.endswith(">"):
            raise click.BadParameter("expected 'Name <email>'", param_hint="--author")
        author_model = Author(name=name.strip(), email=email[:-1].strip())

    service = _service(ctx)

    async def run() -> str:
        if stage_all:
            current = await service.status(path)
            if current.changed_paths:
                await service.stage(path, current.changed_paths)
        return await service.commit(
            path,
            message,
            description=description,
            author=author_model,
            amend=amend,
            signoff=signoff,
        )

    sha = _run(run())
    console.print(f"[green]Created commit {sha[:7]}[/green]")


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--limit", "-n", type=int, default=20, help="Number of commits")
@click.option("--skip", type=int, default=0, help="Commits to skip")
@click.pass_context
def history(ctx: click.Context, path: str, limit: int, skip: int):
    """Show commit history."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Commit", style="yellow")
    table.add_column("Author")
    table.add_column("Date", style="dim")
    table.add_column("Subject")
    for item in _run(_service(ctx).history(path, limit=limit, skip=skip)):
        subject = f"{item.subject} [dim](merge)[/dim]" if item.is_merge else item.subject
        table.add_row(item.short_sha, item.author, item.timestamp.strftime("%Y-%m-%d %H:%M"), subject)
    console.print(table)


if __name__ == "__main__":
    cli()
