"""
gat: review and refresh many independent Git repositories from one place.

Lists every configured repository with its current branch and description,
shows the uncommitted changes of each working copy, and fetches remote
history while streaming transfer progress.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ._version import __version__
from .backend import GitBackend
from .config import Settings, load_config
from .errors import (
    BackendError,
    BareRepositoryError,
    ConfigLoadError,
    CredentialError,
    GatError,
)
from .formatters import NO_BRANCH, OutputFormatter
from .models import (
    ChangeKind,
    HeadState,
    RemoteCallbacks,
    RepositoryDescriptor,
    SshKeyCredential,
    StatusEntry,
    StatusFlag,
    TransferProgress,
    WorkingTreeChange,
)

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


# =============================================================================
# Status Classification
# =============================================================================

# First matching flag wins; a backend may report composite flag sets.
INDEX_PRECEDENCE = (
    (StatusFlag.INDEX_NEW, ChangeKind.ADDED),
    (StatusFlag.INDEX_MODIFIED, ChangeKind.MODIFIED),
    (StatusFlag.INDEX_DELETED, ChangeKind.DELETED),
    (StatusFlag.INDEX_RENAMED, ChangeKind.RENAMED),
    (StatusFlag.INDEX_TYPECHANGE, ChangeKind.TYPE_CHANGED),
    (StatusFlag.CONFLICTED, ChangeKind.CONFLICTED),
)

WORKTREE_PRECEDENCE = (
    (StatusFlag.WT_NEW, ChangeKind.UNTRACKED),
    (StatusFlag.WT_MODIFIED, ChangeKind.MODIFIED),
    (StatusFlag.WT_DELETED, ChangeKind.DELETED),
    (StatusFlag.WT_RENAMED, ChangeKind.RENAMED),
    (StatusFlag.WT_TYPECHANGE, ChangeKind.TYPE_CHANGED),
    (StatusFlag.CONFLICTED, ChangeKind.CONFLICTED),
)


def _first_match(
    flags: StatusFlag, table: tuple[tuple[StatusFlag, ChangeKind], ...]
) -> ChangeKind:
    for flag, kind in table:
        if flags & flag:
            return kind
    return ChangeKind.UNMODIFIED


def classify_flags(flags: StatusFlag) -> tuple[ChangeKind, ChangeKind]:
    """Map a raw status flag set to its (index, worktree) change kinds.

    Ignored paths show as ignored on both sides whatever else is set, and an
    untracked path with no index change shows as untracked on both sides.
    """
    if flags & StatusFlag.IGNORED:
        return ChangeKind.IGNORED, ChangeKind.IGNORED
    index = _first_match(flags, INDEX_PRECEDENCE)
    worktree = _first_match(flags, WORKTREE_PRECEDENCE)
    if worktree is ChangeKind.UNTRACKED and index is ChangeKind.UNMODIFIED:
        index = ChangeKind.UNTRACKED
    return index, worktree


def classify_entry(entry: StatusEntry) -> WorkingTreeChange:
    index, worktree = classify_flags(entry.flags)
    return WorkingTreeChange(path=entry.path, index_status=index, worktree_status=worktree)


# =============================================================================
# Credentials
# =============================================================================


class CredentialProvider(Protocol):
    def provide(self, url: str, username_hint: str | None) -> SshKeyCredential: ...


class SshKeyCredentialProvider:
    """Hands out a fixed private key, without passphrase, for the URL's user."""

    def __init__(self, key_path: Path):
        self.key_path = key_path

    def provide(self, url: str, username_hint: str | None) -> SshKeyCredential:
        if not username_hint:
            raise CredentialError(f"remote URL '{url}' does not name a user for SSH")
        logger.debug("Using SSH key %s for %s@%s", self.key_path, username_hint, url)
        return SshKeyCredential(username=username_hint, private_key=self.key_path)


# =============================================================================
# Repository Operations
# =============================================================================


class TitleReporter:
    """Print the header line of a repository: name, branch, location, description."""

    def __init__(self, backend: Any, formatter: OutputFormatter):
        self.backend = backend
        self.formatter = formatter

    def report(self, descriptor: RepositoryDescriptor):
        """Print the title and return the opened repository handle.

        Bare repositories are announced on the error console and rejected
        before HEAD is queried.
        """
        repo = self.backend.open(descriptor.path)
        if repo.is_bare():
            self.formatter.print_bare_warning(descriptor)
            raise BareRepositoryError(descriptor.display_name, descriptor.location)

        head = repo.head()
        match head.state:
            case HeadState.RESOLVED:
                branch = head.shorthand
            case HeadState.UNBORN:
                branch = NO_BRANCH
            case HeadState.ERROR:
                raise BackendError(f"can't get HEAD: {head.error}")

        self.formatter.print_title(descriptor, branch)
        return repo


class StatusClassifier:
    """Print one classified line per changed path of a working copy."""

    def __init__(self, titles: TitleReporter, formatter: OutputFormatter):
        self.titles = titles
        self.formatter = formatter

    def classify(self, descriptor: RepositoryDescriptor) -> list[WorkingTreeChange]:
        repo = self.titles.report(descriptor)
        if repo.is_bare():
            raise BareRepositoryError(descriptor.display_name, descriptor.location)

        entries = repo.statuses(include_untracked=True, include_ignored=False)
        if not entries:
            self.formatter.print_nothing_changed()
            return []

        changes = [classify_entry(entry) for entry in entries]
        for change in changes:
            self.formatter.print_change(change)
        return changes


class TransferProgressView:
    """Show object counters until everything is received, then delta resolution."""

    def __init__(self, formatter: OutputFormatter):
        self.formatter = formatter
        self.resolving = False

    def update(self, progress: TransferProgress):
        if progress.total_objects == 0:
            return
        if progress.receiving_done:
            self.resolving = True
        self.formatter.write_transfer_progress(progress, resolving=self.resolving)


class FetchOrchestrator:
    """Download from a repository's remote and settle FETCH_HEAD."""

    def __init__(
        self,
        titles: TitleReporter,
        formatter: OutputFormatter,
        credentials: CredentialProvider,
        remote_name: str = DEFAULT_REMOTE,
    ):
        self.titles = titles
        self.formatter = formatter
        self.credentials = credentials
        self.remote_name = remote_name

    def fetch(self, descriptor: RepositoryDescriptor) -> TransferProgress:
        repo = self.titles.report(descriptor)
        if repo.is_bare():
            raise BareRepositoryError(descriptor.display_name, descriptor.location)

        remote = repo.find_remote(self.remote_name)
        view = TransferProgressView(self.formatter)
        callbacks = RemoteCallbacks(
            credentials=self.credentials.provide,
            sideband_progress=self.formatter.write_sideband,
            update_tips=self.formatter.print_tip_update,
            transfer_progress=view.update,
        )
        remote.download([], callbacks)

        stats = remote.stats()
        self.formatter.print_fetch_summary(stats)
        logger.debug(
            "Fetched %s: %d/%d objects, %d bytes",
            descriptor.display_name,
            stats.indexed_objects,
            stats.total_objects,
            stats.received_bytes,
        )

        remote.disconnect()
        remote.update_tips(update_fetchhead=True)
        return stats


# =============================================================================
# Fleet Manager
# =============================================================================


class Command(StrEnum):
    LIST = "list"
    STATUS = "status"
    FETCH = "fetch"
    PULL = "pull"


@dataclass
class OperationResult:
    """Result of running a command against one repository."""

    name: str
    location: str
    success: bool
    operation: str
    error: str = ""


class FleetManager:
    """Run a command against every configured repository, in declaration order.

    A failing repository is reported on the error console and never stops
    the others. With ``max_workers > 1`` repositories run in parallel; each
    one's output is buffered and flushed whole, in declaration order.
    """

    def __init__(
        self,
        descriptors: list[RepositoryDescriptor],
        console: Console,
        err_console: Console,
        *,
        backend: Any = None,
        credentials: CredentialProvider | None = None,
        max_workers: int = 1,
    ):
        self.descriptors = descriptors
        self.console = console
        self.err_console = err_console
        self.backend = backend if backend is not None else GitBackend()
        self.credentials = credentials or SshKeyCredentialProvider(
            Settings.from_environment().ssh_key_path
        )
        self.max_workers = max_workers

    def _operation(
        self, command: Command, formatter: OutputFormatter
    ) -> Callable[[RepositoryDescriptor], Any]:
        titles = TitleReporter(self.backend, formatter)
        match command:
            case Command.LIST:
                return titles.report
            case Command.STATUS:
                return StatusClassifier(titles, formatter).classify
            case Command.FETCH:
                return FetchOrchestrator(titles, formatter, self.credentials).fetch
            case Command.PULL:
                # Integrating fetched history is not implemented; pull only reports the title.
                return titles.report
        raise ValueError(f"unknown command: {command}")

    def run_one(
        self, command: Command, descriptor: RepositoryDescriptor, formatter: OutputFormatter
    ) -> OperationResult:
        name = descriptor.display_name
        try:
            self._operation(command, formatter)(descriptor)
        except GatError as e:
            logger.debug("%s failed for %s", command, name, exc_info=True)
            formatter.print_failure(name, e)
            return OperationResult(name, descriptor.location, False, command.value, str(e))
        return OperationResult(name, descriptor.location, True, command.value)

    def _buffered_console(self, template: Console) -> Console:
        return Console(
            file=io.StringIO(),
            force_terminal=template.is_terminal,
            color_system=template.color_system,
            width=template.width,
            highlight=False,
        )

    def _run_buffered(
        self, command: Command, descriptor: RepositoryDescriptor
    ) -> tuple[OperationResult, str, str]:
        console = self._buffered_console(self.console)
        err_console = self._buffered_console(self.err_console)
        result = self.run_one(command, descriptor, OutputFormatter(console, err_console))
        return result, console.file.getvalue(), err_console.file.getvalue()

    def run(self, command: Command) -> list[OperationResult]:
        """Run ``command`` for each repository and collect the results."""
        if self.max_workers <= 1 or len(self.descriptors) <= 1:
            formatter = OutputFormatter(self.console, self.err_console)
            return [self.run_one(command, d, formatter) for d in self.descriptors]

        results = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self._run_buffered, command, d) for d in self.descriptors]
            for future in futures:
                result, out, err = future.result()
                self.console.file.write(out)
                self.console.file.flush()
                self.err_console.file.write(err)
                self.err_console.file.flush()
                results.append(result)
        return results


# =============================================================================
# CLI Application
# =============================================================================


EXIT_REPOSITORY_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def configure_logging(verbose: bool = False) -> None:
    """Send the package's log records to standard error through rich."""
    package_logger = logging.getLogger("gat")
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        package_logger.addHandler(handler)


app = typer.Typer(
    name="gat",
    help="Review and refresh many Git repositories from one place.",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"gat {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file (default: $GAT_CONFIG or ~/.gatconfig)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log git commands and failures in detail",
    ),
):
    """gat: review and refresh many Git repositories from one place."""
    configure_logging(verbose)
    settings = Settings.from_environment()
    if config is not None:
        settings = replace(settings, config_path=config)
    ctx.obj = settings


def get_consoles() -> tuple[Console, Console]:
    """Create stdout and stderr consoles."""
    return Console(highlight=False), Console(stderr=True, highlight=False)


def _dispatch(ctx: typer.Context, command: Command, jobs: int = 1) -> None:
    settings: Settings = ctx.obj
    console, err_console = get_consoles()

    try:
        descriptors = load_config(settings.config_path)
    except ConfigLoadError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/]", soft_wrap=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    fleet = FleetManager(
        descriptors,
        console,
        err_console,
        credentials=SshKeyCredentialProvider(settings.ssh_key_path),
        max_workers=jobs,
    )
    try:
        results = fleet.run(command)
    except KeyboardInterrupt:
        err_console.print("[red]Interrupted[/]")
        raise typer.Exit(EXIT_INTERRUPTED)

    failed = [r for r in results if not r.success]
    if failed:
        OutputFormatter(console, err_console).print_failure_summary(len(failed), len(results))
        raise typer.Exit(EXIT_REPOSITORY_FAILED)


JOBS_OPTION = typer.Option(
    1,
    "--jobs",
    "-j",
    min=1,
    help="Number of repositories to process in parallel (output is buffered when > 1)",
)


@app.command(name="list")
def list_repos(ctx: typer.Context):
    """List configured repositories with their current branch."""
    _dispatch(ctx, Command.LIST)


@app.command()
def status(ctx: typer.Context, jobs: int = JOBS_OPTION):
    """Show uncommitted changes of every repository."""
    _dispatch(ctx, Command.STATUS, jobs)


@app.command()
def fetch(ctx: typer.Context, jobs: int = JOBS_OPTION):
    """Fetch every repository from its 'origin' remote."""
    _dispatch(ctx, Command.FETCH, jobs)


@app.command(name="pull")
def pull_repos(ctx: typer.Context):
    """Show repository titles (merging fetched history is not implemented)."""
    _dispatch(ctx, Command.PULL)
