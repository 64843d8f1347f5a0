"""Console output for titles, status lines and fetch progress."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.text import Text

from .models import ChangeKind, TransferProgress, WorkingTreeChange, is_null_oid

if TYPE_CHECKING:
    from .models import RepositoryDescriptor

NO_BRANCH = "no branch"
NOTHING_CHANGED = "Nothing changed in this repository"


def format_change(change: WorkingTreeChange) -> str:
    return f"  - {change.code}  {change.path if change.path is not None else 'None'}"


def format_tip_update(refname: str, old: str, new: str) -> str:
    if is_null_oid(old):
        return f"[new]     {new:20} {refname}"
    return f"[updated] {old:10}..{new:10} {refname}"


def format_transfer_progress(progress: TransferProgress, resolving: bool) -> str:
    if resolving:
        return f"Resolving deltas {progress.indexed_deltas}/{progress.total_deltas}"
    return (
        f"Received {progress.received_objects}/{progress.total_objects} objects "
        f"({progress.indexed_objects} indexed) in {progress.received_bytes} bytes"
    )


def format_fetch_summary(stats: TransferProgress) -> str:
    summary = (
        f"Received {stats.indexed_objects}/{stats.total_objects} objects "
        f"in {stats.received_bytes} bytes"
    )
    if stats.local_objects > 0:
        summary += f" (used {stats.local_objects} local objects)"
    return summary


class OutputFormatter:
    """Render per-repository output to the console and error console."""

    def __init__(self, console: Console, err_console: Console):
        self.console = console
        self.err_console = err_console

    def _write(self, text: str):
        """Write raw text and flush, bypassing rich's line handling."""
        self.console.file.write(text)
        self.console.file.flush()

    def print_title(self, descriptor: RepositoryDescriptor, branch: str):
        title = Text.assemble(
            (descriptor.display_name, "bold green"),
            "(",
            (branch, "cyan"),
            "): ",
            (descriptor.location, "blue"),
            "\n",
            (descriptor.description_text, "italic white"),
        )
        self.console.print(title, soft_wrap=True, highlight=False)

    def print_bare_warning(self, descriptor: RepositoryDescriptor):
        warning = Text.assemble(
            (descriptor.display_name, "bold red"),
            ": cannot use bare repository\n",
            (descriptor.description_text, "yellow"),
            " - ",
            (descriptor.location, "blue"),
            "\n",
        )
        self.err_console.print(warning, soft_wrap=True, highlight=False)

    def print_nothing_changed(self):
        self.console.print(Text(NOTHING_CHANGED, style="green"), soft_wrap=True)

    def print_change(self, change: WorkingTreeChange):
        style = "dim" if change.index_status is ChangeKind.IGNORED else ""
        self.console.print(Text(format_change(change), style=style), soft_wrap=True)

    # -- fetch ---------------------------------------------------------------

    def write_sideband(self, text: str):
        self._write(text)

    def print_tip_update(self, refname: str, old: str, new: str):
        self.console.print(Text(format_tip_update(refname, old, new)), soft_wrap=True)

    def write_transfer_progress(self, progress: TransferProgress, resolving: bool):
        # Progress overwrites the current line instead of scrolling.
        self._write(format_transfer_progress(progress, resolving) + "\r")

    def print_fetch_summary(self, stats: TransferProgress):
        self._write("\r" + format_fetch_summary(stats) + "\n")

    # -- errors --------------------------------------------------------------

    def print_failure(self, name: str, error: Exception):
        message = Text.assemble((name, "bold red"), ": ", str(error))
        self.err_console.print(message, soft_wrap=True, highlight=False)

    def print_failure_summary(self, failed: int, total: int):
        self.err_console.print(
            Text(f"{failed} of {total} repositories failed", style="red"), soft_wrap=True
        )
