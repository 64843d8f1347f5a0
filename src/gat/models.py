"""Domain models shared by the git backend and the reporters."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntFlag, StrEnum
from pathlib import Path

NULL_OID = "0" * 40


def is_null_oid(oid: str) -> bool:
    """Check if an object id is the all-zero id git uses for "no object"."""
    return bool(oid) and set(oid) == {"0"}


# =============================================================================
# Configuration Entries
# =============================================================================


@dataclass(frozen=True)
class RepositoryDescriptor:
    """One managed repository as declared in the configuration file."""

    location: str
    name: str | None = None
    description: str | None = None

    @property
    def display_name(self) -> str:
        """Explicit name, or the final segment of the location."""
        if self.name:
            return self.name
        derived = Path(self.location).name
        if not derived:
            raise ValueError(f"cannot derive a repository name from location '{self.location}'")
        return derived

    @property
    def description_text(self) -> str:
        if self.description is None:
            return "No description"
        return self.description

    @property
    def path(self) -> Path:
        """Location with environment variables and ``~`` expanded."""
        return Path(os.path.expandvars(self.location)).expanduser()


# =============================================================================
# Working Tree Status
# =============================================================================


class StatusFlag(IntFlag):
    """Raw per-path status bits, laid out like libgit2's ``git_status_t``."""

    CURRENT = 0
    INDEX_NEW = 1 << 0
    INDEX_MODIFIED = 1 << 1
    INDEX_DELETED = 1 << 2
    INDEX_RENAMED = 1 << 3
    INDEX_TYPECHANGE = 1 << 4
    WT_NEW = 1 << 7
    WT_MODIFIED = 1 << 8
    WT_DELETED = 1 << 9
    WT_TYPECHANGE = 1 << 10
    WT_RENAMED = 1 << 11
    IGNORED = 1 << 14
    CONFLICTED = 1 << 15


class ChangeKind(StrEnum):
    """State of one side of a changed path; the value is its status letter."""

    ADDED = "A"
    MODIFIED = "M"
    DELETED = "D"
    RENAMED = "R"
    TYPE_CHANGED = "T"
    CONFLICTED = "U"
    UNMODIFIED = " "
    UNTRACKED = "?"
    IGNORED = "!"


@dataclass(frozen=True)
class StatusEntry:
    """One path reported by a working tree status query."""

    path: str | None
    flags: StatusFlag


@dataclass(frozen=True)
class WorkingTreeChange:
    """Classified change of a single path."""

    path: str | None
    index_status: ChangeKind
    worktree_status: ChangeKind

    @property
    def code(self) -> str:
        return f"{self.index_status.value}{self.worktree_status.value}"


# =============================================================================
# HEAD Resolution
# =============================================================================


class HeadState(StrEnum):
    RESOLVED = "resolved"
    UNBORN = "unborn"
    ERROR = "error"


@dataclass(frozen=True)
class HeadResult:
    """Outcome of resolving HEAD: a branch shorthand, unborn, or an error."""

    state: HeadState
    shorthand: str = ""
    error: str = ""

    @classmethod
    def resolved(cls, shorthand: str) -> HeadResult:
        return cls(HeadState.RESOLVED, shorthand=shorthand)

    @classmethod
    def unborn(cls) -> HeadResult:
        return cls(HeadState.UNBORN)

    @classmethod
    def failed(cls, error: str) -> HeadResult:
        return cls(HeadState.ERROR, error=error)


# =============================================================================
# Fetch
# =============================================================================


@dataclass
class TransferProgress:
    """Object transfer counters of a single download."""

    received_objects: int = 0
    total_objects: int = 0
    indexed_objects: int = 0
    indexed_deltas: int = 0
    total_deltas: int = 0
    received_bytes: int = 0
    local_objects: int = 0

    @property
    def receiving_done(self) -> bool:
        return self.total_objects > 0 and self.received_objects >= self.total_objects


@dataclass(frozen=True)
class SshKeyCredential:
    """SSH key pair handed to the transport when a remote asks for authentication."""

    username: str
    private_key: Path
    public_key: Path | None = None
    passphrase: str | None = None


@dataclass
class RemoteCallbacks:
    """Hooks invoked by a remote while it talks to the server.

    ``credentials(url, username_from_url)`` is only called when the transport
    needs authentication. The progress hooks may fire any number of times.
    """

    credentials: Callable[[str, str | None], SshKeyCredential] | None = None
    sideband_progress: Callable[[str], None] | None = None
    update_tips: Callable[[str, str, str], None] | None = None
    transfer_progress: Callable[[TransferProgress], None] | None = None
