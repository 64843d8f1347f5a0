"""Git backend built on the ``git`` command-line executable.

Every query runs one ``git`` process in the repository. Fetching streams the
standard error of ``git fetch --progress`` and translates it into
:class:`~gat.models.RemoteCallbacks` calls as lines arrive.
"""

from __future__ import annotations

import codecs
import logging
import os
import re
import shlex
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from urllib.parse import urlsplit

from .errors import BackendError, RemoteNotFoundError, RepositoryNotFoundError
from .models import (
    NULL_OID,
    HeadResult,
    RemoteCallbacks,
    StatusEntry,
    StatusFlag,
    TransferProgress,
)

logger = logging.getLogger(__name__)

# Progress and ref summaries are parsed, so keep git's messages untranslated.
_GIT_ENV = {"LC_ALL": "C", "LANGUAGE": "C", "GIT_TERMINAL_PROMPT": "0"}

_INDEX_FLAGS = {
    "A": StatusFlag.INDEX_NEW,
    "C": StatusFlag.INDEX_NEW,
    "M": StatusFlag.INDEX_MODIFIED,
    "D": StatusFlag.INDEX_DELETED,
    "R": StatusFlag.INDEX_RENAMED,
    "T": StatusFlag.INDEX_TYPECHANGE,
}

_WORKTREE_FLAGS = {
    "A": StatusFlag.WT_NEW,  # intent-to-add
    "M": StatusFlag.WT_MODIFIED,
    "D": StatusFlag.WT_DELETED,
    "R": StatusFlag.WT_RENAMED,
    "T": StatusFlag.WT_TYPECHANGE,
}

_REF_PREFIXES = ("refs/heads/", "refs/tags/", "refs/remotes/", "refs/")


def _git_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    env.update(_GIT_ENV)
    if extra:
        env.update(extra)
    return env


def _describe_failure(error: subprocess.CalledProcessError) -> str:
    stderr = (error.stderr or "").strip()
    if stderr:
        return stderr
    return f"git {error.cmd[1]} exited with status {error.returncode}"


def ref_shorthand(refname: str) -> str:
    """Strip the well-known ``refs/...`` prefix from a reference name."""
    for prefix in _REF_PREFIXES:
        if refname.startswith(prefix):
            return refname[len(prefix) :]
    return refname


def detect_protocol(url: str) -> str:
    """Detect protocol from Git URL."""
    if not url:
        return "unknown"
    if url.startswith("https://"):
        return "https"
    if url.startswith("http://"):
        return "http"
    if url.startswith("git://"):
        return "git"
    if url.startswith("file://") or url.startswith("/"):
        return "file"
    if url.startswith(("ssh://", "git+ssh://", "ssh+git://")):
        return "ssh"
    if "://" not in url and "@" in url.split(":", 1)[0] and ":" in url:
        # scp-like syntax: user@host:path
        return "ssh"
    return "unknown"


def username_from_url(url: str) -> str | None:
    """Return the user name embedded in a remote URL, if any."""
    if "://" in url:
        return urlsplit(url).username or None
    host_part = url.split(":", 1)[0]
    if "@" in host_part:
        return host_part.rsplit("@", 1)[0] or None
    return None


def parse_porcelain_status(output: str) -> list[StatusEntry]:
    """Parse ``git status --porcelain=v2 -z`` output into status entries."""
    entries = []
    tokens = output.split("\0")
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token:
            continue
        kind = token[0]
        if kind == "1":
            # 1 XY sub mH mI mW hH hI path
            parts = token.split(" ", 8)
            entries.append(StatusEntry(parts[8], _flags_from_xy(parts[1])))
        elif kind == "2":
            # 2 XY sub mH mI mW hH hI Xscore path, then the original path
            parts = token.split(" ", 9)
            entries.append(StatusEntry(parts[9], _flags_from_xy(parts[1])))
            i += 1
        elif kind == "u":
            # u XY sub m1 m2 m3 mW h1 h2 h3 path
            parts = token.split(" ", 10)
            entries.append(StatusEntry(parts[10], StatusFlag.CONFLICTED))
        elif kind == "?":
            entries.append(StatusEntry(token[2:], StatusFlag.WT_NEW))
        elif kind == "!":
            entries.append(StatusEntry(token[2:], StatusFlag.IGNORED))
        else:
            logger.debug("Skipping unknown status record %r", token)
    return entries


def _flags_from_xy(xy: str) -> StatusFlag:
    return _INDEX_FLAGS.get(xy[0], StatusFlag.CURRENT) | _WORKTREE_FLAGS.get(
        xy[1], StatusFlag.CURRENT
    )


# =============================================================================
# Fetch Output Parsing
# =============================================================================

_RECEIVING = re.compile(
    r"^(?:Receiving|Unpacking) objects:\s+\d+% \((\d+)/(\d+)\)"
    r"(?:, ([\d.]+) (bytes|KiB|MiB|GiB))?"
)
_RESOLVING = re.compile(r"^Resolving deltas:\s+\d+% \((\d+)/(\d+)\)")
_LOCAL_OBJECTS = re.compile(r"completed with (\d+) local objects?")
_REF_UPDATE = re.compile(
    r"^ (?P<flag>[ +\-t*!=]) (?P<summary>\[[^\]]+\]|\S+)\s+(?P<source>\S+)\s+->\s+(?P<target>\S+)"
)
_OID_RANGE = re.compile(r"\.{2,3}")
_UNITS = {"bytes": 1, "KiB": 1 << 10, "MiB": 1 << 20, "GiB": 1 << 30}
_LINE_END = re.compile(r"[\r\n]")


class FetchOutputParser:
    """Translate ``git fetch --progress`` standard error into callbacks.

    ``resolve`` maps the local side of a ref summary line (``origin/main``)
    to its full reference name and current object id. ``previous`` holds the
    object ids refs had before the fetch; summaries that carry no id range,
    such as ``[tag update]``, take their old id from it.
    """

    def __init__(
        self,
        callbacks: RemoteCallbacks,
        resolve: Callable[[str], tuple[str, str]],
        previous: Mapping[str, str] | None = None,
    ):
        self.callbacks = callbacks
        self.resolve = resolve
        self.previous = previous or {}
        self.stats = TransferProgress()
        self.messages: list[str] = []
        self._pending = ""

    def feed(self, text: str) -> None:
        self._pending += text
        while match := _LINE_END.search(self._pending):
            line = self._pending[: match.start()]
            self._pending = self._pending[match.end() :]
            self._handle(line, match.group())

    def close(self) -> None:
        if self._pending:
            line, self._pending = self._pending, ""
            self._handle(line, "\n")

    def error_message(self) -> str:
        return "\n".join(m for m in self.messages if not m.startswith("From "))

    def _handle(self, line: str, terminator: str) -> None:
        if line.startswith("remote:"):
            if self.callbacks.sideband_progress:
                text = line[len("remote:") :]
                self.callbacks.sideband_progress(text.removeprefix(" ") + terminator)
        elif match := _RECEIVING.match(line):
            self._on_receiving(match)
        elif match := _RESOLVING.match(line):
            self._on_resolving(line, match)
        elif match := _REF_UPDATE.match(line):
            self._on_ref_update(line, match)
        elif line.strip():
            self.messages.append(line.strip())

    def _on_receiving(self, match: re.Match) -> None:
        stats = self.stats
        stats.received_objects = int(match.group(1))
        stats.total_objects = int(match.group(2))
        stats.indexed_objects = stats.received_objects
        if match.group(3):
            stats.received_bytes = int(float(match.group(3)) * _UNITS[match.group(4)])
        self._notify_transfer()

    def _on_resolving(self, line: str, match: re.Match) -> None:
        stats = self.stats
        stats.indexed_deltas = int(match.group(1))
        stats.total_deltas = int(match.group(2))
        stats.received_objects = max(stats.received_objects, stats.total_objects)
        if local := _LOCAL_OBJECTS.search(line):
            stats.local_objects = int(local.group(1))
        self._notify_transfer()

    def _on_ref_update(self, line: str, match: re.Match) -> None:
        flag, summary = match.group("flag"), match.group("summary")
        if flag == "!":
            self.messages.append(line.strip())
            return
        if summary.startswith("[new"):
            refname, new = self.resolve(match.group("target"))
            old = NULL_OID
        elif _OID_RANGE.search(summary):
            old, new = _OID_RANGE.split(summary, maxsplit=1)
            refname, _ = self.resolve(match.group("target"))
        elif flag == "=":
            return
        else:
            refname, new = self.resolve(match.group("target"))
            old = self.previous.get(refname)
            if old is None:
                logger.info("Cannot report %s %s: previous id unknown", summary, refname)
                return
        if self.callbacks.update_tips:
            self.callbacks.update_tips(refname, old, new)

    def _notify_transfer(self) -> None:
        if self.callbacks.transfer_progress:
            self.callbacks.transfer_progress(replace(self.stats))


# =============================================================================
# Repository and Remote Handles
# =============================================================================


class GitRepository:
    """Handle on a repository opened by :class:`GitBackend`."""

    def __init__(self, path: Path, git_dir: Path, bare: bool):
        self.path = path
        self.git_dir = git_dir
        self.bare = bare

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        logger.debug("git %s (in %s)", shlex.join(args), self.path)
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                env=_git_env(),
                check=check,
            )
        except subprocess.CalledProcessError as e:
            raise BackendError(_describe_failure(e)) from e
        except OSError as e:
            raise BackendError(f"cannot run git in {self.path}: {e}") from e

    def is_bare(self) -> bool:
        return self.bare

    def head(self) -> HeadResult:
        """Resolve HEAD to a branch shorthand, or report it as unborn."""
        try:
            symbolic = self._run("symbolic-ref", "-q", "HEAD", check=False)
            if symbolic.returncode not in (0, 1):
                return HeadResult.failed(symbolic.stderr.strip())
            target = self._run("rev-parse", "-q", "--verify", "HEAD", check=False)
        except BackendError as e:
            return HeadResult.failed(str(e))

        if symbolic.returncode == 0:
            if target.returncode != 0:
                return HeadResult.unborn()
            return HeadResult.resolved(ref_shorthand(symbolic.stdout.strip()))
        if target.returncode != 0:
            return HeadResult.failed("HEAD does not point at a valid object")
        # Detached HEAD
        return HeadResult.resolved("HEAD")

    def statuses(
        self, include_untracked: bool = True, include_ignored: bool = False
    ) -> list[StatusEntry]:
        result = self._run(
            "status",
            "--porcelain=v2",
            "-z",
            f"--untracked-files={'normal' if include_untracked else 'no'}",
            f"--ignored={'matching' if include_ignored else 'no'}",
        )
        return parse_porcelain_status(result.stdout)

    def find_remote(self, name: str) -> GitRemote:
        result = self._run("remote", "get-url", name, check=False)
        if result.returncode != 0:
            raise RemoteNotFoundError(f"remote '{name}' does not exist")
        return GitRemote(self, name, result.stdout.strip())

    def resolve_ref(self, name: str) -> tuple[str, str]:
        """Return the full reference name and object id for ``name``."""
        full = self._run("rev-parse", "--symbolic-full-name", name, check=False)
        oid = self._run("rev-parse", "-q", "--verify", name, check=False)
        refname = full.stdout.strip() if full.returncode == 0 and full.stdout.strip() else name
        return refname, oid.stdout.strip() if oid.returncode == 0 else NULL_OID

    def tag_ids(self) -> dict[str, str]:
        """Map each ``refs/tags/*`` reference to the object id it points at."""
        output = self._run("for-each-ref", "--format=%(refname) %(objectname)", "refs/tags")
        return dict(line.split(" ", 1) for line in output.stdout.splitlines() if line)


class GitRemote:
    """A named remote of a :class:`GitRepository`."""

    def __init__(self, repo: GitRepository, name: str, url: str):
        self.repo = repo
        self.name = name
        self.url = url
        self._stats = TransferProgress()
        self._previous_fetch_head: bytes | None = None
        self._connected = False

    @property
    def fetch_head_path(self) -> Path:
        return self.repo.git_dir / "FETCH_HEAD"

    def stats(self) -> TransferProgress:
        """Cumulative counters of the last download."""
        return replace(self._stats)

    def download(
        self, refspecs: Sequence[str] = (), callbacks: RemoteCallbacks | None = None
    ) -> None:
        """Fetch objects and refs from the remote, reporting through ``callbacks``.

        The ``git`` child process is terminated if anything interrupts the
        transfer, including ``KeyboardInterrupt``.
        """
        callbacks = callbacks or RemoteCallbacks()
        env = _git_env(self._transport_environment(callbacks))
        self._previous_fetch_head = self._read_fetch_head()
        previous_tags = self.repo.tag_ids()

        command = ["git", "fetch", "--progress", self.name, *refspecs]
        logger.debug("%s (in %s)", shlex.join(command), self.repo.path)
        try:
            process = subprocess.Popen(
                command,
                cwd=self.repo.path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise BackendError(f"cannot run git in {self.repo.path}: {e}") from e
        self._connected = True

        parser = FetchOutputParser(callbacks, self.repo.resolve_ref, previous_tags)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while chunk := process.stderr.read1(8192):
                parser.feed(decoder.decode(chunk))
            parser.feed(decoder.decode(b"", final=True))
            parser.close()
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            process.stderr.close()

        self._stats = parser.stats
        if returncode != 0:
            raise BackendError(
                parser.error_message() or f"git fetch exited with status {returncode}"
            )

    def _transport_environment(self, callbacks: RemoteCallbacks) -> dict[str, str]:
        """Ask for credentials only when the transport authenticates over SSH."""
        if callbacks.credentials is None or detect_protocol(self.url) != "ssh":
            return {}
        url_user = username_from_url(self.url)
        credential = callbacks.credentials(self.url, url_user)
        ssh = [
            "ssh",
            "-i",
            str(credential.private_key),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "BatchMode=yes",
        ]
        if url_user is None and credential.username:
            ssh += ["-l", credential.username]
        return {"GIT_SSH_COMMAND": shlex.join(ssh)}

    def disconnect(self) -> None:
        if self._connected:
            logger.debug("Disconnected from %s", self.url)
        self._connected = False

    def update_tips(self, update_fetchhead: bool = True) -> None:
        """Settle ref bookkeeping after a download.

        Remote-tracking refs are updated by the download itself. FETCH_HEAD
        is kept when ``update_fetchhead`` is set, otherwise its previous
        content is restored.
        """
        if update_fetchhead:
            return
        try:
            if self._previous_fetch_head is None:
                self.fetch_head_path.unlink(missing_ok=True)
            else:
                self.fetch_head_path.write_bytes(self._previous_fetch_head)
        except OSError as e:
            raise BackendError(f"cannot restore {self.fetch_head_path}: {e}") from e

    def _read_fetch_head(self) -> bytes | None:
        try:
            return self.fetch_head_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"cannot read {self.fetch_head_path}: {e}") from e


class GitBackend:
    """Opens repositories through the ``git`` executable."""

    def open(self, path: Path | str) -> GitRepository:
        """Open the repository whose top level (or bare directory) is ``path``."""
        path = Path(path)
        if not path.is_dir():
            raise RepositoryNotFoundError(f"could not find repository at '{path}'")

        probe = GitRepository(path, path, bare=False)
        try:
            info = probe._run("rev-parse", "--is-bare-repository", "--absolute-git-dir")
            bare_text, git_dir = info.stdout.splitlines()[:2]
            bare = bare_text.strip() == "true"
            if bare:
                root = Path(git_dir)
            else:
                root = Path(probe._run("rev-parse", "--show-toplevel").stdout.strip())
        except (BackendError, ValueError) as e:
            raise RepositoryNotFoundError(f"could not find repository at '{path}': {e}") from e

        if root.resolve() != path.resolve():
            raise RepositoryNotFoundError(
                f"could not find repository at '{path}' (it is inside {root})"
            )
        return GitRepository(path, Path(git_dir), bare=bare)
