"""Pytest configuration and fixtures for gat tests."""

import io
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest
from rich.console import Console

from gat.errors import RemoteNotFoundError, RepositoryNotFoundError
from gat.formatters import OutputFormatter
from gat.models import (
    HeadResult,
    RemoteCallbacks,
    StatusEntry,
    TransferProgress,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not found")


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch):
    """Keep the user's git configuration out of the tests."""
    config = tmp_path_factory.getbasetemp() / "gitconfig"
    if not config.exists():
        config.write_text(
            "[user]\n"
            "\tname = Test User\n"
            "\temail = test@example.com\n"
            "[init]\n"
            "\tdefaultBranch = main\n"
            "[commit]\n"
            "\tgpgsign = false\n"
        )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


def git(cwd: Path, *args: str) -> str:
    """Run a git command and return its standard output."""
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = "update") -> str:
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with one commit."""
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init")
    commit_file(repo, "README.md", "# Test Repository\n", "Initial commit")
    return repo


@pytest.fixture
def output() -> "CapturedOutput":
    return CapturedOutput()


class CapturedOutput:
    """Formatter writing into in-memory consoles."""

    def __init__(self):
        self.console = Console(file=io.StringIO(), width=200, highlight=False)
        self.err_console = Console(file=io.StringIO(), width=200, highlight=False)
        self.formatter = OutputFormatter(self.console, self.err_console)

    @property
    def out(self) -> str:
        return self.console.file.getvalue()

    @property
    def err(self) -> str:
        return self.err_console.file.getvalue()


# =============================================================================
# Fake Backend
# =============================================================================


class FakeRemote:
    """Remote that replays scripted callback events instead of talking to a server."""

    def __init__(
        self,
        backend: "FakeBackend",
        url: str = "git@example.com:team/project.git",
        events: list[Callable[[RemoteCallbacks], None]] | None = None,
        stats: TransferProgress | None = None,
        error: Exception | None = None,
        requires_auth: bool = False,
    ):
        self.backend = backend
        self.url = url
        self.events = events or []
        self._stats = stats or TransferProgress()
        self.error = error
        self.requires_auth = requires_auth
        self.credential = None

    def download(self, refspecs, callbacks: RemoteCallbacks):
        self.backend.calls.append("download")
        if self.requires_auth:
            self.credential = callbacks.credentials(self.url, "git")
        for event in self.events:
            event(callbacks)
        if self.error is not None:
            raise self.error

    def stats(self) -> TransferProgress:
        return self._stats

    def disconnect(self):
        self.backend.calls.append("disconnect")

    def update_tips(self, update_fetchhead: bool = True):
        self.backend.calls.append(f"update_tips:{update_fetchhead}")


class FakeRepository:
    def __init__(
        self,
        backend: "FakeBackend",
        bare: bool = False,
        head: HeadResult | None = None,
        entries: list[StatusEntry] | None = None,
        remotes: dict[str, FakeRemote] | None = None,
    ):
        self.backend = backend
        self.bare = bare
        self._head = head or HeadResult.resolved("main")
        self.entries = entries or []
        self.remotes = remotes if remotes is not None else {"origin": FakeRemote(backend)}

    def is_bare(self) -> bool:
        self.backend.calls.append("is_bare")
        return self.bare

    def head(self) -> HeadResult:
        self.backend.calls.append("head")
        return self._head

    def statuses(self, include_untracked: bool = True, include_ignored: bool = False):
        self.backend.calls.append("statuses")
        return list(self.entries)

    def find_remote(self, name: str) -> FakeRemote:
        self.backend.calls.append(f"find_remote:{name}")
        if name not in self.remotes:
            raise RemoteNotFoundError(f"remote '{name}' does not exist")
        return self.remotes[name]


class FakeBackend:
    """Backend serving scripted repositories keyed by location."""

    def __init__(self):
        self.repositories: dict[Path, FakeRepository] = {}
        self.calls: list[str] = []

    def add(self, location: str, **kwargs) -> FakeRepository:
        repo = FakeRepository(self, **kwargs)
        self.repositories[Path(location)] = repo
        return repo

    def remote(self, **kwargs) -> FakeRemote:
        return FakeRemote(self, **kwargs)

    def open(self, path: Path) -> FakeRepository:
        self.calls.append("open")
        try:
            return self.repositories[Path(path)]
        except KeyError:
            raise RepositoryNotFoundError(f"could not find repository at '{path}'") from None


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
