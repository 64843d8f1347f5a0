"""Tests for the fleet dispatcher and the command-line interface."""

import io
from pathlib import Path

import pytest
from conftest import commit_file, git, requires_git
from rich.console import Console
from typer.testing import CliRunner

from gat import __version__
from gat.core import Command, FleetManager, app
from gat.errors import BackendError
from gat.models import RepositoryDescriptor, TransferProgress

runner = CliRunner()


def consoles() -> tuple[Console, Console]:
    return (
        Console(file=io.StringIO(), width=200, highlight=False),
        Console(file=io.StringIO(), width=200, highlight=False),
    )


class TestFleetManager:
    @pytest.fixture
    def descriptors(self, backend) -> list[RepositoryDescriptor]:
        stats = TransferProgress(indexed_objects=2, total_objects=2, received_bytes=64)
        backend.add("/repos/one", remotes={"origin": backend.remote(stats=stats)})
        backend.add(
            "/repos/two",
            remotes={"origin": backend.remote(error=BackendError("network unreachable"))},
        )
        backend.add("/repos/three", remotes={"origin": backend.remote(stats=stats)})
        return [RepositoryDescriptor(location=f"/repos/{n}") for n in ("one", "two", "three")]

    @pytest.mark.parametrize("workers", [1, 3])
    def test_failure_is_isolated(self, backend, descriptors, workers):
        console, err_console = consoles()
        fleet = FleetManager(
            descriptors, console, err_console, backend=backend, max_workers=workers
        )

        results = fleet.run(Command.FETCH)

        assert [r.success for r in results] == [True, False, True]
        assert results[1].error == "network unreachable"
        out = console.file.getvalue()
        assert out.index("one(main)") < out.index("two(main)") < out.index("three(main)")
        assert out.count("Received 2/2 objects in 64 bytes") == 2
        assert err_console.file.getvalue() == "two: network unreachable\n"

    def test_pull_only_reports_titles(self, backend, descriptors):
        console, err_console = consoles()
        fleet = FleetManager(descriptors, console, err_console, backend=backend)

        results = fleet.run(Command.PULL)

        assert all(r.success for r in results)
        assert "download" not in backend.calls
        assert console.file.getvalue().count("No description") == 3

    def test_missing_repository_does_not_stop_the_run(self, backend, descriptors):
        console, err_console = consoles()
        descriptors.insert(0, RepositoryDescriptor(location="/repos/missing"))
        fleet = FleetManager(descriptors, console, err_console, backend=backend)

        results = fleet.run(Command.LIST)

        assert [r.success for r in results] == [False, True, True, True]
        assert "missing: could not find repository" in err_console.file.getvalue()


@pytest.fixture
def fleet_config(tmp_path: Path, temp_git_repo: Path) -> Path:
    """Configuration with a dirty repository, a clean one and a bare one."""
    clean = tmp_path / "clean"
    clean.mkdir()
    git(clean, "init")
    commit_file(clean, "a.txt", "a\n")
    git(tmp_path, "init", "--bare", "store.git")
    (temp_git_repo / "new.txt").write_text("new\n")

    config = tmp_path / "gatconfig.toml"
    config.write_text(
        f"""
[[repository]]
location = "{temp_git_repo}"
description = "Dirty working copy"

[[repository]]
name = "tidy"
location = "{clean}"

[[repository]]
location = "{tmp_path / 'store.git'}"
"""
    )
    return config


def test_version():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"gat {__version__}" in result.output


def test_invalid_config_exits_with_config_error(tmp_path: Path):
    result = runner.invoke(app, ["--config", str(tmp_path / "absent"), "list"])

    assert result.exit_code == 2
    assert "Error: cannot read" in result.output


@requires_git
class TestCommands:
    def test_list(self, fleet_config: Path, temp_git_repo: Path):
        result = runner.invoke(app, ["--config", str(fleet_config), "list"])

        assert f"project(main): {temp_git_repo}" in result.output
        assert "Dirty working copy" in result.output
        assert "tidy(main): " in result.output
        assert "store.git: cannot use bare repository" in result.output
        assert "1 of 3 repositories failed" in result.output
        assert result.exit_code == 1

    def test_status(self, fleet_config: Path):
        result = runner.invoke(app, ["--config", str(fleet_config), "status"])

        assert "  - ??  new.txt" in result.output
        assert "Nothing changed in this repository" in result.output
        assert result.exit_code == 1

    def test_status_in_parallel_keeps_order(self, fleet_config: Path):
        result = runner.invoke(app, ["--config", str(fleet_config), "status", "--jobs", "3"])

        assert result.output.index("project(main)") < result.output.index("tidy(main)")
        assert result.output.index("new.txt") < result.output.index("tidy(main)")

    def test_all_repositories_succeed(self, tmp_path: Path, temp_git_repo: Path):
        config = tmp_path / "single.toml"
        config.write_text(f'[[repository]]\nlocation = "{temp_git_repo}"\n')

        result = runner.invoke(app, ["--config", str(config), "pull"])

        assert result.exit_code == 0
        assert "project(main)" in result.output
