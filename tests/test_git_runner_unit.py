"""Unit tests for the git runner."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import run_async
from deploy_to_balena.errors import GitError
from deploy_to_balena.runner import GitRunner, ProcessResult


def _result(success: bool = True, stdout: str = "", stderr: str = "") -> ProcessResult:
    return ProcessResult(
        success=success,
        exit_code=0 if success else 128,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=0.2,
    )


def _make_git(*results: ProcessResult) -> GitRunner:
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=list(results))
    return GitRunner(cwd="/github/workspace", runner=runner)


def _commands(git: GitRunner):
    return [c.args[0] for c in git.runner.run.await_args_list]


class TestCheckout:
    def test_fetches_then_checks_out(self):
        git = _make_git(_result(), _result())

        run_async(git.checkout("versionbot/pr/44"))

        assert _commands(git) == [
            ["git", "fetch"],
            ["git", "checkout", "versionbot/pr/44"],
        ]
        assert git.runner.run.await_args.kwargs["cwd"] == "/github/workspace"

    def test_checkout_without_fetch(self):
        git = _make_git(_result())

        run_async(git.checkout("fba0317", fetch_first=False))

        assert _commands(git) == [["git", "checkout", "fba0317"]]

    def test_fetch_failure(self):
        git = _make_git(_result(success=False))

        with pytest.raises(GitError) as exc_info:
            run_async(git.checkout("versionbot/pr/44"))

        assert exc_info.value.message == "Failed to fetch remote branches."
        assert len(_commands(git)) == 1

    def test_checkout_failure(self):
        git = _make_git(_result(), _result(success=False))

        with pytest.raises(GitError) as exc_info:
            run_async(git.checkout("versionbot/pr/44"))

        assert exc_info.value.message == "Failed to checkout versionbot/pr/44 branch/commit."


class TestRemoteHasBranch:
    def test_branch_present(self):
        git = _make_git(_result(stdout="fba0317\trefs/heads/versionbot/pr/44"))

        assert run_async(git.remote_has_branch("versionbot/pr/44")) is True
        assert _commands(git) == [
            ["git", "ls-remote", "--heads", "origin", "versionbot/pr/44"]
        ]

    def test_branch_absent(self):
        git = _make_git(_result(stdout=""))

        assert run_async(git.remote_has_branch("versionbot/pr/44")) is False

    def test_lookup_failure(self):
        git = _make_git(_result(success=False, stderr="fatal: not a git repository"))

        with pytest.raises(GitError):
            run_async(git.remote_has_branch("versionbot/pr/44"))
