from __future__ import annotations

from pathlib import Path

import pytest

from chorebot.tools.invocation import ToolRunner
from chorebot.tools.vcs import GitError, GitRepository

from conftest import TinyRepo, requires_git

pytestmark = requires_git


def _has_branch(tiny_repo: TinyRepo, name: str) -> bool:
    return bool(tiny_repo.git("branch", "--list", name))


def test_rejects_directories_without_git(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_workspace_commits_on_branch_and_restores_original(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)
    original = repo.current_branch()

    with repo.workspace("todo-resolver/1-add-docs"):
        assert repo.current_branch() == "todo-resolver/1-add-docs"
        (tiny_repo.root / "docs.md").write_text("docs\n", encoding="utf-8")
        assert not repo.is_clean()
        sha = repo.commit_all("docs: add docs (closes #1)")

    assert sha
    assert repo.current_branch() == original
    assert repo.is_clean()
    assert not (tiny_repo.root / "docs.md").exists()
    assert _has_branch(tiny_repo, "todo-resolver/1-add-docs")


def test_workspace_rolls_back_failed_units(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)
    original = repo.current_branch()
    calculator = tiny_repo.root / "src" / "tiny_app" / "calculator.py"
    before = calculator.read_text(encoding="utf-8")

    with pytest.raises(RuntimeError):
        with repo.workspace("todo-resolver/2-broken"):
            calculator.write_text("broken\n", encoding="utf-8")
            (tiny_repo.root / "scratch.txt").write_text("tmp\n", encoding="utf-8")
            raise RuntimeError("unit failed")

    assert repo.current_branch() == original
    assert calculator.read_text(encoding="utf-8") == before
    assert not (tiny_repo.root / "scratch.txt").exists()


def test_workspace_restores_the_tree_after_the_runner_is_cancelled(tiny_repo: TinyRepo) -> None:
    runner = ToolRunner()
    repo = GitRepository(tiny_repo.root, runner=runner)
    original = repo.current_branch()
    calculator = tiny_repo.root / "src" / "tiny_app" / "calculator.py"
    before = calculator.read_text(encoding="utf-8")

    with pytest.raises(RuntimeError, match="interrupted"):
        with repo.workspace("todo-resolver/9-interrupted"):
            calculator.write_text("half edited\n", encoding="utf-8")
            (tiny_repo.root / "partial.py").write_text("x = 1\n", encoding="utf-8")
            runner.cancel()
            raise RuntimeError("interrupted")

    assert tiny_repo.git("rev-parse", "--abbrev-ref", "HEAD") == original
    assert tiny_repo.git("status", "--porcelain") == ""
    assert calculator.read_text(encoding="utf-8") == before
    assert not (tiny_repo.root / "partial.py").exists()


def test_is_clean_raises_when_status_cannot_be_read(tiny_repo: TinyRepo) -> None:
    runner = ToolRunner()
    repo = GitRepository(tiny_repo.root, runner=runner)
    runner.cancel()

    with pytest.raises(GitError, match="cancelled"):
        repo.is_clean()


def test_workspace_requires_clean_tree(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)
    (tiny_repo.root / "dirty.txt").write_text("x\n", encoding="utf-8")

    with pytest.raises(GitError):
        with repo.workspace("todo-resolver/3-never"):
            pass

    assert not _has_branch(tiny_repo, "todo-resolver/3-never")


def test_commit_all_without_changes_returns_none(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)

    assert repo.commit_all("nothing") is None


def test_default_branch_follows_remote(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)

    assert repo.default_branch("origin") == tiny_repo.git("rev-parse", "--abbrev-ref", "HEAD")
    assert repo.has_remote("origin")


def test_start_point_prefers_the_published_tip_over_a_stale_local_branch(tiny_repo: TinyRepo) -> None:
    repo = GitRepository(tiny_repo.root)
    base = repo.default_branch("origin")
    (tiny_repo.root / "published.txt").write_text("upstream\n", encoding="utf-8")
    tiny_repo.git("add", "published.txt")
    tiny_repo.git("commit", "-m", "Upstream change")
    tiny_repo.git("push", "origin", base)
    tiny_repo.git("reset", "--hard", "HEAD~1")

    start = repo.start_point("origin", base)

    assert start == f"origin/{base}"
    with repo.workspace("todo-resolver/4-fresh", start_point=start):
        assert (tiny_repo.root / "published.txt").exists()
    assert not (tiny_repo.root / "published.txt").exists()


def test_start_point_without_remote_uses_the_local_branch(tiny_repo: TinyRepo) -> None:
    tiny_repo.git("remote", "remove", "origin")
    repo = GitRepository(tiny_repo.root)

    assert repo.start_point("origin", "main") == "main"
