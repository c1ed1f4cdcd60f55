import subprocess
from pathlib import Path

import pytest

from autoloop.errors import GitError
from autoloop.gitops import GitOps, resolve_repo_root


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, text=True, capture_output=True
    ).stdout.strip()


def test_resolve_repo_root_outside_repository(tmp_path: Path) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()

    with pytest.raises(GitError):
        resolve_repo_root(outside)


def test_resolve_repo_root_from_subdirectory(git_repo: Path) -> None:
    nested = git_repo / "pkg" / "deep"
    nested.mkdir(parents=True)

    assert resolve_repo_root(nested) == git_repo.resolve()


def test_changed_files_and_commit(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / "README.md").write_text("changed\n", encoding="utf-8")
    (git_repo / "src").mkdir()
    (git_repo / "src" / "new.py").write_text("x = 1\n", encoding="utf-8")

    assert git.has_changes() is True
    assert sorted(git.changed_files()) == ["README.md", "src/new.py"]

    result = git.commit_changes("Add new module")

    assert result.success is True
    assert git.has_changes() is False
    assert _git(git_repo, "log", "-1", "--format=%s") == "Add new module"


def test_commit_paths_leaves_other_changes(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / "queue.yaml").write_text("tasks: []\n", encoding="utf-8")
    (git_repo / "README.md").write_text("dirty\n", encoding="utf-8")

    result = git.commit_paths(["queue.yaml"], "Queue update")

    assert result.success is True
    assert git.changed_files() == ["README.md"]


def test_revert_changes_discards_tracked_and_untracked(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / "README.md").write_text("broken\n", encoding="utf-8")
    (git_repo / "junk").mkdir()
    (git_repo / "junk" / "file.txt").write_text("x\n", encoding="utf-8")
    _git(git_repo, "add", "junk/file.txt")

    result = git.revert_changes()

    assert result.success is True
    assert git.has_changes() is False
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "seed\n"
    assert not (git_repo / "junk").exists()


def test_snapshot_keeps_working_tree(git_repo: Path) -> None:
    git = GitOps(git_repo)
    assert git.create_snapshot().output == ""

    (git_repo / "README.md").write_text("in progress\n", encoding="utf-8")
    (git_repo / "draft.txt").write_text("draft\n", encoding="utf-8")
    snapshot = git.create_snapshot()

    assert snapshot.success is True
    assert snapshot.output
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "in progress\n"
    assert (git_repo / "draft.txt").exists()
    assert "autoloop-snapshot" in _git(git_repo, "stash", "list")


def test_branch_helpers(git_repo: Path) -> None:
    git = GitOps(git_repo)

    assert git.current_branch().output == "main"
    assert git.create_branch("feature/x").success is True
    assert git.branch_exists("feature/x") is True
    assert git.branch_exists("feature/missing") is False
    assert git.current_branch().output == "feature/x"
    assert git.checkout("main").success is True


def test_merge_conflicts_preview(git_repo: Path) -> None:
    git = GitOps(git_repo)
    git.create_branch("left")
    (git_repo / "README.md").write_text("left\n", encoding="utf-8")
    git.commit_changes("left edit")
    git.checkout("main")
    git.create_branch("clean")
    (git_repo / "other.txt").write_text("other\n", encoding="utf-8")
    git.commit_changes("unrelated")
    git.checkout("main")
    (git_repo / "README.md").write_text("main\n", encoding="utf-8")
    git.commit_changes("main edit")

    assert git.merge_conflicts("left", "main") is True
    assert git.merge_conflicts("clean", "main") is False
    assert git.current_branch().output == "main"
    assert git.has_changes() is False


def test_exclude_locally_hides_bookkeeping(git_repo: Path) -> None:
    git = GitOps(git_repo)
    (git_repo / ".autoloop").mkdir()
    (git_repo / ".autoloop" / "audit-log.jsonl").write_text("{}\n", encoding="utf-8")

    assert git.exclude_locally("/.autoloop/") is True
    assert git.exclude_locally("/.autoloop/") is True

    exclude = (git_repo / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.splitlines().count("/.autoloop/") == 1
    assert git.has_changes() is False
    git.revert_changes()
    assert (git_repo / ".autoloop" / "audit-log.jsonl").exists()
