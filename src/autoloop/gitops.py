from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from autoloop.errors import GitError

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("<<<<<<<", "CONFLICT")


@dataclass(slots=True)
class GitResult:
    success: bool
    output: str = ""
    error: str | None = None

    def raise_for_error(self, action: str) -> GitResult:
        if not self.success:
            raise GitError(f"{action} failed: {self.error or self.output}")
        return self


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    logger.debug("git %s", " ".join(args))
    return subprocess.run(
        ["git", "--no-pager", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
    )


def resolve_repo_root(path: Path) -> Path:
    """Return the top-level directory of the repository containing ``path``."""
    try:
        proc = _git(["rev-parse", "--show-toplevel"], cwd=path)
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc
    if proc.returncode != 0:
        raise GitError(f"Not inside a git repository: {path}")
    return Path(proc.stdout.strip()).resolve()


class GitOps:
    """Thin wrappers over the git CLI; failures come back as ``GitResult``."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def run(self, args: list[str]) -> GitResult:
        try:
            proc = _git(args, cwd=self.repo_root)
        except OSError as exc:
            return GitResult(success=False, error=str(exc))
        if proc.returncode != 0:
            return GitResult(
                success=False,
                output=proc.stdout.strip(),
                error=proc.stderr.strip() or proc.stdout.strip(),
            )
        return GitResult(success=True, output=proc.stdout.strip())

    def _status_lines(self, *extra: str) -> list[str]:
        proc = _git(["status", "--porcelain", *extra], cwd=self.repo_root)
        if proc.returncode != 0:
            return []
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def has_changes(self) -> bool:
        return bool(self._status_lines())

    def changed_files(self) -> list[str]:
        files: list[str] = []
        for line in self._status_lines("-uall"):
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files

    def diff_names(self, ref: str = "HEAD") -> list[str]:
        result = self.run(["diff", "--name-only", ref])
        if not result.success:
            return []
        return [line for line in result.output.splitlines() if line.strip()]

    def create_snapshot(self) -> GitResult:
        """Record all working-tree state, untracked files included, as a stash entry.

        The working tree is left untouched. ``output`` holds the stash commit, or is
        empty when there was nothing to snapshot.
        """
        staged = self.run(["add", "-A"])
        if not staged.success:
            return staged
        created = self.run(["stash", "create"])
        if not created.success or not created.output:
            return GitResult(success=created.success, output="", error=created.error)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        stored = self.run(
            ["stash", "store", "-m", f"autoloop-snapshot-{stamp}", created.output]
        )
        if not stored.success:
            return stored
        return GitResult(success=True, output=created.output)

    def commit_changes(self, message: str) -> GitResult:
        staged = self.run(["add", "-A"])
        if not staged.success:
            return staged
        return self.run(["commit", "-m", message])

    def commit_paths(self, paths: list[str], message: str) -> GitResult:
        """Commit only ``paths``, leaving other working-tree changes alone."""
        staged = self.run(["add", "--", *paths])
        if not staged.success:
            return staged
        return self.run(["commit", "-m", message, "--", *paths])

    def revert_changes(self) -> GitResult:
        """Discard every uncommitted change, staged, tracked or untracked."""
        steps = (
            ["reset", "-q", "HEAD"],
            ["checkout", "--", "."],
            ["clean", "-fd"],
        )
        errors: list[str] = []
        for args in steps:
            result = self.run(args)
            if not result.success and result.error:
                errors.append(result.error)
        if self.has_changes():
            return GitResult(success=False, error="; ".join(errors) or "Working tree still dirty.")
        return GitResult(success=True)

    def reset_hard(self, revision: str) -> GitResult:
        result = self.run(["reset", "--hard", revision])
        if not result.success:
            return result
        return self.run(["clean", "-fd"])

    def create_branch(self, name: str) -> GitResult:
        return self.run(["checkout", "-b", name])

    def checkout(self, name: str) -> GitResult:
        return self.run(["checkout", name])

    def branch_exists(self, name: str) -> bool:
        return self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"]).success

    def current_branch(self) -> GitResult:
        return self.run(["rev-parse", "--abbrev-ref", "HEAD"])

    def head_sha(self) -> GitResult:
        return self.run(["rev-parse", "--short", "HEAD"])

    def merge(self, branches: list[str], *, no_ff: bool = False, message: str | None = None) -> GitResult:
        args = ["merge"]
        if no_ff:
            args.append("--no-ff")
        if message:
            args.extend(["-m", message])
        else:
            args.append("--no-edit")
        return self.run([*args, *branches])

    def merge_abort(self) -> GitResult:
        return self.run(["merge", "--abort"])

    def merge_conflicts(self, branch: str, base: str) -> bool:
        """True when merging ``branch`` into ``base`` would conflict."""
        merge_base = self.run(["merge-base", base, branch])
        if not merge_base.success:
            return True
        preview = self.run(["merge-tree", merge_base.output, base, branch])
        text = "\n".join(part for part in (preview.output, preview.error or "") if part)
        return any(marker in text for marker in CONFLICT_MARKERS)

    def stash(self) -> GitResult:
        return self.run(["stash", "push", "--include-untracked", "-m", "autoloop-merge"])

    def stash_pop(self) -> GitResult:
        return self.run(["stash", "pop"])

    def push(self, remote: str, branch: str) -> GitResult:
        return self.run(["push", remote, branch])

    def exclude_locally(self, pattern: str) -> bool:
        """Add ``pattern`` to ``.git/info/exclude`` so bookkeeping files stay untracked
        and survive ``git clean``. Returns False outside a repository."""
        located = self.run(["rev-parse", "--git-path", "info/exclude"])
        if not located.success or not located.output:
            return False
        exclude_file = Path(located.output)
        if not exclude_file.is_absolute():
            exclude_file = self.repo_root / exclude_file
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        if pattern in existing.splitlines():
            return True
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_file.write_text(f"{existing}{prefix}{pattern}\n", encoding="utf-8")
        return True
