from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from autoloop.gitops import GitOps
from autoloop.rollback import PostMergeMonitor, RollbackManager, restore_or_fail
from autoloop.verification import VerificationRunner, VerifyCommand

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeCheck:
    ok: bool
    reason: str = ""


@dataclass(slots=True)
class MergeReport:
    merged: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    combined: bool = False

    @property
    def unmerged(self) -> list[str]:
        return [*self.conflicted, *self.rolled_back]


class MergeCoordinator:
    """Merges task branches into the trunk and reverses merges that regress it."""

    def __init__(
        self,
        git: GitOps,
        rollback: RollbackManager,
        monitor: PostMergeMonitor,
        verifier: VerificationRunner,
        verify_commands: list[VerifyCommand],
        trunk: str = "main",
    ) -> None:
        self.git = git
        self.rollback = rollback
        self.monitor = monitor
        self.verifier = verifier
        self.verify_commands = verify_commands
        self.trunk = trunk

    @property
    def repo_root(self) -> Path:
        return self.git.repo_root

    async def _merge_checked(self, branches: list[str], message: str) -> tuple[bool, str]:
        """Merge ``branches`` at once; undo it on conflict or regression."""
        checkpoint = self.rollback.create_checkpoint()
        self.monitor.capture_baseline()
        merged = self.git.merge(branches, no_ff=True, message=message)
        if not merged.success:
            self.git.merge_abort()
            # A failed octopus merge has no MERGE_HEAD to abort.
            if self.git.has_changes():
                self.git.reset_hard(checkpoint)
            return False, f"conflict: {merged.error}"
        verdict = await self.monitor.check(self.repo_root)
        if verdict.should_rollback:
            restore_or_fail(self.rollback, checkpoint, verdict.reason)
            return False, f"rolled back: {verdict.reason}"
        return True, ""

    async def merge_branches(self, branches: list[str]) -> MergeReport:
        """Merge all branches in one go, falling back to one merge per branch.

        Branches that conflict with each other, or whose merge fails the post-merge
        check, are left unmerged. The caller must already be on the trunk with a
        clean tree.
        """
        report = MergeReport()
        if not branches:
            return report

        if len(branches) == 1:
            ok, detail = await self._merge_checked(branches, f"Merge {branches[0]}")
            self._record(report, branches[0], ok, detail)
            return report

        ok, detail = await self._merge_checked(
            branches, f"Merge {len(branches)} task branch(es): {', '.join(branches)}"
        )
        if ok:
            report.merged = list(branches)
            report.combined = True
            return report
        logger.warning("Combined merge failed (%s); merging branches one at a time", detail)

        for branch in branches:
            ok, detail = await self._merge_checked([branch], f"Merge {branch}")
            self._record(report, branch, ok, detail)
        return report

    @staticmethod
    def _record(report: MergeReport, branch: str, ok: bool, detail: str) -> None:
        if ok:
            report.merged.append(branch)
            return
        logger.warning("Branch %s not merged: %s", branch, detail)
        if detail.startswith("conflict"):
            report.conflicted.append(branch)
        else:
            report.rolled_back.append(branch)

    async def can_merge_to_main(self, branch: str) -> MergeCheck:
        if not self.git.branch_exists(branch):
            return MergeCheck(False, f"Branch does not exist: {branch}")
        if self.git.has_changes():
            return MergeCheck(False, "Working tree has uncommitted changes")

        original = self.git.current_branch().output
        switched = self.git.checkout(branch)
        if not switched.success:
            return MergeCheck(False, f"Could not check out {branch}: {switched.error}")
        try:
            summary = await self.verifier.run(self.verify_commands, self.repo_root)
        finally:
            if original:
                self.git.checkout(original)
        if not summary.all_passed:
            return MergeCheck(False, f"Verification failed on {branch}")

        if self.git.merge_conflicts(branch, self.trunk):
            return MergeCheck(False, f"{branch} conflicts with {self.trunk}")
        return MergeCheck(True)

    async def auto_merge_with_checks(self, branch: str) -> MergeReport:
        """Merge one branch into the trunk only if it verifies and merges cleanly."""
        report = MergeReport()
        check = await self.can_merge_to_main(branch)
        if not check.ok:
            logger.warning("Refusing to merge %s: %s", branch, check.reason)
            report.conflicted.append(branch)
            return report
        self.git.checkout(self.trunk).raise_for_error(f"Checkout {self.trunk}")
        return await self.merge_branches([branch])
