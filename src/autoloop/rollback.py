from __future__ import annotations

import json
import logging
import resource
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autoloop.errors import RollbackError
from autoloop.gitops import GitOps
from autoloop.verification import VerificationRunner, VerificationSummary, VerifyCommand

logger = logging.getLogger(__name__)

MemoryProbe = Callable[[], float]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def peak_memory_kb() -> float:
    """Peak resident memory of this process and its finished children, in KiB."""
    scale = 1024 if sys.platform == "darwin" else 1
    usage = (
        resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        + resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
    )
    return usage / scale


class RollbackManager:
    def __init__(self, git: GitOps, history_path: Path) -> None:
        self.git = git
        self.history_path = history_path

    def create_checkpoint(self) -> str:
        return self.git.head_sha().raise_for_error("Checkpoint").output

    def can_safely_rollback(self) -> bool:
        return not self.git.has_changes()

    def rollback_to_commit(self, commit: str, reason: str) -> str:
        """Hard-reset to ``commit`` and log the event. Refuses on a dirty tree."""
        if not self.can_safely_rollback():
            raise RollbackError(
                "Working tree has uncommitted changes; refusing to roll back to "
                f"{commit}. Commit or stash them first."
            )
        previous = self.git.head_sha().output
        result = self.git.reset_hard(commit)
        if not result.success:
            raise RollbackError(f"Rollback to {commit} failed: {result.error}")
        entry = {
            "timestamp": _utcnow_iso(),
            "commit_hash": commit,
            "previous_head": previous,
            "reason": reason,
        }
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        with self.history_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        logger.warning("Rolled back %s -> %s: %s", previous, commit, reason)
        return previous

    def history(self) -> list[dict[str, Any]]:
        if not self.history_path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in self.history_path.read_text(encoding="utf-8").splitlines():
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries


@dataclass(slots=True)
class MonitorResult:
    should_rollback: bool
    reason: str
    verification: VerificationSummary | None = None
    memory_growth: float | None = None


class PostMergeMonitor:
    """Re-verifies after a merge and flags regressions.

    Memory growth is compared against a baseline captured before the merge. The
    threshold is a tunable heuristic, not a correctness guarantee.
    """

    def __init__(
        self,
        verifier: VerificationRunner,
        commands: list[VerifyCommand],
        *,
        memory_growth_threshold: float = 0.05,
        probe: MemoryProbe = peak_memory_kb,
    ) -> None:
        self.verifier = verifier
        self.commands = commands
        self.memory_growth_threshold = memory_growth_threshold
        self.probe = probe
        self._baseline: float | None = None

    def capture_baseline(self) -> float:
        self._baseline = self.probe()
        return self._baseline

    async def check(self, cwd: Path) -> MonitorResult:
        summary = await self.verifier.run(self.commands, cwd)
        if not summary.all_passed:
            return MonitorResult(True, "Post-merge verification failed", summary)

        growth: float | None = None
        if self._baseline:
            growth = (self.probe() - self._baseline) / self._baseline
            if growth > self.memory_growth_threshold:
                return MonitorResult(
                    True,
                    f"Memory usage grew {growth:.1%} (threshold {self.memory_growth_threshold:.1%})",
                    summary,
                    growth,
                )
        return MonitorResult(False, "Healthy", summary, growth)


def restore_or_fail(rollback: RollbackManager, checkpoint: str, reason: str) -> None:
    """Roll back after a regression, or raise when that cannot be done safely."""
    if not rollback.can_safely_rollback():
        raise RollbackError(
            f"Regression detected ({reason}) but the working tree is dirty; "
            f"manual recovery needed (checkpoint {checkpoint})."
        )
    rollback.rollback_to_commit(checkpoint, reason)
