from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from autoloop.audit import AuditLog, CostTracker
from autoloop.config import AutoloopConfig
from autoloop.gitops import GitOps

Reporter = Callable[[str], None]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install a single handler on the package logger, bound to the current stderr."""
    root = logging.getLogger("autoloop")
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        if getattr(existing, "_autoloop", False):
            root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._autoloop = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


@dataclass(slots=True)
class RunContext:
    """Everything a component needs from the process: config, paths, sinks.

    Built once at startup and handed to constructors explicitly.
    """

    config: AutoloopConfig
    repo_root: Path
    logger: logging.Logger
    audit: AuditLog
    costs: CostTracker
    reporter: Reporter | None = None

    def report(self, message: str) -> None:
        """User-facing progress line; falls back to the logger."""
        if self.reporter is not None:
            self.reporter(message)
        else:
            self.logger.info(message)

    def path(self, relative: str) -> Path:
        candidate = Path(relative)
        if candidate.is_absolute():
            return candidate
        return self.repo_root / candidate


def build_context(
    repo_root: Path,
    config: AutoloopConfig | None = None,
    *,
    reporter: Reporter | None = None,
    logger: logging.Logger | None = None,
) -> RunContext:
    config = config or AutoloopConfig.default()
    repo_root = repo_root.resolve()
    git = GitOps(repo_root)
    for relative in (
        config.logging.audit_log,
        config.logging.cost_log,
        config.logging.state_dir,
        config.rollback.history_file,
    ):
        parts = Path(relative).parts
        if parts and not Path(relative).is_absolute() and len(parts) > 1:
            git.exclude_locally(f"/{parts[0]}/")
    return RunContext(
        config=config,
        repo_root=repo_root,
        logger=logger or logging.getLogger("autoloop"),
        audit=AuditLog(repo_root / config.logging.audit_log),
        costs=CostTracker(repo_root / config.logging.cost_log),
        reporter=reporter,
    )
