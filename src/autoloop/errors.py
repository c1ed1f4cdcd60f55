from __future__ import annotations


class AutoloopError(RuntimeError):
    """Base class for orchestrator failures that abort an operation."""


class ConfigError(AutoloopError):
    """Raised for malformed configuration, workflows, or missing collaborators."""


class GitError(AutoloopError):
    """Raised when a version-control command fails fatally."""


class QueueError(AutoloopError):
    """Raised when a queue mutation targets a missing task or an illegal transition."""


class RollbackError(AutoloopError):
    """Raised when a rollback cannot be performed safely."""
