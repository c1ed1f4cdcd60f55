from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from autoloop.config import GuardrailsConfig

logger = logging.getLogger(__name__)

MARKER_LINE = re.compile(r"^<!--\s*file:\s*([^\s>]+)\s*-->\s*$")
PLAIN_FENCE = re.compile(r"^(`{3,})(\w*)\s*$")
PATH_FENCE = re.compile(r"^(`{3,})(\w+):(.+)$")

# The orchestrator never lets a model rewrite its own control loop.
ORCHESTRATOR_CORE_FILES = frozenset(
    {
        "src/autoloop/cli.py",
        "src/autoloop/config.py",
        "src/autoloop/runner.py",
        "src/autoloop/scheduler.py",
        "src/autoloop/task_queue.py",
        "src/autoloop/file_writer.py",
        "src/autoloop/verification.py",
        "src/autoloop/gitops.py",
        "src/autoloop/workflow.py",
        "src/autoloop/prompts.py",
        "src/autoloop/state.py",
        "src/autoloop/security.py",
        "src/autoloop/rollback.py",
    }
)


@dataclass(slots=True)
class FileChange:
    file_path: str
    content: str
    language: str | None = None


@dataclass(slots=True)
class WriteResult:
    written: list[FileChange] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def written_paths(self) -> list[str]:
        return [change.file_path for change in self.written]


@dataclass(slots=True)
class ProtectedFiles:
    """Exact relative paths plus basename wildcard patterns that edits may not touch."""

    files: frozenset[str] = frozenset()
    patterns: tuple[str, ...] = ()

    @classmethod
    def from_config(
        cls, guardrails: GuardrailsConfig, *, queue_file: str | None = None
    ) -> ProtectedFiles:
        files = set(guardrails.protected_files)
        if queue_file:
            files.add(str(PurePosixPath(queue_file.replace("\\", "/"))))
        return cls(
            files=ORCHESTRATOR_CORE_FILES | frozenset(files),
            patterns=tuple(guardrails.protected_patterns),
        )

    def is_protected(self, file_path: str) -> bool:
        normalized = str(PurePosixPath(file_path.replace("\\", "/")))
        if normalized in self.files:
            return True
        name = PurePosixPath(normalized).name
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.patterns)


def _read_fenced(lines: list[str], start: int, fence: str) -> tuple[list[str], int]:
    """Collect lines from ``start`` up to the closing fence; return them and the fence index."""
    body: list[str] = []
    index = start
    while index < len(lines):
        line = lines[index]
        if line.startswith(fence) and len(line.strip()) <= len(fence) + 1:
            break
        body.append(line)
        index += 1
    return body, index


def _normalize_content(body: list[str]) -> str:
    return "\n".join(body).rstrip() + "\n"


def parse_code_blocks(output: str) -> list[FileChange]:
    """Extract file edits from model output.

    Two encodings are recognized::

        ```python:src/app/health.py
        ...
        ```

        <!-- file: src/app/health.py -->
        ```python
        ...
        ```

    A fence of N backticks only closes on a line starting with N backticks, so
    longer fences may wrap files that themselves contain fenced blocks. The first
    block seen for a path wins.
    """
    changes: list[FileChange] = []
    seen: set[str] = set()
    lines = output.split("\n")

    def _add(path: str, body: list[str], language: str | None) -> None:
        if path in seen:
            return
        seen.add(path)
        changes.append(FileChange(path, _normalize_content(body), language or None))

    index = 0
    while index < len(lines):
        line = lines[index]

        marker = MARKER_LINE.match(line)
        if marker and index + 1 < len(lines):
            fence = PLAIN_FENCE.match(lines[index + 1])
            if fence:
                body, close = _read_fenced(lines, index + 2, fence.group(1))
                _add(marker.group(1).strip(), body, fence.group(2))
                index = close + 1
                continue

        opening = PATH_FENCE.match(line)
        if opening:
            body, close = _read_fenced(lines, index + 1, opening.group(1))
            _add(opening.group(3).strip(), body, opening.group(2).strip())
            index = close + 1
            continue

        index += 1
    return changes


def _relative_inside(root: Path, file_path: str) -> str | None:
    target = (root / file_path).resolve()
    if not target.is_relative_to(root):
        return None
    return target.relative_to(root).as_posix()


def write_files(
    changes: list[FileChange],
    root: Path,
    protected: ProtectedFiles | None = None,
) -> WriteResult:
    """Write edits under ``root``.

    Paths that escape ``root`` are errors. Protected paths are reported as blocked
    and are not errors.
    """
    root = root.resolve()
    result = WriteResult()
    for change in changes:
        relative = _relative_inside(root, change.file_path)
        if relative is None:
            result.errors.append(f"Skipped {change.file_path}: path escapes target directory")
            continue
        if protected is not None and protected.is_protected(relative):
            logger.warning("Blocked write to protected file %s", relative)
            result.blocked.append(relative)
            continue
        target = root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(change.content, encoding="utf-8")
        except OSError as exc:
            result.errors.append(f"Failed to write {change.file_path}: {exc}")
            continue
        logger.info("Wrote %s", relative)
        result.written.append(change)
    return result


def build_file_context(file_paths: list[str], root: Path) -> str:
    root = root.resolve()
    sections: list[str] = []
    for file_path in file_paths:
        relative = _relative_inside(root, file_path)
        if relative is None:
            logger.warning("Context file outside project ignored: %s", file_path)
            continue
        target = root / relative
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.warning("Context file unreadable: %s", file_path)
            continue
        if content:
            sections.append(f"--- {file_path} ---\n{content}")
    return "\n\n".join(sections)
