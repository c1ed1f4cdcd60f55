from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import yaml

from autoloop.errors import QueueError

logger = logging.getLogger(__name__)

TaskStatus = Literal["pending", "running", "completed", "failed", "skipped"]
TASK_STATUSES: tuple[str, ...] = ("pending", "running", "completed", "failed", "skipped")

# Forward moves only; returning to pending goes through reset_task.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "skipped"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "skipped": set(),
}

STATUS_ICONS = {
    "pending": "[ ]",
    "running": "[>]",
    "completed": "[x]",
    "failed": "[!]",
    "skipped": "[-]",
}

_KNOWN_KEYS = {
    "id",
    "status",
    "prompt",
    "agent",
    "context_files",
    "variables",
    "error",
    "started_at",
    "completed_at",
    "branch",
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Task:
    id: str
    prompt: str
    status: TaskStatus = "pending"
    agent: str | None = None
    context_files: list[str] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    branch: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        if "id" not in data:
            raise QueueError(f"Queue entry is missing an id: {data!r}")
        status = str(data.get("status") or "pending")
        if status not in TASK_STATUSES:
            raise QueueError(f"Task {data['id']} has unknown status: {status}")
        return cls(
            id=str(data["id"]),
            prompt=str(data.get("prompt") or ""),
            status=status,  # type: ignore[arg-type]
            agent=data.get("agent"),
            context_files=[str(item) for item in data.get("context_files") or []],
            variables={str(k): str(v) for k, v in (data.get("variables") or {}).items()},
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            branch=data.get("branch"),
            extra={key: value for key, value in data.items() if key not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "prompt": self.prompt,
        }
        optional: dict[str, Any] = {
            "agent": self.agent,
            "context_files": list(self.context_files) or None,
            "variables": dict(self.variables) or None,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "branch": self.branch,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        payload.update(self.extra)
        return payload


class QueueManager:
    """Ordered task list persisted as a YAML document with a single ``tasks`` key.

    Every mutation re-reads and rewrites the whole file. A second process editing
    the queue between the read and the write loses its change; one scheduler per
    queue file is assumed.
    """

    def __init__(self, queue_path: Path) -> None:
        self.queue_path = queue_path

    def _load(self) -> list[Task]:
        if not self.queue_path.exists():
            return []
        try:
            payload = yaml.safe_load(self.queue_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise QueueError(f"Queue file is not valid YAML: {self.queue_path}") from exc
        if payload is None:
            return []
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks", []), list):
            raise QueueError(f"Queue file must contain a 'tasks' list: {self.queue_path}")
        return [Task.from_dict(item) for item in payload.get("tasks") or []]

    def _save(self, tasks: list[Task]) -> None:
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        dumped = yaml.safe_dump(
            {"tasks": [task.to_dict() for task in tasks]},
            sort_keys=False,
            allow_unicode=True,
            width=120,
        )
        self.queue_path.write_text(dumped, encoding="utf-8")

    def _mutate(self, task_id: str, change: Callable[[Task], None]) -> Task:
        tasks = self._load()
        for task in tasks:
            if task.id == task_id:
                change(task)
                self._save(tasks)
                return task
        raise QueueError(f"Task not found: {task_id}")

    @staticmethod
    def _transition(task: Task, target: TaskStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[task.status]:
            raise QueueError(
                f"Task {task.id} cannot move from {task.status} to {target}"
                + (" without a reset" if task.status == "failed" else "")
            )
        task.status = target

    def list(self) -> list[Task]:
        return self._load()

    def get(self, task_id: str) -> Task:
        for task in self._load():
            if task.id == task_id:
                return task
        raise QueueError(f"Task not found: {task_id}")

    def next(self) -> Task | None:
        """First pending task in file order."""
        for task in self._load():
            if task.status == "pending":
                return task
        return None

    def summary(self) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self._load():
            counts[task.status] += 1
        return counts

    def add(self, task: Task) -> Task:
        tasks = self._load()
        if any(existing.id == task.id for existing in tasks):
            raise QueueError(f"Task already exists: {task.id}")
        tasks.append(task)
        self._save(tasks)
        return task

    def mark_running(self, task_id: str) -> Task:
        def change(task: Task) -> None:
            self._transition(task, "running")
            task.started_at = _utcnow_iso()

        return self._mutate(task_id, change)

    def mark_completed(self, task_id: str, branch: str | None = None) -> Task:
        def change(task: Task) -> None:
            self._transition(task, "completed")
            task.completed_at = _utcnow_iso()
            task.error = None
            if branch:
                task.branch = branch

        return self._mutate(task_id, change)

    def mark_failed(self, task_id: str, error: str, branch: str | None = None) -> Task:
        def change(task: Task) -> None:
            self._transition(task, "failed")
            task.completed_at = _utcnow_iso()
            task.error = error
            if branch:
                task.branch = branch

        return self._mutate(task_id, change)

    def mark_skipped(self, task_id: str) -> Task:
        return self._mutate(task_id, lambda task: self._transition(task, "skipped"))

    def reset_task(self, task_id: str) -> Task:
        def change(task: Task) -> None:
            task.status = "pending"
            task.error = None
            task.started_at = None
            task.completed_at = None

        return self._mutate(task_id, change)

    def render(self) -> str:
        tasks = self._load()
        counts = self.summary()
        lines = [
            "Task Queue",
            "",
            (
                f"  Pending: {counts['pending']} | Running: {counts['running']} | "
                f"Completed: {counts['completed']} | Failed: {counts['failed']} | "
                f"Skipped: {counts['skipped']}"
            ),
            "",
        ]
        for task in tasks:
            lines.append(f"  {STATUS_ICONS[task.status]} {task.id} ({task.status})")
            if task.error:
                lines.append(f"      Error: {task.error[:100]}")
            if task.branch:
                lines.append(f"      Branch: {task.branch}")
        return "\n".join(lines)
