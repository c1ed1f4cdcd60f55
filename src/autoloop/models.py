from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from autoloop.errors import ConfigError
from autoloop.verification import VerifyCommand

DEFAULT_MAX_ATTEMPTS = 3
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]


def _verify_list(raw: Any, where: str) -> list[VerifyCommand] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: verify must be a list of commands")
    commands: list[VerifyCommand] = []
    for item in raw:
        if isinstance(item, str):
            commands.append(VerifyCommand(label=item, command=item))
        elif isinstance(item, dict) and "command" in item:
            commands.append(VerifyCommand.from_dict(item))
        else:
            raise ConfigError(f"{where}: invalid verify command {item!r}")
    return commands


def _string_map(raw: Any, where: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: variables must be a mapping")
    return {str(key): str(value) for key, value in raw.items()}


@dataclass(slots=True)
class Step:
    id: str
    prompt: str
    agent: str | None = None
    context_files: list[str] = field(default_factory=list)
    verify: list[VerifyCommand] | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    commit_message: str | None = None
    depends_on: list[str] = field(default_factory=list)
    retries: int = 0
    variables: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        if not isinstance(data, dict) or not data.get("id") or not data.get("prompt"):
            raise ConfigError(f"Workflow step needs 'id' and 'prompt': {data!r}")
        step_id = str(data["id"])
        depends_on = data.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        max_attempts = int(data.get("max_attempts", DEFAULT_MAX_ATTEMPTS))
        if max_attempts < 1:
            raise ConfigError(f"Step {step_id}: max_attempts must be at least 1")
        return cls(
            id=step_id,
            prompt=str(data["prompt"]),
            agent=data.get("agent"),
            context_files=[str(item) for item in data.get("context_files") or []],
            verify=_verify_list(data.get("verify"), f"Step {step_id}"),
            max_attempts=max_attempts,
            commit_message=data.get("commit_message"),
            depends_on=[str(item) for item in depends_on],
            retries=max(0, int(data.get("retries", 0))),
            variables=_string_map(data.get("variables"), f"Step {step_id}"),
        )


@dataclass(slots=True)
class Workflow:
    name: str
    steps: list[Step]
    description: str = ""
    agent: str | None = None
    branch: str | None = None
    target_dir: str = "."
    verify: list[VerifyCommand] | None = None
    variables: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workflow:
        if not isinstance(data, dict):
            raise ConfigError("Workflow document must be a mapping")
        name = data.get("name")
        raw_steps = data.get("steps")
        if not name or not isinstance(raw_steps, list) or not raw_steps:
            raise ConfigError("Workflow needs a 'name' and a non-empty 'steps' list")
        steps = [Step.from_dict(item) for item in raw_steps]
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ConfigError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        return cls(
            name=str(name),
            steps=steps,
            description=str(data.get("description") or ""),
            agent=data.get("agent"),
            branch=data.get("branch"),
            target_dir=str(data.get("target_dir") or "."),
            verify=_verify_list(data.get("verify"), f"Workflow {name}"),
            variables=_string_map(data.get("variables"), f"Workflow {name}"),
        )


@dataclass(slots=True)
class StepResult:
    step_id: str
    status: Literal["completed", "failed"]
    attempts: int
    files_written: list[str] = field(default_factory=list)
    verification_passed: bool = False
    committed: bool = False
    commit_message: str | None = None
    error: str | None = None
    duration_ms: int = 0
    blocked_files: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepResult:
        return cls(
            step_id=str(data["step_id"]),
            status="completed" if data.get("status") == "completed" else "failed",
            attempts=int(data.get("attempts", 0)),
            files_written=list(data.get("files_written") or []),
            verification_passed=bool(data.get("verification_passed")),
            committed=bool(data.get("committed")),
            commit_message=data.get("commit_message"),
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms", 0)),
            blocked_files=list(data.get("blocked_files") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status,
            "attempts": self.attempts,
            "files_written": list(self.files_written),
            "verification_passed": self.verification_passed,
            "committed": self.committed,
            "commit_message": self.commit_message,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "blocked_files": list(self.blocked_files),
        }


@dataclass(slots=True)
class ExecutionResult:
    execution_id: str
    workflow_name: str
    status: Literal["completed", "failed"]
    steps: list[StepResult]
    started_at: str
    completed_at: str
    branch: str | None = None

    @property
    def failed_step(self) -> StepResult | None:
        for step in self.steps:
            if step.status == "failed":
                return step
        return None


def resolve_step_order(steps: list[Step]) -> list[Step]:
    """Order steps so each follows its dependencies.

    Repeatedly takes the earliest-declared step whose dependencies are all placed.
    A cycle or a dependency on an unknown step leaves steps unplaceable.
    """
    ordered: list[Step] = []
    placed: set[str] = set()
    remaining = list(steps)
    while remaining:
        ready = next(
            (step for step in remaining if all(dep in placed for dep in step.depends_on)),
            None,
        )
        if ready is None:
            stuck = ", ".join(step.id for step in remaining)
            raise ConfigError(f"Circular or unresolvable dependencies: {stuck}")
        ordered.append(ready)
        placed.add(ready.id)
        remaining.remove(ready)
    return ordered
