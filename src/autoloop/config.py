from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from autoloop.errors import ConfigError

AdapterName = Literal["claude", "openai"]
ADAPTER_NAMES: tuple[str, ...] = ("claude", "openai")
DEFAULT_CONFIG_FILE = "autoloop.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    trunk_branch: str = "main"
    remote: str = "origin"
    push_after_merge: bool = True


@dataclass(slots=True)
class BackendConfig:
    primary: AdapterName = "claude"
    fallback: AdapterName = "openai"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0
    claude_binary: str = "claude"
    claude_model: str = "claude-sonnet-4-5"
    openai_model: str = "gpt-5-codex"


@dataclass(slots=True)
class VerifyConfig:
    type_check_command: str = "python -m compileall -q src"
    build_command: str = "python -m compileall -q src tests"
    test_command: str = "python -m pytest -q"
    security_command: str = "autoloop security-check"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerConfig:
    queue_file: str = "tasks/queue.yaml"
    branch_prefix: str = "auto/"
    max_attempts: int = 3
    poll_interval_seconds: float = 300.0
    prompts_dir: str = "prompts"


@dataclass(slots=True)
class RollbackConfig:
    memory_growth_threshold: float = 0.05
    history_file: str = ".autoloop/rollback-history.log"


@dataclass(slots=True)
class GuardrailsConfig:
    protected_files: list[str] = field(default_factory=lambda: ["autoloop.toml"])
    protected_patterns: list[str] = field(
        default_factory=lambda: [
            "pyproject.toml",
            "setup.cfg",
            "setup.py",
            "*.lock",
            "requirements*.txt",
            "tox.ini",
            ".pre-commit-config.yaml",
            "package.json",
            "package-lock.json",
        ]
    )
    security_critical_files: list[str] = field(
        default_factory=lambda: [
            "src/autoloop/cli.py",
            "src/autoloop/scheduler.py",
            "src/autoloop/runner.py",
            "src/autoloop/gitops.py",
            "src/autoloop/verification.py",
            "__main__.py",
        ]
    )


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    audit_log: str = ".autoloop/audit-log.jsonl"
    cost_log: str = ".autoloop/task-costs.jsonl"
    state_dir: str = ".autoloop/state"


SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "backend": BackendConfig,
    "verify": VerifyConfig,
    "scheduler": SchedulerConfig,
    "rollback": RollbackConfig,
    "guardrails": GuardrailsConfig,
    "logging": LoggingConfig,
}


def _build_section(name: str, data: Any) -> Any:
    section_cls = SECTIONS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Config section [{name}] must be a table.")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return section_cls(**data)


@dataclass(slots=True)
class AutoloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AutoloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutoloopConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        config = cls(**{name: _build_section(name, data.get(name)) for name in SECTIONS})
        for name in (config.backend.primary, config.backend.fallback):
            if name not in ADAPTER_NAMES:
                raise ConfigError(f"Unsupported adapter: {name}")
        if config.scheduler.max_attempts < 1:
            raise ConfigError("scheduler.max_attempts must be at least 1.")
        return config

    def to_dict(self) -> dict:
        return {name: asdict(getattr(self, name)) for name in SECTIONS}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutoloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutoloopConfig:
    if not path.exists():
        return AutoloopConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return AutoloopConfig.from_dict(data)


def save_config(path: Path, config: AutoloopConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
