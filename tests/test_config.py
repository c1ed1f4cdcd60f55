import tomllib
from pathlib import Path

import pytest

from autoloop import __version__
from autoloop.config import AutoloopConfig, dumps_toml, load_config, save_config
from autoloop.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "autoloop.toml"
    config = AutoloopConfig.default()
    config.project.name = "autoloop-test"
    config.project.push_after_merge = False
    config.backend.primary = "openai"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.verify.type_check_command = "mypy src"
    config.scheduler.branch_prefix = "bot/"
    config.scheduler.max_attempts = 5
    config.rollback.memory_growth_threshold = 0.2
    config.guardrails.protected_patterns = ["*.lock"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "autoloop-test"
    assert loaded.project.push_after_merge is False
    assert loaded.backend.primary == "openai"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.verify.type_check_command == "mypy src"
    assert loaded.scheduler.branch_prefix == "bot/"
    assert loaded.scheduler.max_attempts == 5
    assert loaded.rollback.memory_growth_threshold == pytest.approx(0.2)
    assert loaded.guardrails.protected_patterns == ["*.lock"]


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.project.trunk_branch == "main"
    assert config.scheduler.queue_file == "tasks/queue.yaml"
    assert config.rollback.memory_growth_threshold == pytest.approx(0.05)


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(AutoloopConfig.default())

    for section in ("project", "backend", "verify", "scheduler", "rollback", "guardrails", "logging"):
        assert f"[{section}]" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "memory_growth_threshold" in rendered
    tomllib.loads(rendered)


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "autoloop.toml"
    config_path.write_text("[scheduler]\nbranch_prefx = 'x/'\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="branch_prefx"):
        load_config(config_path)


def test_invalid_toml_is_a_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "autoloop.toml"
    config_path.write_text("[project\nname = 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_unsupported_adapter_is_rejected() -> None:
    with pytest.raises(ConfigError, match="Unsupported adapter"):
        AutoloopConfig.from_dict({"backend": {"primary": "gemini"}})


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ConfigError, match="max_attempts"):
        AutoloopConfig.from_dict({"scheduler": {"max_attempts": 0}})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
