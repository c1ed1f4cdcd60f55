import subprocess
from pathlib import Path

import pytest

from autoloop.config import AutoloopConfig
from autoloop.context import RunContext, build_context


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        ["git", "init", "-b", "main"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    return repo


@pytest.fixture
def quiet_config() -> AutoloopConfig:
    """Config whose verification commands always pass and never touch the network."""
    config = AutoloopConfig.default()
    config.verify.type_check_command = "true"
    config.verify.build_command = "true"
    config.verify.test_command = "true"
    config.project.push_after_merge = False
    config.rollback.memory_growth_threshold = 1000.0
    return config


@pytest.fixture
def context(git_repo: Path, quiet_config: AutoloopConfig) -> RunContext:
    return build_context(git_repo, quiet_config)
