import json
from pathlib import Path

import pytest

from autoloop.errors import ConfigError
from autoloop.state import SCHEMA_VERSION, StateManager


def _execution(execution_id: str, started_at: str) -> dict:
    return {
        "execution_id": execution_id,
        "workflow_name": "wf",
        "status": "running",
        "steps": {"a": {"status": "pending", "attempts": 0, "retries": 0}},
        "started_at": started_at,
    }


def test_save_wraps_in_envelope_and_bumps_revision(tmp_path: Path) -> None:
    state = StateManager(tmp_path / "state")
    execution = _execution("exec1", "2026-01-01T00:00:00+00:00")

    state.save(execution)
    execution["status"] = "completed"
    state.save(execution)

    raw = json.loads((tmp_path / "state" / "exec1.json").read_text(encoding="utf-8"))
    assert raw["schema_version"] == SCHEMA_VERSION
    assert raw["revision"] == 2
    assert raw["data"]["status"] == "completed"
    assert state.load("exec1")["status"] == "completed"


def test_load_missing_or_corrupt_returns_none(tmp_path: Path) -> None:
    state = StateManager(tmp_path)
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    assert state.load("absent") is None
    assert state.load("broken") is None


def test_bare_documents_are_still_readable(tmp_path: Path) -> None:
    state = StateManager(tmp_path)
    bare = _execution("legacy", "2026-01-01T00:00:00+00:00")
    (tmp_path / "legacy.json").write_text(json.dumps(bare), encoding="utf-8")

    assert state.load("legacy")["workflow_name"] == "wf"


def test_list_is_newest_first_and_skips_corrupt(tmp_path: Path) -> None:
    state = StateManager(tmp_path)
    state.save(_execution("old", "2026-01-01T00:00:00+00:00"))
    state.save(_execution("new", "2026-02-01T00:00:00+00:00"))
    (tmp_path / "zz.json").write_text("[]", encoding="utf-8")

    assert [item["execution_id"] for item in state.list()] == ["new", "old"]


def test_execution_ids_cannot_escape_state_dir(tmp_path: Path) -> None:
    state = StateManager(tmp_path)

    with pytest.raises(ConfigError, match="Invalid execution id"):
        state.load("../etc/passwd")
