import asyncio
from pathlib import Path
from typing import Any

import pytest
import yaml

from autoloop.adapters import AdapterRequest, Completion, ModelAdapter, RateLimitedError
from autoloop.context import RunContext
from autoloop.errors import ConfigError
from autoloop.runner import AutonomousRunner
from autoloop.workflow import WorkflowRunner, load_workflow

SCHEMA = "```python:src/schema.py\nFIELDS = ['id']\n```"
API = "```python:src/api.py\nROUTE = 'ok'\n```"


class ScriptedAdapter(ModelAdapter):
    name = "fake"

    def __init__(self, script: list[Any]) -> None:
        super().__init__(model="fake-model")
        self.script = list(script)
        self.prompts: list[str] = []

    async def complete(self, request: AdapterRequest) -> Completion:
        self.prompts.append(request.prompt)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return Completion(text=item)


def _write_workflow(path: Path, **overrides: Any) -> Path:
    document = {
        "name": "api-feature",
        "description": "Schema then endpoint",
        "verify": ["true"],
        "variables": {"route": "/items"},
        "steps": [
            {"id": "schema", "prompt": "Define the schema", "max_attempts": 1},
            {
                "id": "api",
                "prompt": "Expose {{route}} using {{steps.schema.output}}",
                "depends_on": ["schema"],
                "max_attempts": 1,
            },
        ],
    }
    document.update(overrides)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


def _workflow_runner(context: RunContext, adapter: ModelAdapter) -> WorkflowRunner:
    return WorkflowRunner(context, AutonomousRunner(context, {"claude": adapter}))


def test_run_persists_execution_state(tmp_path: Path, context: RunContext) -> None:
    source = _write_workflow(tmp_path / "workflow.yaml")
    adapter = ScriptedAdapter([SCHEMA, API])
    runner = _workflow_runner(context, adapter)

    result = asyncio.run(runner.run(load_workflow(source), {"route": "/health"}, source=source))

    assert result.status == "completed"
    assert [step.step_id for step in result.steps] == ["schema", "api"]
    assert "Expose /health using - src/schema.py" in adapter.prompts[1]
    saved = runner.status(result.execution_id)
    assert saved["status"] == "completed"
    assert saved["workflow_path"] == str(source.resolve())
    assert saved["steps"]["api"]["status"] == "completed"
    assert runner.list()[0]["execution_id"] == result.execution_id
    finished = context.audit.entries("workflow_finished")
    assert finished[-1]["status"] == "completed"


def test_step_retries_rerun_the_attempt_loop(tmp_path: Path, context: RunContext) -> None:
    source = tmp_path / "retry.yaml"
    source.write_text(
        yaml.safe_dump(
            {
                "name": "retry",
                "verify": ["true"],
                "steps": [{"id": "only", "prompt": "p", "max_attempts": 1, "retries": 1}],
            }
        ),
        encoding="utf-8",
    )
    runner = _workflow_runner(context, ScriptedAdapter(["nothing useful", SCHEMA]))

    result = asyncio.run(runner.run(load_workflow(source), source=source))

    assert result.status == "completed"
    saved = runner.status(result.execution_id)
    assert saved["steps"]["only"]["retries"] == 1
    assert saved["steps"]["only"]["attempts"] == 2


def test_resume_skips_completed_steps(tmp_path: Path, context: RunContext) -> None:
    source = _write_workflow(tmp_path / "workflow.yaml")
    failing = _workflow_runner(context, ScriptedAdapter([SCHEMA, RateLimitedError("429")]))

    first = asyncio.run(failing.run(load_workflow(source), source=source))

    assert first.status == "failed"
    assert first.failed_step.step_id == "api"
    assert failing.status(first.execution_id)["steps"]["schema"]["status"] == "completed"

    adapter = ScriptedAdapter([API])
    resumed = asyncio.run(_workflow_runner(context, adapter).resume(first.execution_id))

    assert resumed.status == "completed"
    assert len(adapter.prompts) == 1
    assert "- src/schema.py" in adapter.prompts[0]


def test_resume_unknown_execution(context: RunContext) -> None:
    runner = _workflow_runner(context, ScriptedAdapter([SCHEMA]))

    with pytest.raises(ConfigError, match="Execution not found"):
        asyncio.run(runner.resume("missing"))


def test_cyclic_workflow_fails_before_any_call(tmp_path: Path, context: RunContext) -> None:
    source = _write_workflow(
        tmp_path / "cycle.yaml",
        steps=[
            {"id": "a", "prompt": "p", "depends_on": ["b"]},
            {"id": "b", "prompt": "p", "depends_on": ["a"]},
        ],
    )
    adapter = ScriptedAdapter([SCHEMA])

    with pytest.raises(ConfigError, match="Circular"):
        asyncio.run(_workflow_runner(context, adapter).run(load_workflow(source)))
    assert adapter.prompts == []


def test_load_workflow_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_workflow(tmp_path / "absent.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("name: [oops\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid YAML"):
        load_workflow(broken)

    empty_steps = tmp_path / "empty.yaml"
    empty_steps.write_text("name: x\nsteps: []\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="non-empty 'steps'"):
        load_workflow(empty_steps)
