import pytest

from autoloop.errors import ConfigError
from autoloop.models import Step, StepResult, Workflow, resolve_step_order


def _ids(steps: list[Step]) -> list[str]:
    return [step.id for step in steps]


def test_dependencies_come_first() -> None:
    steps = [
        Step(id="docs", prompt="p", depends_on=["impl"]),
        Step(id="impl", prompt="p", depends_on=["schema"]),
        Step(id="schema", prompt="p"),
    ]

    assert _ids(resolve_step_order(steps)) == ["schema", "impl", "docs"]


def test_ties_keep_declaration_order() -> None:
    steps = [
        Step(id="b", prompt="p"),
        Step(id="c", prompt="p", depends_on=["a"]),
        Step(id="a", prompt="p"),
        Step(id="d", prompt="p"),
    ]

    assert _ids(resolve_step_order(steps)) == ["b", "a", "c", "d"]


def test_cycle_is_rejected() -> None:
    steps = [
        Step(id="a", prompt="p", depends_on=["b"]),
        Step(id="b", prompt="p", depends_on=["a"]),
        Step(id="c", prompt="p"),
    ]

    with pytest.raises(ConfigError, match="Circular or unresolvable dependencies: a, b"):
        resolve_step_order(steps)


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(ConfigError):
        resolve_step_order([Step(id="a", prompt="p", depends_on=["ghost"])])


def test_workflow_from_dict_parses_steps_and_verify() -> None:
    workflow = Workflow.from_dict(
        {
            "name": "health",
            "branch": "feature/{{route}}",
            "variables": {"route": "health", "port": 8080},
            "verify": ["true", {"label": "Tests", "command": "pytest", "optional": True}],
            "steps": [
                {"id": "impl", "prompt": "Add {{route}}", "max_attempts": 2},
                {"id": "docs", "prompt": "Document", "depends_on": "impl", "retries": 1},
            ],
        }
    )

    assert workflow.variables == {"route": "health", "port": "8080"}
    assert [command.label for command in workflow.verify] == ["true", "Tests"]
    assert workflow.verify[1].optional is True
    assert workflow.steps[0].max_attempts == 2
    assert workflow.steps[0].verify is None
    assert workflow.steps[1].depends_on == ["impl"]
    assert workflow.steps[1].retries == 1


def test_workflow_rejects_duplicate_ids() -> None:
    with pytest.raises(ConfigError, match="Duplicate step id: a"):
        Workflow.from_dict(
            {"name": "w", "steps": [{"id": "a", "prompt": "p"}, {"id": "a", "prompt": "q"}]}
        )


def test_step_requires_positive_attempts() -> None:
    with pytest.raises(ConfigError, match="max_attempts"):
        Step.from_dict({"id": "a", "prompt": "p", "max_attempts": 0})


def test_step_result_dict_roundtrip() -> None:
    result = StepResult(
        step_id="a", status="completed", attempts=2, files_written=["x.py"], committed=True
    )

    assert StepResult.from_dict(result.to_dict()) == result
