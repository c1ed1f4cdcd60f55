import asyncio
import subprocess
from pathlib import Path

import yaml

from autoloop.adapters import AdapterRequest, Completion, ModelAdapter
from autoloop.context import RunContext
from autoloop.runner import AutonomousRunner
from autoloop.scheduler import Scheduler
from autoloop.task_queue import QueueManager, Task

RESPONSES = {
    "alpha": "```text:alpha.txt\nalpha\n```",
    "beta": "```text:beta.txt\nbeta\n```",
}


class KeywordAdapter(ModelAdapter):
    """Answers with the canned edit whose keyword appears in the prompt."""

    name = "fake"

    def __init__(self, responses: dict[str, str]) -> None:
        super().__init__(model="fake-model")
        self.responses = responses
        self.prompts: list[str] = []

    async def complete(self, request: AdapterRequest) -> Completion:
        self.prompts.append(request.prompt)
        for keyword, text in self.responses.items():
            if keyword in request.prompt:
                return Completion(text=text)
        return Completion(text="I could not decide what to change.")


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, text=True, capture_output=True
    ).stdout.strip()


def _seed_queue(context: RunContext, tasks: list[dict]) -> QueueManager:
    path = context.path(context.config.scheduler.queue_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump({"tasks": tasks}, sort_keys=False), encoding="utf-8")
    _git(context.repo_root, "add", "tasks/queue.yaml")
    _git(context.repo_root, "commit", "-m", "Seed queue")
    return QueueManager(path)


def _scheduler(context: RunContext, adapter: ModelAdapter | None = None) -> Scheduler:
    runner = AutonomousRunner(context, {"claude": adapter or KeywordAdapter(RESPONSES)})
    return Scheduler(context, runner)


def test_loop_runs_tasks_on_branches_and_merges(context: RunContext) -> None:
    queue = _seed_queue(
        context,
        [{"id": "t1", "prompt": "write alpha"}, {"id": "t2", "prompt": "write beta"}],
    )

    report = asyncio.run(_scheduler(context).loop())

    repo = context.repo_root
    assert [result.task_id for result in report.results] == ["t1", "t2"]
    assert report.ok is True
    assert report.healthy is True
    assert report.merge.merged == ["auto/t1", "auto/t2"]
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert (repo / "alpha.txt").exists()
    assert (repo / "beta.txt").exists()
    assert _git(repo, "log", "-1", "--format=%s") == "Batch complete: 2 passed, 0 failed"
    assert _git(repo, "status", "--porcelain") == ""
    assert [(task.status, task.branch) for task in queue.list()] == [
        ("completed", "auto/t1"),
        ("completed", "auto/t2"),
    ]
    subjects = _git(repo, "log", "--format=%s").splitlines()
    assert "Queue: start t1" in subjects
    assert "Auto: t1" in subjects
    assert len(context.audit.entries("task_finished")) == 2


def test_failed_task_does_not_stop_the_batch(context: RunContext) -> None:
    context.config.scheduler.max_attempts = 2
    queue = _seed_queue(
        context,
        [{"id": "t1", "prompt": "do something vague"}, {"id": "t2", "prompt": "write beta"}],
    )
    adapter = KeywordAdapter(RESPONSES)

    report = asyncio.run(_scheduler(context, adapter).loop())

    assert [result.success for result in report.results] == [False, True]
    assert report.ok is False
    assert report.merge.merged == ["auto/t2"]
    failed = queue.get("t1")
    assert failed.status == "failed"
    assert "No code blocks" in (failed.error or "")
    assert len([prompt for prompt in adapter.prompts if "vague" in prompt]) == 2
    assert _git(context.repo_root, "log", "-1", "--format=%s") == "Batch complete: 1 passed, 1 failed"


def test_unhealthy_trunk_leaves_branches_unmerged(context: RunContext) -> None:
    context.config.verify.build_command = "false"
    queue = _seed_queue(
        context,
        [{"id": "t1", "prompt": "write alpha"}, {"id": "t2", "prompt": "write beta"}],
    )

    report = asyncio.run(_scheduler(context).loop())

    repo = context.repo_root
    assert report.healthy is False
    assert report.merge is None
    assert report.ok is False
    assert not (repo / "alpha.txt").exists()
    assert _git(repo, "branch", "--list", "auto/*").split() == ["auto/t1", "auto/t2"]
    assert [task.status for task in queue.list()] == ["completed", "completed"]


def test_next_runs_a_single_task(context: RunContext) -> None:
    queue = _seed_queue(
        context,
        [{"id": "t1", "prompt": "write alpha"}, {"id": "t2", "prompt": "write beta"}],
    )

    result = asyncio.run(_scheduler(context).next())

    assert result.success is True
    assert result.branch == "auto/t1"
    assert [task.status for task in queue.list()] == ["completed", "pending"]
    assert _git(context.repo_root, "rev-parse", "--abbrev-ref", "HEAD") == "auto/t1"


def test_next_with_empty_queue(context: RunContext) -> None:
    messages: list[str] = []
    context.reporter = messages.append
    _seed_queue(context, [{"id": "t1", "prompt": "p", "status": "completed"}])

    assert asyncio.run(_scheduler(context).next()) is None
    assert messages == ["No pending tasks in queue."]


def test_stop_prevents_new_tasks(context: RunContext) -> None:
    queue = _seed_queue(context, [{"id": "t1", "prompt": "write alpha"}])
    scheduler = _scheduler(context)

    scheduler.stop()
    report = asyncio.run(scheduler.loop())

    assert report.results == []
    assert queue.get("t1").status == "pending"


def test_watch_processes_pending_then_stops(context: RunContext) -> None:
    queue = _seed_queue(context, [{"id": "t1", "prompt": "write alpha"}])

    reports = asyncio.run(_scheduler(context).watch(0.01, max_cycles=2))

    assert len(reports) == 1
    assert reports[0].merge.merged == ["auto/t1"]
    assert queue.get("t1").status == "completed"


def test_task_to_workflow_uses_config(context: RunContext) -> None:
    context.config.scheduler.max_attempts = 4
    task = Task(
        id="t9",
        prompt="prompts/t9.md",
        agent="openai",
        context_files=["src/app.py"],
        variables={"route": "/x"},
    )

    workflow = _scheduler(context).task_to_workflow(task)

    step = workflow.steps[0]
    assert workflow.name == "t9"
    assert workflow.branch is None
    assert (step.id, step.prompt, step.agent) == ("t9", "prompts/t9.md", "openai")
    assert step.max_attempts == 4
    assert step.commit_message == "Auto: t9"
    assert step.context_files == ["src/app.py"]
    assert workflow.variables == {"route": "/x"}
