from __future__ import annotations

import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from autoloop.context import RunContext
from autoloop.errors import ConfigError
from autoloop.gitops import GitOps
from autoloop.models import ExecutionResult, StepResult, Workflow, resolve_step_order
from autoloop.prompts import substitute
from autoloop.runner import AutonomousRunner
from autoloop.state import StateManager


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def load_workflow(path: Path) -> Workflow:
    if not path.is_file():
        raise ConfigError(f"Workflow file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Workflow file is not valid YAML: {path}") from exc
    return Workflow.from_dict(payload)


class WorkflowRunner:
    """Runs authored workflows with per-step retries and persisted execution state."""

    def __init__(
        self,
        context: RunContext,
        runner: AutonomousRunner,
        state: StateManager | None = None,
    ) -> None:
        self.context = context
        self.runner = runner
        self.state = state or StateManager(context.path(context.config.logging.state_dir))

    @staticmethod
    def _new_execution(workflow: Workflow, source: Path | None) -> dict[str, Any]:
        return {
            "execution_id": uuid.uuid4().hex,
            "workflow_name": workflow.name,
            "workflow_path": str(source.resolve()) if source else None,
            "status": "running",
            "steps": {
                step.id: {"status": "pending", "attempts": 0, "retries": 0}
                for step in workflow.steps
            },
            "variables": dict(workflow.variables),
            "started_at": _utcnow_iso(),
            "completed_at": None,
            "current_step_id": None,
            "branch": None,
        }

    def _prepare_branch(self, workflow: Workflow, execution: dict[str, Any]) -> None:
        if not workflow.branch:
            return
        git = GitOps(self.runner.target_dir(workflow))
        branch_name = substitute(workflow.branch, workflow.variables)
        if execution.get("branch") == branch_name and git.branch_exists(branch_name):
            result = git.checkout(branch_name)
        else:
            result = git.create_branch(branch_name)
        if result.success:
            execution["branch"] = branch_name
        else:
            current = git.current_branch().output or "unknown"
            self.context.logger.warning(
                "Branch %s unavailable (%s); continuing on %s", branch_name, result.error, current
            )

    async def _execute(self, workflow: Workflow, execution: dict[str, Any]) -> ExecutionResult:
        ordered = resolve_step_order(workflow.steps)
        steps_state: dict[str, dict[str, Any]] = execution["steps"]
        step_outputs: dict[str, str] = {}
        for step in ordered:
            step_state = steps_state.setdefault(
                step.id, {"status": "pending", "attempts": 0, "retries": 0}
            )
            if step_state["status"] == "completed":
                written = step_state.get("result", {}).get("files_written", [])
                step_outputs[step.id] = "\n".join(f"- {path}" for path in written)
                continue

            execution["current_step_id"] = step.id
            step_state["status"] = "running"
            step_state["started_at"] = _utcnow_iso()
            self.state.save(execution)
            self.context.report(f"Step: {step.id}")

            result: StepResult | None = None
            for retry in range(step.retries + 1):
                if retry:
                    self.context.report(f"  Retrying step {step.id} ({retry}/{step.retries})")
                result = await self.runner.execute_step(step, workflow, step_outputs)
                step_state["retries"] = retry
                step_state["attempts"] = int(step_state.get("attempts", 0)) + result.attempts
                if result.status == "completed":
                    break

            assert result is not None
            step_state["status"] = result.status
            step_state["error"] = result.error
            step_state["completed_at"] = _utcnow_iso()
            step_state["result"] = result.to_dict()
            self.state.save(execution)
            if result.status != "completed":
                break
            step_outputs[step.id] = "\n".join(f"- {path}" for path in result.files_written)

        statuses = [steps_state[step.id]["status"] for step in ordered]
        execution["status"] = "completed" if all(s == "completed" for s in statuses) else "failed"
        execution["completed_at"] = _utcnow_iso()
        execution["current_step_id"] = None
        self.state.save(execution)
        self.context.audit.record(
            "workflow_finished",
            execution_id=execution["execution_id"],
            workflow=workflow.name,
            status=execution["status"],
        )
        return self.to_result(execution)

    @staticmethod
    def to_result(execution: dict[str, Any]) -> ExecutionResult:
        results = [
            StepResult.from_dict(step_state["result"])
            for step_state in execution["steps"].values()
            if isinstance(step_state.get("result"), dict)
        ]
        return ExecutionResult(
            execution_id=execution["execution_id"],
            workflow_name=execution["workflow_name"],
            status="completed" if execution["status"] == "completed" else "failed",
            steps=results,
            started_at=execution["started_at"],
            completed_at=execution.get("completed_at") or "",
            branch=execution.get("branch"),
        )

    async def run(
        self,
        workflow: Workflow,
        variables: dict[str, str] | None = None,
        *,
        source: Path | None = None,
    ) -> ExecutionResult:
        if variables:
            workflow.variables = {**workflow.variables, **variables}
        resolve_step_order(workflow.steps)
        execution = self._new_execution(workflow, source)
        self.context.report(f"Workflow: {workflow.name} ({execution['execution_id'][:8]})")
        self._prepare_branch(workflow, execution)
        self.state.save(execution)
        return await self._execute(workflow, execution)

    async def resume(self, execution_id: str) -> ExecutionResult:
        """Continue a stopped execution; failed steps go back to pending."""
        execution = self.state.load(execution_id)
        if execution is None:
            raise ConfigError(f"Execution not found: {execution_id}")
        if execution.get("status") == "completed":
            return self.to_result(execution)
        source = execution.get("workflow_path")
        if not source:
            raise ConfigError(f"Execution {execution_id} has no workflow file to resume from")
        workflow = load_workflow(Path(source))
        workflow.variables = {**workflow.variables, **execution.get("variables", {})}
        for step_state in execution["steps"].values():
            if step_state.get("status") in {"failed", "running"}:
                step_state["status"] = "pending"
                step_state.pop("error", None)
        execution["status"] = "running"
        execution["completed_at"] = None
        self._prepare_branch(workflow, execution)
        self.state.save(execution)
        return await self._execute(workflow, execution)

    def status(self, execution_id: str) -> dict[str, Any] | None:
        return self.state.load(execution_id)

    def list(self) -> list[dict[str, Any]]:
        return self.state.list()
