from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from autoloop.adapters import AdapterRequest, ModelAdapter
from autoloop.context import RunContext
from autoloop.file_writer import (
    FileChange,
    ProtectedFiles,
    build_file_context,
    parse_code_blocks,
    write_files,
)
from autoloop.gitops import GitOps
from autoloop.models import ExecutionResult, Step, StepResult, Workflow, resolve_step_order
from autoloop.prompts import PromptResolver, substitute
from autoloop.security import requires_security_scan
from autoloop.verification import (
    VerificationRunner,
    VerificationSummary,
    VerifyCommand,
    default_verify_commands,
    security_verify_commands,
    truncate_output,
)

FORMAT_HINT = (
    "No code blocks with file paths found in output. "
    "Wrap code in ```language:path/to/file.py blocks."
)
RETRY_HEADER = (
    "\n\n## Previous Attempt Failed\n\n"
    "Your previous code had errors. Fix ALL of them:\n\n"
)
FEEDBACK_LIMIT = 8000


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Attempt:
    index: int
    prior_error: str | None = None


@dataclass(slots=True)
class Success:
    changes: list[FileChange]
    written: list[str]
    blocked: list[str]


@dataclass(slots=True)
class AdapterFailed:
    error: str
    kind: str | None = None


@dataclass(slots=True)
class ParseFailed:
    error: str
    blocked: list[str] = field(default_factory=list)


@dataclass(slots=True)
class VerifyFailed:
    error: str
    written: list[str]
    blocked: list[str]
    summary: VerificationSummary


AttemptOutcome = Success | AdapterFailed | ParseFailed | VerifyFailed


class AutonomousRunner:
    """Prompt, model call, edit, verify, then commit or revert and retry."""

    def __init__(
        self,
        context: RunContext,
        adapters: dict[str, ModelAdapter],
        *,
        default_agent: str | None = None,
        verifier: VerificationRunner | None = None,
        prompts: PromptResolver | None = None,
        protected: ProtectedFiles | None = None,
    ) -> None:
        self.context = context
        self.adapters = adapters
        self.default_agent = default_agent or context.config.backend.primary
        self.verifier = verifier or VerificationRunner(context.config.verify.timeout_seconds)
        self.prompts = prompts or PromptResolver(
            context.path(context.config.scheduler.prompts_dir), context.repo_root
        )
        self.protected = protected or ProtectedFiles.from_config(
            context.config.guardrails, queue_file=context.config.scheduler.queue_file
        )

    def target_dir(self, workflow: Workflow) -> Path:
        return (self.context.repo_root / workflow.target_dir).resolve()

    def _verify_commands(self, step: Step, workflow: Workflow) -> list[VerifyCommand]:
        if step.verify is not None:
            return step.verify
        if workflow.verify is not None:
            return workflow.verify
        return default_verify_commands(self.context.config.verify)

    def _guarded_commands(
        self, commands: list[VerifyCommand], written: list[str]
    ) -> list[VerifyCommand]:
        """Add the security verification set when a security-critical file was written."""
        critical = self.context.config.guardrails.security_critical_files
        if not any(requires_security_scan(path, critical) for path in written):
            return commands
        present = {command.display() for command in commands}
        extra = [
            command
            for command in security_verify_commands(self.context.config.verify)
            if command.display() not in present
        ]
        return [*commands, *extra]

    def _base_prompt(
        self, step: Step, workflow: Workflow, step_outputs: dict[str, str], target: Path
    ) -> str:
        variables = {**workflow.variables, **step.variables}
        prompt = self.prompts.resolve(step.prompt, variables, step_outputs)
        if step.context_files:
            file_context = build_file_context(step.context_files, target)
            if file_context:
                prompt += f"\n\n## Current File Contents\n\n{file_context}"
        return prompt

    @staticmethod
    def compose_attempt_prompt(base_prompt: str, attempt: Attempt) -> str:
        if attempt.index > 1 and attempt.prior_error:
            return base_prompt + RETRY_HEADER + truncate_output(
                attempt.prior_error, FEEDBACK_LIMIT
            )
        return base_prompt

    async def run_attempt(
        self,
        attempt: Attempt,
        *,
        base_prompt: str,
        adapter: ModelAdapter,
        commands: list[VerifyCommand],
        target: Path,
        step_id: str,
    ) -> AttemptOutcome:
        response = await adapter.execute(
            AdapterRequest(prompt=self.compose_attempt_prompt(base_prompt, attempt))
        )
        if response.usage and response.model:
            self.context.costs.track(
                step_id,
                response.model,
                response.usage.get("tokens_in", 0),
                response.usage.get("tokens_out", 0),
            )
        if not response.success or not response.output:
            return AdapterFailed(response.error or "Model returned no output", response.error_kind)

        changes = parse_code_blocks(response.output)
        if not changes:
            return ParseFailed(FORMAT_HINT)

        self.context.report(f"  Found {len(changes)} file(s) to write")
        written = write_files(changes, target, self.protected)
        for error in written.errors:
            self.context.logger.warning("Write error: %s", error)
        if not written.written:
            problems = [*(f"blocked: {path}" for path in written.blocked), *written.errors]
            return ParseFailed(
                "None of the files could be written. Edit only files inside the project "
                "that are not protected.\n" + "\n".join(problems),
                blocked=written.blocked,
            )

        summary = await self.verifier.run(
            self._guarded_commands(commands, written.written_paths), target
        )
        if summary.all_passed:
            return Success(changes, written.written_paths, written.blocked)
        return VerifyFailed(summary.error_summary, written.written_paths, written.blocked, summary)

    async def execute_step(
        self, step: Step, workflow: Workflow, step_outputs: dict[str, str] | None = None
    ) -> StepResult:
        started = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        agent_name = step.agent or workflow.agent or self.default_agent
        adapter = self.adapters.get(agent_name)
        if adapter is None:
            return StepResult(
                step_id=step.id,
                status="failed",
                attempts=0,
                error=f"No adapter for agent: {agent_name}",
                duration_ms=_elapsed(),
            )

        target = self.target_dir(workflow)
        git = GitOps(target)
        commands = self._verify_commands(step, workflow)
        base_prompt = self._base_prompt(step, workflow, step_outputs or {}, target)

        last_error: str | None = None
        files_written: list[str] = []
        blocked: list[str] = []
        for index in range(1, step.max_attempts + 1):
            attempt = Attempt(index=index, prior_error=last_error)
            self.context.report(f"  Attempt {index}/{step.max_attempts} (agent: {agent_name})")
            outcome = await self.run_attempt(
                attempt,
                base_prompt=base_prompt,
                adapter=adapter,
                commands=commands,
                target=target,
                step_id=step.id,
            )
            self.context.audit.record(
                "attempt",
                step_id=step.id,
                attempt=index,
                outcome=type(outcome).__name__,
            )

            if isinstance(outcome, Success):
                return self._commit(step, workflow, git, outcome, index, _elapsed)

            last_error = outcome.error
            if isinstance(outcome, AdapterFailed):
                self.context.report(f"  Model call failed: {outcome.error}")
            elif isinstance(outcome, ParseFailed):
                blocked = outcome.blocked or blocked
                self.context.report("  No writable code blocks in model output")
            elif isinstance(outcome, VerifyFailed):
                files_written = outcome.written
                blocked = outcome.blocked
                self.context.report("  Verification failed; retrying with error feedback")
                if git.has_changes():
                    reverted = git.revert_changes()
                    if not reverted.success:
                        self.context.logger.error("Revert failed: %s", reverted.error)
                    else:
                        self.context.report("  Reverted changes from failed attempt")

        return StepResult(
            step_id=step.id,
            status="failed",
            attempts=step.max_attempts,
            files_written=files_written,
            error=last_error or "Max attempts reached",
            duration_ms=_elapsed(),
            blocked_files=blocked,
        )

    def _commit(
        self,
        step: Step,
        workflow: Workflow,
        git: GitOps,
        outcome: Success,
        attempts: int,
        elapsed: Callable[[], int],
    ) -> StepResult:
        if step.commit_message:
            variables = {**workflow.variables, **step.variables, "step_id": step.id}
            message = substitute(step.commit_message, variables)
        else:
            message = f"Auto: {step.id} - {workflow.name}"

        if not git.has_changes():
            self.context.report(f"  {step.id}: edits match the tree, nothing to commit")
            return StepResult(
                step_id=step.id,
                status="completed",
                attempts=attempts,
                files_written=outcome.written,
                verification_passed=True,
                committed=False,
                commit_message=message,
                duration_ms=elapsed(),
                blocked_files=outcome.blocked,
            )

        committed = git.commit_changes(message)
        if not committed.success:
            self.context.logger.error("Commit failed for %s: %s", step.id, committed.error)
            git.revert_changes()
            return StepResult(
                step_id=step.id,
                status="failed",
                attempts=attempts,
                files_written=outcome.written,
                verification_passed=True,
                committed=False,
                commit_message=message,
                error=f"Commit failed: {committed.error}",
                duration_ms=elapsed(),
                blocked_files=outcome.blocked,
            )
        self.context.audit.record("commit", step_id=step.id, message=message)
        return StepResult(
            step_id=step.id,
            status="completed",
            attempts=attempts,
            files_written=outcome.written,
            verification_passed=True,
            committed=True,
            commit_message=message,
            duration_ms=elapsed(),
            blocked_files=outcome.blocked,
        )

    async def run(
        self, workflow: Workflow, overrides: dict[str, str] | None = None
    ) -> ExecutionResult:
        """Run every step in dependency order, stopping at the first failure."""
        if overrides:
            workflow.variables = {**workflow.variables, **overrides}
        ordered = resolve_step_order(workflow.steps)
        execution_id = uuid.uuid4().hex
        started_at = _utcnow_iso()
        target = self.target_dir(workflow)

        self.context.report(f"Workflow: {workflow.name} ({execution_id[:8]})")
        self.context.report(f"Steps: {' -> '.join(step.id for step in ordered)}")

        branch: str | None = None
        if workflow.branch:
            git = GitOps(target)
            branch_name = substitute(workflow.branch, workflow.variables)
            created = git.create_branch(branch_name)
            if created.success:
                branch = branch_name
                self.context.report(f"Branch: {branch}")
            else:
                current = git.current_branch().output or "unknown"
                self.context.logger.warning(
                    "Branch creation failed (%s); continuing on %s", created.error, current
                )

        results: list[StepResult] = []
        step_outputs: dict[str, str] = {}
        for step in ordered:
            self.context.report(f"Step: {step.id}")
            result = await self.execute_step(step, workflow, step_outputs)
            results.append(result)
            if result.status != "completed":
                self.context.report(
                    f"Step {step.id} failed after {result.attempts} attempt(s): {result.error}"
                )
                break
            self.context.report(
                f"Step {step.id} completed in {result.attempts} attempt(s): "
                f"{', '.join(result.files_written)}"
            )
            step_outputs[step.id] = "\n".join(f"- {path}" for path in result.files_written)

        all_passed = len(results) == len(ordered) and all(
            result.status == "completed" for result in results
        )
        return ExecutionResult(
            execution_id=execution_id,
            workflow_name=workflow.name,
            status="completed" if all_passed else "failed",
            steps=results,
            started_at=started_at,
            completed_at=_utcnow_iso(),
            branch=branch,
        )
