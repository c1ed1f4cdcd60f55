from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field

from autoloop.context import RunContext
from autoloop.gitops import GitOps
from autoloop.merge import MergeCoordinator, MergeReport
from autoloop.models import Step, Workflow
from autoloop.rollback import PostMergeMonitor, RollbackManager
from autoloop.runner import AutonomousRunner
from autoloop.task_queue import QueueManager, Task
from autoloop.verification import (
    VerificationRunner,
    VerificationSummary,
    full_verify_commands,
)


@dataclass(slots=True)
class TaskRunResult:
    task_id: str
    success: bool
    duration_ms: int
    error: str | None = None
    branch: str | None = None


@dataclass(slots=True)
class BatchReport:
    results: list[TaskRunResult] = field(default_factory=list)
    healthy: bool | None = None
    health: VerificationSummary | None = None
    merge: MergeReport | None = None
    pushed: bool = False

    @property
    def passed(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.healthy is not False


class Scheduler:
    """Drives the task queue through the runner, one task and one branch at a time."""

    def __init__(
        self,
        context: RunContext,
        runner: AutonomousRunner,
        *,
        queue: QueueManager | None = None,
        verifier: VerificationRunner | None = None,
        merger: MergeCoordinator | None = None,
    ) -> None:
        self.context = context
        self.config = context.config
        self.runner = runner
        self.queue = queue or QueueManager(context.path(self.config.scheduler.queue_file))
        self.git = GitOps(context.repo_root)
        self.verifier = verifier or VerificationRunner(self.config.verify.timeout_seconds)
        self.health_commands = full_verify_commands(self.config.verify)
        self.merger = merger or MergeCoordinator(
            self.git,
            RollbackManager(self.git, context.path(self.config.rollback.history_file)),
            PostMergeMonitor(
                self.verifier,
                self.health_commands,
                memory_growth_threshold=self.config.rollback.memory_growth_threshold,
            ),
            self.verifier,
            self.health_commands,
            trunk=self.config.project.trunk_branch,
        )
        self._stop = asyncio.Event()

    @property
    def trunk(self) -> str:
        return self.config.project.trunk_branch

    @property
    def queue_path(self) -> str:
        return self.queue.queue_path.resolve().relative_to(self.context.repo_root).as_posix()

    def stop(self) -> None:
        """Stop taking new tasks; an in-flight task runs to completion."""
        self._stop.set()

    def task_to_workflow(self, task: Task) -> Workflow:
        step = Step(
            id=task.id,
            prompt=task.prompt,
            agent=task.agent,
            context_files=list(task.context_files),
            max_attempts=self.config.scheduler.max_attempts,
            commit_message=f"Auto: {task.id}",
            variables=dict(task.variables),
        )
        return Workflow(
            name=task.id,
            description=f"Queued task: {task.id}",
            steps=[step],
            variables=dict(task.variables),
        )

    def _commit_queue(self, message: str) -> None:
        result = self.git.commit_paths([self.queue_path], message)
        if not result.success:
            self.context.logger.warning("Queue commit skipped: %s", result.error)

    def _switch_to_trunk(self) -> None:
        if self.git.current_branch().output != self.trunk:
            self.git.checkout(self.trunk).raise_for_error(f"Checkout {self.trunk}")

    async def run_task(self, task: Task) -> TaskRunResult:
        started = time.monotonic()
        branch = f"{self.config.scheduler.branch_prefix}{task.id}"
        self.context.report(f"Task: {task.id}")
        self.context.audit.record("task_started", task_id=task.id, branch=branch)

        def _finish(success: bool, error: str | None = None) -> TaskRunResult:
            result = TaskRunResult(
                task_id=task.id,
                success=success,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=error,
                branch=branch if success else None,
            )
            self.context.audit.record(
                "task_finished",
                task_id=task.id,
                status="completed" if success else "failed",
                duration_ms=result.duration_ms,
                branch=result.branch,
                error=error,
            )
            return result

        self.queue.mark_running(task.id)
        try:
            self._switch_to_trunk()
            self._commit_queue(f"Queue: start {task.id}")
            self.git.run(["checkout", "-B", branch]).raise_for_error(f"Branch {branch}")
            execution = await self.runner.run(self.task_to_workflow(task))
        except Exception as exc:
            self.context.logger.exception("Task %s raised", task.id)
            error = f"{type(exc).__name__}: {exc}"
            self.queue.mark_failed(task.id, error)
            return _finish(False, error)

        if execution.status == "completed":
            self.queue.mark_completed(task.id, branch)
            self.context.report(f"Task {task.id} completed on {branch}")
            return _finish(True)

        failed = execution.failed_step
        error = failed.error if failed and failed.error else "Unknown error"
        self.queue.mark_failed(task.id, error)
        self.context.report(f"Task {task.id} failed; continuing with the next task")
        return _finish(False, error)

    async def next(self) -> TaskRunResult | None:
        task = self.queue.next()
        if task is None:
            self.context.report("No pending tasks in queue.")
            return None
        return await self.run_task(task)

    def _stash(self) -> bool:
        result = self.git.stash()
        return result.success and "No local changes" not in result.output

    async def _finish_batch(self, report: BatchReport) -> BatchReport:
        self._switch_to_trunk()
        self.context.report("Post-batch health check")
        report.health = await self.verifier.run(self.health_commands, self.context.repo_root)
        report.healthy = report.health.all_passed
        branches = [result.branch for result in report.results if result.success and result.branch]

        if branches and report.healthy:
            stashed = self._stash()
            try:
                report.merge = await self.merger.merge_branches(branches)
            finally:
                if stashed:
                    popped = self.git.stash_pop()
                    if not popped.success:
                        self.context.logger.error("Could not restore queue edits: %s", popped.error)
            for branch in report.merge.unmerged:
                self.context.report(f"Branch {branch} left unmerged")
        elif branches:
            self.context.report("Health check failed; task branches left unmerged")

        self._commit_queue(f"Batch complete: {report.passed} passed, {report.failed} failed")
        if report.merge and report.merge.merged and self.config.project.push_after_merge:
            pushed = self.git.push(self.config.project.remote, self.trunk)
            report.pushed = pushed.success
            if not pushed.success:
                self.context.logger.warning("Push failed: %s", (pushed.error or "")[:200])
        self.context.audit.record(
            "batch_finished",
            passed=report.passed,
            failed=report.failed,
            healthy=report.healthy,
            merged=report.merge.merged if report.merge else [],
            pushed=report.pushed,
        )
        return report

    async def loop(self) -> BatchReport:
        """Run every pending task, then health-check the trunk and merge on success."""
        report = BatchReport()
        self.context.report(f"Pending tasks: {self.queue.summary()['pending']}")
        while not self._stop.is_set():
            task = self.queue.next()
            if task is None:
                break
            report.results.append(await self.run_task(task))
        if not report.results:
            return report

        await self._finish_batch(report)
        self.context.report(
            f"Batch complete: {report.passed} passed, {report.failed} failed, "
            f"health {'clean' if report.healthy else 'issues detected'}"
        )
        self.context.report(self.queue.render())
        return report

    async def watch(
        self, interval: float | None = None, *, max_cycles: int | None = None
    ) -> list[BatchReport]:
        """Run pending tasks, then poll for new ones until interrupted."""
        interval = self.config.scheduler.poll_interval_seconds if interval is None else interval
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                continue

        reports: list[BatchReport] = []
        cycles = 0
        self.context.report(f"Watching queue every {interval:.0f}s; Ctrl+C to stop")
        try:
            while not self._stop.is_set():
                if self.queue.next() is not None:
                    reports.append(await self.loop())
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except TimeoutError:
                    continue
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
        self.context.report("Watch stopped.")
        return reports
