from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path

from autoloop.config import VerifyConfig

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?]|[$]\()")
MAX_OUTPUT_CHARS = 3000
TRUNCATION_MARKER = "\n... (truncated)"
SUMMARY_HEADER = (
    "# Verification Errors\n\nThe following commands failed. Fix ALL errors.\n\n"
)


@dataclass(slots=True)
class VerifyCommand:
    label: str
    command: str
    args: list[str] = field(default_factory=list)
    optional: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> VerifyCommand:
        return cls(
            label=str(data.get("label") or data["command"]),
            command=str(data["command"]),
            args=[str(arg) for arg in data.get("args", [])],
            optional=bool(data.get("optional", False)),
        )

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "command": self.command,
            "args": list(self.args),
            "optional": self.optional,
        }

    def display(self) -> str:
        return " ".join([self.command, *(shlex.quote(arg) for arg in self.args)])


@dataclass(slots=True)
class VerificationResult:
    label: str
    passed: bool
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    optional: bool = False


@dataclass(slots=True)
class VerificationSummary:
    all_passed: bool
    results: list[VerificationResult]
    error_summary: str

    @property
    def failed(self) -> list[VerificationResult]:
        return [result for result in self.results if not result.passed]


def default_verify_commands(config: VerifyConfig) -> list[VerifyCommand]:
    return [VerifyCommand("Type Check", config.type_check_command)]


def full_verify_commands(config: VerifyConfig) -> list[VerifyCommand]:
    return [
        VerifyCommand("Build", config.build_command),
        VerifyCommand("Tests", config.test_command, optional=True),
    ]


def security_verify_commands(config: VerifyConfig) -> list[VerifyCommand]:
    return [
        VerifyCommand("Build", config.build_command),
        VerifyCommand("Security Scan", config.security_command),
    ]


def truncate_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def build_error_summary(results: list[VerificationResult]) -> str:
    blocks: list[str] = []
    for result in results:
        if result.passed:
            continue
        exit_text = "null" if result.exit_code is None else str(result.exit_code)
        output = "\n".join(
            part
            for part in (truncate_output(result.stderr), truncate_output(result.stdout))
            if part
        )
        blocks.append(f"## {result.label} (exit {exit_text})\n```\n{output}\n```")
    if not blocks:
        return ""
    return SUMMARY_HEADER + "\n\n".join(blocks)


class VerificationRunner:
    """Runs check commands in order, stopping at the first required failure."""

    def __init__(self, timeout_seconds: float = 60.0) -> None:
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _environment() -> dict[str, str]:
        env = os.environ.copy()
        env["FORCE_COLOR"] = "0"
        env["NO_COLOR"] = "1"
        return env

    async def _spawn(self, command: VerifyCommand, cwd: Path) -> asyncio.subprocess.Process:
        command_text = command.command.strip()
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        if not used_shell:
            try:
                argv = [*shlex.split(command_text), *command.args]
            except ValueError:
                used_shell = True
        if used_shell:
            return await asyncio.create_subprocess_shell(
                command.display(),
                cwd=cwd,
                env=self._environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=self._environment(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def run_command(self, command: VerifyCommand, cwd: Path) -> VerificationResult:
        started = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if not command.command.strip():
            return VerificationResult(
                command.label, False, None, "", "Command is empty.", _elapsed(), command.optional
            )
        try:
            process = await self._spawn(command, cwd)
        except OSError as exc:
            return VerificationResult(
                command.label, False, None, "", str(exc), _elapsed(), command.optional
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return VerificationResult(
                command.label,
                False,
                None,
                "",
                f"Command timed out after {self.timeout_seconds:.0f}s",
                _elapsed(),
                command.optional,
            )

        exit_code = process.returncode
        return VerificationResult(
            label=command.label,
            passed=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            duration_ms=_elapsed(),
            optional=command.optional,
        )

    async def run(self, commands: list[VerifyCommand], cwd: Path) -> VerificationSummary:
        results: list[VerificationResult] = []
        all_passed = True
        for command in commands:
            result = await self.run_command(command, cwd)
            results.append(result)
            status = "passed" if result.passed else "failed"
            logger.info("Verify %s %s in %dms", command.label, status, result.duration_ms)
            if result.passed:
                continue
            if command.optional:
                logger.warning("Optional check %s failed; continuing", command.label)
                continue
            all_passed = False
            break
        return VerificationSummary(
            all_passed=all_passed,
            results=results,
            error_summary=build_error_summary(results),
        )
