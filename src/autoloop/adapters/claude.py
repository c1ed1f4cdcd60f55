from __future__ import annotations

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any

from autoloop.adapters.base import (
    AdapterError,
    AdapterProcessError,
    AdapterRequest,
    AdapterTimeoutError,
    Completion,
    MalformedResponseError,
    ModelAdapter,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
    compose_prompt,
)

RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|\b429\b|overloaded|usage limit", re.IGNORECASE)
AUTH_PATTERN = re.compile(
    r"unauthori[sz]ed|\b401\b|invalid api key|authentication|not logged in|/login",
    re.IGNORECASE,
)
NETWORK_PATTERN = re.compile(
    r"ENOTFOUND|ECONNREFUSED|ECONNRESET|ETIMEDOUT|network|connection", re.IGNORECASE
)


def classify_failure(message: str, adapter: str = "claude") -> AdapterError:
    """Map provider error text onto a tagged adapter error."""
    if RATE_LIMIT_PATTERN.search(message):
        return RateLimitedError(message, adapter=adapter)
    if AUTH_PATTERN.search(message):
        return UnauthorizedError(message, adapter=adapter)
    if NETWORK_PATTERN.search(message):
        return NetworkError(message, adapter=adapter)
    return AdapterProcessError(message, adapter=adapter, retriable=True)


class ClaudeCodeAdapter(ModelAdapter):
    """Runs the ``claude`` CLI in print mode inside the target repository."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(model=model)
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    def parse_output(self, raw: str, model: str | None) -> Completion:
        """Decode stream-json output, one event per line.

        The closing ``result`` event carries the full text and usage; without one,
        assistant content is concatenated. Lines that are not JSON pass through.
        """
        if not raw.strip():
            raise MalformedResponseError("Claude CLI produced no output", adapter=self.name)
        chunks: list[str] = []
        final: dict[str, Any] | None = None
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                raise MalformedResponseError("Unexpected Claude CLI event", adapter=self.name)
            if event.get("type") == "result" or "result" in event:
                final = event
                continue
            if event.get("type") in (None, "assistant"):
                content = self._extract_content(event)
                if content:
                    chunks.append(content)

        if final is None:
            return Completion(text="\n".join(chunks).strip(), model=model)
        text = final.get("result") if isinstance(final.get("result"), str) else ""
        text = text or "\n".join(chunks).strip()
        if final.get("is_error"):
            raise classify_failure(text or "Claude CLI reported an error", adapter=self.name)
        usage = final.get("usage") if isinstance(final.get("usage"), dict) else {}
        return Completion(
            text=text,
            tokens_in=int(usage.get("input_tokens") or 0),
            tokens_out=int(usage.get("output_tokens") or 0),
            model=model,
        )

    async def complete(self, request: AdapterRequest) -> Completion:
        model = request.model or self.model
        command = self.build_command(compose_prompt(request), model)
        env = os.environ.copy()
        env.setdefault("NO_COLOR", "1")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AdapterProcessError(
                f"Claude binary not found: {self.binary}", adapter=self.name, retriable=False
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise AdapterTimeoutError(
                f"Claude CLI timed out after {self.timeout_seconds:.0f}s", adapter=self.name
            ) from exc

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise classify_failure(
                f"Claude CLI exited with code {process.returncode}: "
                f"{stderr_text or stdout_text.strip()}",
                adapter=self.name,
            )
        return self.parse_output(stdout_text, model)
