from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from autoloop.adapters.base import (
    AdapterError,
    AdapterRequest,
    AdapterTimeoutError,
    Completion,
    ModelAdapter,
)

AdapterEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


class ResilientAdapter(ModelAdapter):
    """Wraps primary/fallback adapters with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary: ModelAdapter,
        fallback: ModelAdapter | None,
        retry_policy: RetryPolicy,
        event_hook: AdapterEventHook | None = None,
    ) -> None:
        super().__init__(model=primary.model)
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = primary.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(self, adapter: ModelAdapter, request: AdapterRequest) -> Completion:
        try:
            return await asyncio.wait_for(
                adapter.complete(request), timeout=self.retry_policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise AdapterTimeoutError(
                f"Model request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                adapter=adapter.name,
            ) from exc

    async def complete(self, request: AdapterRequest) -> Completion:
        chain: list[ModelAdapter] = [self.primary]
        if self.fallback is not None and self.fallback is not self.primary:
            chain.append(self.fallback)

        errors: list[str] = []
        last_error: AdapterError | None = None
        for adapter in chain:
            # Model overrides belong to the adapter they were written for.
            attempt_request = request if adapter is self.primary else AdapterRequest(
                prompt=request.prompt,
                context=request.context,
                output_path=request.output_path,
            )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "adapter_retry",
                            "adapter": adapter.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    completion = await self._attempt(adapter, attempt_request)
                except AdapterError as exc:
                    last_error = exc
                    errors.append(f"{adapter.name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "adapter_attempt_failed",
                            "adapter": adapter.name,
                            "attempt": attempt,
                            "kind": exc.kind,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if adapter is not self.primary:
                    self._emit(
                        {"event": "adapter_fallback_success", "adapter": adapter.name}
                    )
                return completion

        assert last_error is not None
        summary = "; ".join(errors[-6:])
        error = type(last_error)(
            f"All model attempts failed. {summary}",
            adapter=last_error.adapter,
            retriable=False,
        )
        raise error from last_error
