from __future__ import annotations

from pathlib import Path

from autoloop.adapters.base import (
    AdapterError,
    AdapterProcessError,
    AdapterRequest,
    AdapterResponse,
    AdapterTimeoutError,
    Completion,
    MalformedResponseError,
    ModelAdapter,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
)
from autoloop.adapters.claude import ClaudeCodeAdapter
from autoloop.adapters.openai_sdk import OpenAIAdapter
from autoloop.adapters.resilient import AdapterEventHook, ResilientAdapter, RetryPolicy
from autoloop.config import ADAPTER_NAMES, BackendConfig


def _build_single_adapter(name: str, config: BackendConfig, repo_root: Path) -> ModelAdapter:
    if name == "openai":
        return OpenAIAdapter(model=config.openai_model, timeout_seconds=config.timeout_seconds)
    return ClaudeCodeAdapter(
        binary=config.claude_binary,
        working_directory=repo_root,
        model=config.claude_model,
        timeout_seconds=config.timeout_seconds,
    )


def build_adapters(
    config: BackendConfig,
    repo_root: Path,
    event_hook: AdapterEventHook | None = None,
) -> dict[str, ModelAdapter]:
    """Agent-name registry; each entry fails over to the configured fallback."""
    singles = {name: _build_single_adapter(name, config, repo_root) for name in ADAPTER_NAMES}
    policy = RetryPolicy(
        max_retries=max(0, int(config.max_retries)),
        backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.timeout_seconds)),
    )
    registry: dict[str, ModelAdapter] = {}
    for name, adapter in singles.items():
        fallback = singles.get(config.fallback) if config.fallback != name else None
        registry[name] = ResilientAdapter(adapter, fallback, policy, event_hook=event_hook)
    return registry


__all__ = [
    "AdapterError",
    "AdapterProcessError",
    "AdapterRequest",
    "AdapterResponse",
    "AdapterTimeoutError",
    "ClaudeCodeAdapter",
    "Completion",
    "MalformedResponseError",
    "ModelAdapter",
    "NetworkError",
    "OpenAIAdapter",
    "RateLimitedError",
    "ResilientAdapter",
    "RetryPolicy",
    "UnauthorizedError",
    "build_adapters",
]
