from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

ErrorKind = Literal[
    "rate_limited", "unauthorized", "network", "malformed", "timeout", "process", "unknown"
]
RETRIABLE_KINDS: frozenset[str] = frozenset({"rate_limited", "network", "timeout", "unknown"})


class AdapterError(RuntimeError):
    """Raised inside an adapter when a model call fails."""

    kind: ErrorKind = "unknown"

    def __init__(
        self,
        message: str,
        *,
        adapter: str | None = None,
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.adapter = adapter
        self.retriable = self.kind in RETRIABLE_KINDS if retriable is None else retriable


class RateLimitedError(AdapterError):
    """The provider throttled the request."""

    kind = "rate_limited"


class UnauthorizedError(AdapterError):
    """Credentials are missing or rejected."""

    kind = "unauthorized"


class NetworkError(AdapterError):
    """Connection to the provider failed."""

    kind = "network"


class MalformedResponseError(AdapterError):
    """The provider answered with something that is not usable output."""

    kind = "malformed"


class AdapterTimeoutError(AdapterError):
    """The model call exceeded its time limit."""

    kind = "timeout"


class AdapterProcessError(AdapterError):
    """A CLI-backed adapter could not start or crashed."""

    kind = "process"


@dataclass(slots=True)
class AdapterRequest:
    prompt: str
    context: str | None = None
    output_path: str | None = None
    model: str | None = None


@dataclass(slots=True)
class Completion:
    text: str
    tokens_in: int = 0
    tokens_out: int = 0
    model: str | None = None


@dataclass(slots=True)
class AdapterResponse:
    success: bool
    output: str = ""
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: int = 0
    adapter: str = ""
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class ModelAdapter(ABC):
    """Boundary to a language-model provider.

    ``execute`` never raises: every failure is reported on the response with its
    error kind already decided.
    """

    name: str = "adapter"

    def __init__(self, model: str | None = None) -> None:
        self.model = model

    @abstractmethod
    async def complete(self, request: AdapterRequest) -> Completion:
        """Perform the model call. May raise ``AdapterError``."""

    async def execute(self, request: AdapterRequest) -> AdapterResponse:
        started = time.monotonic()
        try:
            completion = await self.complete(request)
        except AdapterError as exc:
            logger.warning("%s adapter failed (%s): %s", self.name, exc.kind, exc)
            return self._failure(str(exc), exc.kind, started, request)
        except Exception as exc:
            logger.exception("%s adapter raised unexpectedly", self.name)
            return self._failure(f"{type(exc).__name__}: {exc}", "unknown", started, request)

        duration_ms = int((time.monotonic() - started) * 1000)
        if not completion.text.strip():
            return AdapterResponse(
                success=False,
                error="Model returned no output",
                error_kind="malformed",
                duration_ms=duration_ms,
                adapter=self.name,
                model=completion.model or request.model or self.model,
            )
        return AdapterResponse(
            success=True,
            output=completion.text,
            duration_ms=duration_ms,
            adapter=self.name,
            model=completion.model or request.model or self.model,
            usage={"tokens_in": completion.tokens_in, "tokens_out": completion.tokens_out},
        )

    def _failure(
        self, message: str, kind: ErrorKind, started: float, request: AdapterRequest
    ) -> AdapterResponse:
        return AdapterResponse(
            success=False,
            error=message,
            error_kind=kind,
            duration_ms=int((time.monotonic() - started) * 1000),
            adapter=self.name,
            model=request.model or self.model,
        )


def compose_prompt(request: AdapterRequest) -> str:
    if not request.context:
        return request.prompt
    return f"{request.prompt}\n\n## Context\n\n{request.context}"
