from __future__ import annotations

from typing import Any

import openai
from openai import AsyncOpenAI

from autoloop.adapters.base import (
    AdapterError,
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

SYSTEM_INSTRUCTIONS = (
    "You are a senior software engineer editing a repository. Return every file you "
    "change as a complete fenced code block whose opening fence is "
    "```language:relative/path."
)


def classify_sdk_error(exc: Exception) -> AdapterError:
    """Decide the error kind for an exception raised by the OpenAI SDK."""
    message = str(exc) or type(exc).__name__
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(message, adapter="openai")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return UnauthorizedError(message, adapter="openai")
    if isinstance(exc, openai.APITimeoutError):
        return AdapterTimeoutError(message, adapter="openai")
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(message, adapter="openai")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return NetworkError(message, adapter="openai")
        return MalformedResponseError(message, adapter="openai", retriable=False)
    # Raised by the client constructor when no API key is configured.
    return UnauthorizedError(message, adapter="openai")


class OpenAIAdapter(ModelAdapter):
    """Calls the OpenAI Responses API through the official async SDK."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        client: Any | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(model=model)
        self._client = client
        self.timeout_seconds = timeout_seconds

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = AsyncOpenAI(timeout=self.timeout_seconds, max_retries=0)
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict) and isinstance(payload.get("output_text"), str):
            return payload["output_text"]
        raise MalformedResponseError("Response carried no output_text", adapter="openai")

    @staticmethod
    def _usage(payload: Any) -> tuple[int, int]:
        usage = getattr(payload, "usage", None)
        if usage is None:
            return 0, 0
        return int(getattr(usage, "input_tokens", 0) or 0), int(
            getattr(usage, "output_tokens", 0) or 0
        )

    async def complete(self, request: AdapterRequest) -> Completion:
        model = request.model or self.model
        try:
            client = self._get_client()
            response = await client.responses.create(
                model=model,
                instructions=SYSTEM_INSTRUCTIONS,
                input=compose_prompt(request),
            )
        except openai.OpenAIError as exc:
            raise classify_sdk_error(exc) from exc
        tokens_in, tokens_out = self._usage(response)
        return Completion(
            text=self._extract_text(response),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            model=model,
        )
