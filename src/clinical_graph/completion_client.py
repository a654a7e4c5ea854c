"""HTTP client for the text-completion service.

This module provides the CompletionClient class, a thin gateway over an
OpenAI-compatible completion API (Cerebras by default). Both the question
answering path and the relationship extractor go through it.

Two-tier call shape:
    1. POST {base_url}/chat/completions with a system + user message.
       The text lives at ``choices[0].message.content``.
    2. If that fails (transport error, non-2xx status, or no usable text),
       POST {base_url}/responses with the prompt as ``input``.
       The text lives at ``output_text`` or ``output[0].content[0].text``.

    If the second call fails too, a single CompletionAPIError reports both
    status codes. There are no retries beyond this fallback.

Usage:
    client = CompletionClient()
    completion = await client.complete("Summarize hypertension management")
    print(completion.content)
    await client.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from clinical_graph.config import (
    CEREBRAS_API_KEY,
    CEREBRAS_BASE_URL,
    CEREBRAS_MODEL,
    COMPLETION_TIMEOUT,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class CompletionError(Exception):
    """Base class for completion gateway failures."""


class CompletionConfigError(CompletionError):
    """Raised before any request when the gateway is not configured."""


class CompletionAPIError(CompletionError):
    """Raised when both completion tiers fail.

    Status codes are 0 when the request never got a response
    (connection refused, timeout, ...).
    """

    def __init__(self, status_code: int, fallback_status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.fallback_status_code = fallback_status_code
        self.detail = detail
        super().__init__(f"Completion error {status_code}/{fallback_status_code}: {detail}")


@dataclass(frozen=True)
class Completion:
    """Text returned by the completion service, plus the model that produced it."""

    content: str
    model: str


def _dig(data: Any, *path: str | int) -> Any:
    """Follow a path of keys / indexes through nested JSON, None if it breaks."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
    return current


def _nonempty_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


class CompletionClient:
    """Async gateway for the remote text-completion API.

    Attributes:
        base_url: API root (e.g., "https://api.cerebras.ai/v1").
        model: Model used when a call does not name one.
    """

    def __init__(
        self,
        base_url: str = CEREBRAS_BASE_URL,
        api_key: str = CEREBRAS_API_KEY,
        model: str = CEREBRAS_MODEL,
        timeout: float = COMPLETION_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model

        # Every call is bounded by the transport timeout; the API itself has
        # no deadline of its own.
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    async def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> Completion:
        """Send a prompt and return the generated text.

        Args:
            prompt: The full user prompt.
            model: Model name; defaults to the client's model.
            temperature: Sampling temperature.
            max_tokens: Output token limit.
            system_prompt: System message for the chat-style call.

        Returns:
            The completion text and the model reported by the service.

        Raises:
            CompletionConfigError: If no API key is configured.
            CompletionAPIError: If both call shapes fail.
        """
        if not self.api_key:
            raise CompletionConfigError("Missing CEREBRAS_API_KEY")

        model = model or self.model
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        # --- Tier 1: chat completions ---
        chat_payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        chat_status, data = await self._post("/chat/completions", chat_payload, headers)
        if data is not None:
            content = _nonempty_text(_dig(data, "choices", 0, "message", "content"))
            if content is not None:
                return Completion(content=content, model=data.get("model") or model)
        logger.warning(
            "Chat completion unusable (status %s) — falling back to /responses",
            chat_status,
        )

        # --- Tier 2: responses ---
        responses_payload = {
            "model": model,
            "input": prompt,
            "temperature": temperature,
            "max_output_tokens": max_tokens,
        }
        try:
            response = await self._http.post(
                f"{self.base_url}/responses",
                json=responses_payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CompletionAPIError(chat_status, 0, f"Request failed: {exc}") from exc

        if not response.is_success:
            raise CompletionAPIError(chat_status, response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionAPIError(
                chat_status, response.status_code, "Response body is not JSON"
            ) from exc

        content = _nonempty_text(_dig(data, "output_text")) or _nonempty_text(
            _dig(data, "output", 0, "content", 0, "text")
        )
        if content is None:
            raise CompletionAPIError(
                chat_status, response.status_code, "Completion service returned no text"
            )
        reported = data.get("model") if isinstance(data, dict) else None
        return Completion(content=content, model=reported or model)

    async def _post(
        self,
        endpoint: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> tuple[int, dict[str, Any] | None]:
        """POST a JSON payload, never raising.

        Returns:
            The status code (0 on transport failure) and the decoded JSON
            object for a 2xx response, otherwise None.
        """
        try:
            response = await self._http.post(
                f"{self.base_url}{endpoint}",
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("Request to %s failed: %s", endpoint, exc)
            return 0, None

        if not response.is_success:
            return response.status_code, None
        try:
            data = response.json()
        except ValueError:
            return response.status_code, None
        return response.status_code, data if isinstance(data, dict) else None
