"""OpenAI-compatible chat-completions gateway client."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from scan_orchestrator.orchestrator.backend.base import Message, ProbeResponse
from scan_orchestrator.orchestrator.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_TOKENS = 1_500


class HttpProbeClient:
    """Probe client that routes every registry model through one gateway.

    The gateway speaks the OpenAI chat-completions wire format and is
    responsible for vendor routing; this class only maps transport and
    payload failures onto `ProviderError`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._max_tokens = max_tokens
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def call(
        self,
        model_id: str,
        prompt: str,
        history: Sequence[Message] | None = None,
        *,
        system_prompt: str | None = None,
    ) -> ProbeResponse:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend({"role": item.role, "content": item.content} for item in history or ())
        messages.append({"role": "user", "content": prompt})

        try:
            response = self._client.post(
                "/chat/completions",
                json={
                    "model": model_id,
                    "messages": messages,
                    "max_tokens": self._max_tokens,
                },
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling model %s", model_id)
            raise ProviderError(model_id, "timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling model %s: %s", model_id, exc)
            raise ProviderError(model_id, str(exc)) from exc

        if not response.is_success:
            raise ProviderError(
                model_id,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(model_id, "response is not JSON") from exc
        return _parse_completion(model_id, payload)

    def close(self) -> None:
        self._client.close()


def _parse_completion(model_id: str, payload: Any) -> ProbeResponse:
    if not isinstance(payload, dict):
        raise ProviderError(model_id, "completion payload must be an object")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderError(model_id, "completion has no choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise ProviderError(model_id, "completion has no text content")

    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    return ProbeResponse(
        content=content,
        input_tokens=_int_or_zero(usage.get("prompt_tokens")),
        output_tokens=_int_or_zero(usage.get("completion_tokens")),
    )


def _int_or_zero(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    return 0
