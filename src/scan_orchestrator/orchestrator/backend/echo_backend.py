"""Deterministic local probe client for development and tests."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

from scan_orchestrator.orchestrator.backend.base import Message, ProbeResponse
from scan_orchestrator.orchestrator.errors import ProviderError

ResponseFactory = Callable[[str, str, Sequence[Message]], str]


class EchoProbeClient:
    """Answer every prompt with a fixed template and count the calls.

    `fail_models` makes every call for those model ids raise `ProviderError`;
    `fail_on_turn` fails a call once the history already holds that many
    assistant turns, which cuts follow-up chains short.
    """

    def __init__(
        self,
        *,
        response_text: str = "Echo response for: {prompt}",
        response_factory: ResponseFactory | None = None,
        fail_models: set[str] | None = None,
        fail_on_turn: int | None = None,
        input_tokens: int = 120,
        output_tokens: int = 240,
    ) -> None:
        self._response_text = response_text
        self._response_factory = response_factory
        self._fail_models = set(fail_models or ())
        self._fail_on_turn = fail_on_turn
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str, int]] = []

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def call(
        self,
        model_id: str,
        prompt: str,
        history: Sequence[Message] | None = None,
        *,
        system_prompt: str | None = None,  # noqa: ARG002
    ) -> ProbeResponse:
        turns = list(history or ())
        assistant_turns = sum(1 for item in turns if item.role == "assistant")
        with self._lock:
            self.calls.append((model_id, prompt, assistant_turns))

        if model_id in self._fail_models:
            raise ProviderError(model_id, "echo backend configured to fail")
        if self._fail_on_turn is not None and assistant_turns >= self._fail_on_turn:
            raise ProviderError(
                model_id,
                f"echo backend configured to fail on turn {assistant_turns}",
            )

        if self._response_factory is not None:
            content = self._response_factory(model_id, prompt, turns)
        else:
            content = self._response_text.format(prompt=prompt, model_id=model_id)
        return ProbeResponse(
            content=content,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
        )
