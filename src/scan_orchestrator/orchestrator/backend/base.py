"""Probe client interface used by the chunk executor and the evaluator."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class Message:
    """One chat turn passed to a provider."""

    role: str
    content: str


@dataclass(slots=True)
class ProbeResponse:
    """Provider reply plus the token usage it reported."""

    content: str
    input_tokens: int
    output_tokens: int


class ProbeClient(Protocol):
    """Protocol implemented by provider gateways."""

    def call(
        self,
        model_id: str,
        prompt: str,
        history: Sequence[Message] | None = None,
        *,
        system_prompt: str | None = None,
    ) -> ProbeResponse:
        """Send `prompt` after `history`; raise `ProviderError` on failure."""
