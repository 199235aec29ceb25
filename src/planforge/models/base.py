"""Base chat model interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: int = 0
    estimated: bool = False

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelResponse(BaseModel):
    final_text: str | None = None
    usage: TokenUsage | None = None


class BaseChatModel(ABC):
    """Abstract chat model interface."""

    @abstractmethod
    def chat(self, messages: list[dict[str, Any]]) -> ModelResponse:
        """Send chat request and return model response."""
        raise NotImplementedError


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0
