from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class LLMError(Exception):
    """Model call failed; the next model of the fallback chain may be tried."""


class LLMTimeoutError(LLMError):
    pass


class LLMChainExhaustedError(LLMError):
    def __init__(self, models: List[str], last_error: Optional[Exception]):
        self.models = models
        self.last_error = last_error
        super().__init__(f"All models failed ({', '.join(models)}): {last_error}")


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    def assistant_message(self) -> dict:
        """The assistant turn to append to history before answering tool calls."""
        message = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {"id": call.id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}}
                for call in self.tool_calls
            ]
        return message


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 900,
        timeout_seconds: Optional[float] = None,
        tools: Optional[List[dict]] = None,
        response_format: Optional[dict] = None,
    ) -> LLMResponse:
        """Generate one chat completion or a list of tool calls."""
        pass
