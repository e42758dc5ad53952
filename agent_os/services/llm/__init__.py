from typing import Optional

from agent_os.config import settings
from agent_os.services.llm.base import (
    LLMChainExhaustedError,
    LLMError,
    LLMProvider,
    LLMResponse,
    LLMTimeoutError,
    ToolCall,
)
from agent_os.services.llm.fallback import generate_with_fallback, resolve_model_chain
from agent_os.services.llm.openai_provider import OpenAIProvider

_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> LLMProvider:
    """Get or create the process-wide LLM provider."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.agent_model,
            base_url=settings.openai_base_url,
        )
    return _llm_provider


__all__ = [
    "LLMChainExhaustedError",
    "LLMError",
    "LLMProvider",
    "LLMResponse",
    "LLMTimeoutError",
    "OpenAIProvider",
    "ToolCall",
    "generate_with_fallback",
    "get_llm_provider",
    "resolve_model_chain",
]
