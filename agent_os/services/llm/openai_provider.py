from typing import List, Optional

import httpx

from agent_os.logging_config import get_logger
from agent_os.services.llm.base import LLMError, LLMProvider, LLMResponse, LLMTimeoutError, ToolCall

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over plain httpx."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4.1-mini",
        base_url: str = "https://api.openai.com/v1/chat/completions",
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url

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
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if response_format:
            payload["response_format"] = response_format

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, tools={len(tools or [])}")
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"OpenAI timeout after {timeout}s ({model})") from e
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI transport error ({model}): {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} {response.text[:500]}")
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text[:500]}")

        data = response.json()
        content = ""
        tool_calls: List[ToolCall] = []
        if data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                tool_calls.append(
                    ToolCall(
                        id=call.get("id") or "",
                        name=function.get("name") or "",
                        arguments=function.get("arguments") or "{}",
                    )
                )
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}, tool_calls={len(tool_calls)}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )
