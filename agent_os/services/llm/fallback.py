"""Model fallback chain with per-call and total time budgets."""

import time
from typing import Callable, List, Optional, Tuple

from agent_os.logging_config import get_logger
from agent_os.services.llm.base import LLMChainExhaustedError, LLMError, LLMProvider, LLMResponse, LLMTimeoutError

logger = get_logger("llm.fallback")

MIN_CALL_TIMEOUT_SECONDS = 1.0


def resolve_model_chain(*candidates: Optional[str]) -> List[str]:
    """Ordered, de-duplicated list of non-empty model ids."""
    chain: List[str] = []
    for candidate in candidates:
        model = (candidate or "").strip()
        if model and model not in chain:
            chain.append(model)
    return chain


def generate_with_fallback(
    provider: LLMProvider,
    messages: List[dict],
    models: List[str],
    per_call_timeout: float,
    total_timeout: float,
    clock: Callable[[], float] = time.monotonic,
    **kwargs,
) -> Tuple[LLMResponse, str]:
    """Try each model in order. Returns (response, model_requested)."""
    if not models:
        raise LLMChainExhaustedError([], None)

    started = clock()
    last_error: Optional[Exception] = None
    for model in models:
        remaining = total_timeout - (clock() - started)
        if remaining <= 0:
            last_error = LLMTimeoutError(f"Total budget of {total_timeout}s exhausted before {model}")
            break
        timeout = max(MIN_CALL_TIMEOUT_SECONDS, min(per_call_timeout, remaining))
        try:
            return provider.generate(messages, model=model, timeout_seconds=timeout, **kwargs), model
        except LLMError as e:
            logger.warning(
                "Model call failed, trying next model",
                extra={"context": {"model": model, "error": str(e)}},
            )
            last_error = e
    raise LLMChainExhaustedError(models, last_error)
