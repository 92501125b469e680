import logging
import warnings
from typing import Any

import litellm
from litellm import completion as litellm_completion

logger = logging.getLogger(__name__)

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


def completion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    tools: list[dict] | None = None,
    tool_choice: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    **kwargs,
) -> Any:
    params = {
        "model": model,
        "messages": messages,
        "stream": stream,
        **{k: v for k, v in kwargs.items() if v is not None},
    }
    if temperature is not None:
        params["temperature"] = temperature
    if max_tokens is not None:
        params["max_tokens"] = max_tokens
    if stream:
        params.setdefault("stream_options", {"include_usage": True})

    if tools:
        params["tools"] = tools
        params["tool_choice"] = tool_choice or "auto"

    return litellm_completion(**params)


def usage_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    try:
        prompt_cost, completion_cost = litellm.cost_per_token(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return float(prompt_cost or 0.0) + float(completion_cost or 0.0)
    except Exception:
        logger.debug(f"No pricing information for {model}")
        return 0.0


def get_model_info(model: str) -> dict:
    try:
        return litellm.get_model_info(model)
    except Exception:
        return {}
