"""Per-vendor adjustments applied to requests before they reach litellm."""

import copy
import logging
from typing import Any

from bellows.llm.provider import ModelInfo, ProviderInfo

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.6
DEFAULT_TOP_P = 0.9

NOOP_TOOL_NAME = "_noop"
NOOP_TOOL = {
    "type": "function",
    "function": {
        "name": NOOP_TOOL_NAME,
        "description": (
            "Placeholder for LiteLLM/Anthropic proxy compatibility - required when "
            "message history contains tool calls but no active tools are needed"
        ),
        "parameters": {"type": "object", "properties": {}},
    },
}

THINKING_APIS = ("anthropic", "openai-compatible")


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _merges_system(model: ModelInfo) -> bool:
    return model.provider_id == "zhipuai" or model.api == "openai-compatible"


def _rejects_empty_text(model: ModelInfo) -> bool:
    return model.api == "anthropic" or _merges_system(model)


def _merge_system_messages(msgs: list[dict]) -> list[dict]:
    system_texts = []
    others = []
    for msg in msgs:
        if msg.get("role") == "system":
            text = _text_of(msg.get("content"))
            if text.strip():
                system_texts.append(text)
        else:
            others.append(msg)
    if not system_texts:
        return others
    return [{"role": "system", "content": "\n\n".join(system_texts)}, *others]


def _drop_empty_text(msgs: list[dict]) -> list[dict]:
    result = []
    for msg in msgs:
        content = msg.get("content")
        role = msg.get("role")
        if role == "tool":
            if not content:
                msg = {**msg, "content": "(no output)"}
            result.append(msg)
            continue
        if isinstance(content, list):
            blocks = [
                block
                for block in content
                if not (block.get("type") == "text" and block.get("text", "") == "")
            ]
            if not blocks and not msg.get("tool_calls"):
                continue
            msg = {**msg, "content": blocks or None}
        elif content == "" or content is None:
            if not msg.get("tool_calls"):
                continue
            msg = {**msg, "content": None}
        result.append(msg)
    return result


def message(msgs: list[dict], model: ModelInfo) -> list[dict]:
    """Normalize a chat-completions message list for ``model``'s vendor."""
    if _merges_system(model):
        before = len(msgs)
        msgs = _merge_system_messages(msgs)
        if len(msgs) != before:
            logger.debug(f"Merged system messages for {model.provider_id}/{model.model_id}")
    if _rejects_empty_text(model):
        msgs = _drop_empty_text(msgs)
    return msgs


def has_tool_calls(msgs: list[dict]) -> bool:
    return any(
        msg.get("role") == "tool" or (msg.get("role") == "assistant" and msg.get("tool_calls"))
        for msg in msgs
    )


def needs_tool_placeholder(
    provider: ProviderInfo, model: ModelInfo, tools: list[dict], msgs: list[dict]
) -> bool:
    is_proxy = provider.is_litellm_proxy or "litellm" in model.model_id.lower()
    return is_proxy and not tools and has_tool_calls(msgs)


def schema(model: ModelInfo, parameters: dict) -> dict:
    """Apply model-family constraints to a tool's JSON schema."""
    if model.api != "google" and "gemini" not in model.model_id.lower():
        return parameters
    return _sanitize_gemini(copy.deepcopy(parameters))


def _sanitize_gemini(node: Any) -> Any:
    if isinstance(node, list):
        return [_sanitize_gemini(item) for item in node]
    if not isinstance(node, dict):
        return node

    result: dict[str, Any] = {}
    for key, value in node.items():
        if key == "enum" and isinstance(value, list):
            result[key] = [str(v) for v in value]
        elif isinstance(value, (dict, list)):
            result[key] = _sanitize_gemini(value)
        else:
            result[key] = value

    if "enum" in result and result.get("type") in ("integer", "number"):
        result["type"] = "string"
    if (
        result.get("type") == "object"
        and isinstance(result.get("properties"), dict)
        and isinstance(result.get("required"), list)
    ):
        result["required"] = [f for f in result["required"] if f in result["properties"]]
    if result.get("type") == "array" and result.get("items") is None:
        result["items"] = {}
    return result


def max_output_tokens(model: ModelInfo, options: dict[str, Any], output_token_max: int) -> int:
    """Output budget that leaves room for a thinking budget sharing the same ceiling."""
    model_cap = model.limit.output or output_token_max
    standard_limit = min(model_cap, output_token_max)

    if model.api in THINKING_APIS:
        thinking = options.get("thinking") or {}
        budget = thinking.get("budget_tokens") or thinking.get("budgetTokens") or 0
        if thinking.get("type") == "enabled" and budget > 0:
            if budget + standard_limit <= model_cap:
                return standard_limit
            return model_cap - budget
    return standard_limit


def temperature(model: ModelInfo) -> float | None:
    model_id = model.model_id.lower()
    if "qwen" in model_id:
        return 0.55
    if "glm-4.6" in model_id or "glm-4.7" in model_id:
        return 1.0
    return None


def options(model: ModelInfo, provider: ProviderInfo) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if provider.id in ("zai", "zhipuai") and provider.api == "openai-compatible":
        if provider.options.get("enable_thinking") is True:
            result["thinking"] = {"type": "enabled", "clear_thinking": False}
    return result
