import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from common import llm

from bellows.session.message import ModelRef

logger = logging.getLogger(__name__)

NO_TEMPERATURE_PREFIXES = ("o1", "o3", "o4", "gpt-5")


@dataclass(frozen=True)
class ModelLimit:
    context: int = 0
    output: int = 0


@dataclass(frozen=True)
class ModelCapabilities:
    temperature: bool = True
    reasoning: bool = False
    tool_call: bool = True


@dataclass
class ProviderInfo:
    id: str
    api: str = "openai"
    litellm_prefix: str | None = None
    api_key_env: str | None = None
    api_base: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def is_litellm_proxy(self) -> bool:
        return bool(self.options.get("litellm_proxy")) or "litellm" in self.id.lower()


@dataclass
class ModelInfo:
    provider_id: str
    model_id: str
    api: str = "openai"
    family: str = ""
    litellm_model: str = ""
    limit: ModelLimit = field(default_factory=ModelLimit)
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> ModelRef:
        return ModelRef(provider_id=self.provider_id, model_id=self.model_id)


BUILTIN_PROVIDERS: dict[str, ProviderInfo] = {
    "openai": ProviderInfo(id="openai", api="openai", api_key_env="OPENAI_API_KEY"),
    "anthropic": ProviderInfo(id="anthropic", api="anthropic", api_key_env="ANTHROPIC_API_KEY"),
    "gemini": ProviderInfo(id="gemini", api="google", api_key_env="GEMINI_API_KEY"),
    "google": ProviderInfo(
        id="google", api="google", litellm_prefix="gemini", api_key_env="GEMINI_API_KEY"
    ),
    "deepseek": ProviderInfo(id="deepseek", api="openai", api_key_env="DEEPSEEK_API_KEY"),
    "openrouter": ProviderInfo(id="openrouter", api="openai", api_key_env="OPENROUTER_API_KEY"),
    "zhipuai": ProviderInfo(
        id="zhipuai",
        api="openai-compatible",
        litellm_prefix="openai",
        api_key_env="ZHIPUAI_API_KEY",
        api_base="https://open.bigmodel.cn/api/paas/v4/",
    ),
    "litellm_proxy": ProviderInfo(
        id="litellm_proxy",
        api="openai-compatible",
        api_key_env="LITELLM_PROXY_API_KEY",
        options={"litellm_proxy": True},
    ),
}


def model_family(model_id: str) -> str:
    lowered = model_id.lower()
    for family in ("claude", "gemini", "qwen", "glm", "deepseek", "llama", "mistral", "gpt"):
        if family in lowered:
            return family
    if lowered.startswith(("o1", "o3", "o4")):
        return "gpt"
    return lowered.split("-", 1)[0]


class ProviderManager:
    """Resolves provider and model descriptors and their credentials.

    One instance is constructed per process (or per test) and injected wherever
    a model has to be called; nothing here is global.
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderInfo] | None = None,
        env: Mapping[str, str] | None = None,
        model_info_fn: Callable[[str], dict] = llm.get_model_info,
    ):
        self._providers: dict[str, ProviderInfo] = dict(BUILTIN_PROVIDERS)
        self._providers.update(providers or {})
        self._env = env if env is not None else os.environ
        self._model_info_fn = model_info_fn
        self._models: dict[str, ModelInfo] = {}

    def register_provider(self, provider: ProviderInfo) -> None:
        self._providers[provider.id] = provider
        self._models = {k: v for k, v in self._models.items() if not k.startswith(f"{provider.id}/")}

    def get_provider(self, provider_id: str) -> ProviderInfo:
        provider = self._providers.get(provider_id)
        if provider is None:
            provider = ProviderInfo(id=provider_id, api="openai-compatible")
            self._providers[provider_id] = provider
            logger.debug(f"Using generic settings for unknown provider {provider_id}")
        return provider

    def get_model(self, ref: ModelRef) -> ModelInfo:
        key = str(ref)
        cached = self._models.get(key)
        if cached is not None:
            return cached

        provider = self.get_provider(ref.provider_id)
        litellm_model = f"{provider.litellm_prefix or provider.id}/{ref.model_id}"
        info = self._model_info_fn(litellm_model) or {}
        limit = ModelLimit(
            context=int(info.get("max_input_tokens") or 0),
            output=int(info.get("max_output_tokens") or 0),
        )
        lowered = ref.model_id.lower()
        capabilities = ModelCapabilities(
            temperature=not lowered.startswith(NO_TEMPERATURE_PREFIXES),
            reasoning=bool(info.get("supports_reasoning", False)),
            tool_call=bool(info.get("supports_function_calling", True)),
        )
        model = ModelInfo(
            provider_id=ref.provider_id,
            model_id=ref.model_id,
            api=provider.api,
            family=model_family(ref.model_id),
            litellm_model=litellm_model,
            limit=limit,
            capabilities=capabilities,
        )
        self._models[key] = model
        return model

    def set_model(self, model: ModelInfo) -> None:
        self._models[str(model.ref)] = model

    def api_key(self, provider_id: str) -> str | None:
        provider = self.get_provider(provider_id)
        env_name = provider.api_key_env or f"{provider_id.upper()}_API_KEY"
        return self._env.get(env_name) or None

    def call_params(self, provider_id: str) -> dict[str, Any]:
        provider = self.get_provider(provider_id)
        params: dict[str, Any] = {}
        api_key = self.api_key(provider_id)
        if api_key:
            params["api_key"] = api_key
        api_base = self._env.get(f"{provider_id.upper()}_API_BASE") or provider.api_base
        if api_base:
            params["api_base"] = api_base
        return params
