import os
from dataclasses import dataclass, field
from pathlib import Path


MODEL_ALIASES = {
    "sonnet": "anthropic/claude-sonnet-4-20250514",
    "opus": "anthropic/claude-opus-4-20250514",
    "haiku": "anthropic/claude-3-5-haiku-20241022",
    "4o": "openai/gpt-4o",
    "4.1": "openai/gpt-4.1",
    "flash": "gemini/gemini-2.5-flash",
    "deepseek": "deepseek/deepseek-chat",
    "glm": "zhipuai/glm-4.6",
}

DEFAULT_PROVIDER = "openai"


class ConfigError(Exception):
    pass


class ModelNotSelectedError(ConfigError):
    def __init__(self, session_id: str | None = None):
        where = f" for session {session_id}" if session_id else ""
        super().__init__(
            f"No model selected{where}. Pass a model or set BELLOWS_MODEL."
        )


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


def get_optional_env(name: str, default: str | None) -> str | None:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class BellowsConfig:
    data_dir: str = field(
        default_factory=lambda: get_optional_env("BELLOWS_DATA_DIR", ".bellows")
    )
    model: str | None = field(default_factory=lambda: get_optional_env("BELLOWS_MODEL", None))
    default_agent: str = field(
        default_factory=lambda: get_optional_env("BELLOWS_AGENT", "build")
    )
    max_steps: int = field(default_factory=lambda: _env_int("BELLOWS_MAX_STEPS", 50))
    output_token_max: int = 32_000

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "bellows.db"

    def default_model(self) -> str | None:
        if not self.model:
            return None
        return resolve_model_alias(self.model)
