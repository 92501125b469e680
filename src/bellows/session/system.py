import logging
import platform
from datetime import date
from functools import lru_cache
from pathlib import Path

from common.text_template import render_template

from bellows.session.message import ModelRef

logger = logging.getLogger(__name__)

PROMPT_DIR = Path(__file__).resolve().parent / "prompts"
INSTRUCTION_FILES = ("BELLOWS.md", "AGENTS.md")


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    return (PROMPT_DIR / f"{name}.txt").read_text(encoding="utf-8").strip()


def provider_prompt(model: ModelRef) -> str:
    model_id = model.model_id.lower()
    if "claude" in model_id or model.provider_id == "anthropic":
        return load_prompt("anthropic")
    return load_prompt("default")


def is_git_repo(path: str | Path) -> bool:
    current = Path(path).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return True
    return False


def environment(model: ModelRef, root_path: str | Path, today: date | None = None) -> str:
    today = today or date.today()
    return render_template(
        load_prompt("environment"),
        {
            "model_id": model.model_id,
            "model_ref": str(model),
            "cwd": Path(root_path).resolve(),
            "git": "yes" if is_git_repo(root_path) else "no",
            "platform": platform.system().lower(),
            "date": today.strftime("%a %b %d %Y"),
        },
    )


def custom_instructions(root_path: str | Path) -> list[str]:
    found = []
    for name in INSTRUCTION_FILES:
        path = Path(root_path) / name
        if path.is_file():
            logger.debug(f"Loaded project instructions from {path}")
            found.append(f"Instructions from: {path}\n{path.read_text(encoding='utf-8')}")
    return found
