import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from bellows.errors import AgentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentConfig:
    name: str
    description: str = ""
    mode: str = "primary"
    prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    steps: int | None = None
    options: Dict[str, Any] = field(default_factory=dict)
    permission: Dict[str, str] = field(default_factory=lambda: {"*": "allow"})
    planning: bool = False
    path: Path | None = None


BUILTIN_AGENTS: Dict[str, AgentConfig] = {
    "build": AgentConfig(
        name="build",
        description="Default agent. Reads, edits and runs commands in the project.",
        permission={"*": "allow"},
    ),
    "plan": AgentConfig(
        name="plan",
        description="Planning agent. Investigates and proposes changes without making them.",
        permission={
            "*": "allow",
            "edit": "deny",
            "write": "deny",
            "bash": "ask",
        },
        planning=True,
    ),
}


def _parse_frontmatter(text: str) -> tuple[Dict[str, Any], str]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text

    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            header = "\n".join(lines[1:idx])
            body = "\n".join(lines[idx + 1 :]).lstrip()
            data = yaml.safe_load(header) or {}
            if not isinstance(data, dict):
                raise ValueError("Agent frontmatter must be a mapping")
            return data, body

    return {}, text


def _compute_name(base_dir: Path, path: Path) -> str:
    relative = path.relative_to(base_dir).with_suffix("")
    return ":".join(relative.parts)


def _agent_from_file(base_dir: Path, path: Path) -> AgentConfig:
    frontmatter, body = _parse_frontmatter(path.read_text(encoding="utf-8"))
    name = frontmatter.get("name") or _compute_name(base_dir, path)
    base = BUILTIN_AGENTS.get(name)
    permission = dict(base.permission) if base else {"*": "allow"}
    permission.update(frontmatter.get("permission") or {})
    steps = frontmatter.get("steps", frontmatter.get("max_steps"))
    return AgentConfig(
        name=name,
        description=frontmatter.get("description") or (base.description if base else ""),
        mode=frontmatter.get("mode", "primary"),
        prompt=body or None,
        model=frontmatter.get("model"),
        temperature=frontmatter.get("temperature"),
        top_p=frontmatter.get("top_p"),
        max_tokens=frontmatter.get("max_tokens"),
        steps=int(steps) if steps is not None else None,
        options=dict(frontmatter.get("options") or {}),
        permission=permission,
        planning=bool(frontmatter.get("planning", base.planning if base else False)),
        path=path,
    )


class AgentRegistry:
    """Built-in agents plus markdown agents from ``.bellows/agents``."""

    def __init__(self, root_path: str | Path | None = None):
        self.root_path = Path(root_path) if root_path is not None else None
        self.agents: Dict[str, AgentConfig] = dict(BUILTIN_AGENTS)

    def reload(self) -> None:
        agents: Dict[str, AgentConfig] = dict(BUILTIN_AGENTS)
        if self.root_path is not None:
            base_dir = self.root_path / ".bellows" / "agents"
            if base_dir.exists():
                for path in sorted(base_dir.rglob("*.md")):
                    try:
                        agent = _agent_from_file(base_dir, path)
                    except (yaml.YAMLError, ValueError) as e:
                        logger.warning(f"Skipping agent file {path}: {e}")
                        continue
                    agents[agent.name] = agent
        self.agents = agents

    def register(self, agent: AgentConfig) -> None:
        self.agents[agent.name] = agent

    def list_agents(self) -> list[str]:
        return sorted(self.agents.keys())

    def get(self, name: str) -> AgentConfig:
        if name not in self.agents:
            available = ", ".join(self.list_agents())
            raise AgentNotFoundError(f"Unknown agent: {name}. Available: {available}")
        return self.agents[name]
