from pathlib import Path

import pytest

from bellows.agents import AgentRegistry
from bellows.errors import AgentNotFoundError


def test_builtin_agents():
    registry = AgentRegistry()

    assert registry.list_agents() == ["build", "plan"]
    assert registry.get("plan").planning
    assert registry.get("plan").permission["edit"] == "deny"
    assert not registry.get("build").planning


def test_agent_registry_loads(tmp_path: Path):
    agents_dir = tmp_path / ".bellows" / "agents"
    agents_dir.mkdir(parents=True)
    agent_file = agents_dir / "helper.md"
    agent_file.write_text(
        "---\n"
        "name: helper\n"
        "description: test agent\n"
        "model: haiku\n"
        "temperature: 0.2\n"
        "steps: 5\n"
        "permission:\n"
        "  bash: deny\n"
        "---\n"
        "You help.\n",
        encoding="utf-8",
    )

    registry = AgentRegistry(tmp_path)
    registry.reload()

    agent = registry.get("helper")
    assert agent.description == "test agent"
    assert agent.prompt == "You help."
    assert agent.model == "haiku"
    assert agent.temperature == 0.2
    assert agent.steps == 5
    assert agent.permission == {"*": "allow", "bash": "deny"}
    assert agent.path == agent_file


def test_nested_agent_name_from_path(tmp_path: Path):
    agents_dir = tmp_path / ".bellows" / "agents" / "review"
    agents_dir.mkdir(parents=True)
    (agents_dir / "security.md").write_text("Look for vulnerabilities.", encoding="utf-8")

    registry = AgentRegistry(tmp_path)
    registry.reload()

    agent = registry.get("review:security")
    assert agent.prompt == "Look for vulnerabilities."


def test_custom_file_can_extend_builtin(tmp_path: Path):
    agents_dir = tmp_path / ".bellows" / "agents"
    agents_dir.mkdir(parents=True)
    (agents_dir / "plan.md").write_text(
        "---\npermission:\n  bash: deny\n---\nPlan carefully.\n", encoding="utf-8"
    )

    registry = AgentRegistry(tmp_path)
    registry.reload()

    plan = registry.get("plan")
    assert plan.planning
    assert plan.permission["edit"] == "deny"
    assert plan.permission["bash"] == "deny"


def test_bad_frontmatter_is_skipped(tmp_path: Path):
    agents_dir = tmp_path / ".bellows" / "agents"
    agents_dir.mkdir(parents=True)
    (agents_dir / "broken.md").write_text("---\nname: [unclosed\n---\nbody\n", encoding="utf-8")

    registry = AgentRegistry(tmp_path)
    registry.reload()

    assert "broken" not in registry.list_agents()


def test_unknown_agent():
    with pytest.raises(AgentNotFoundError):
        AgentRegistry().get("missing")
