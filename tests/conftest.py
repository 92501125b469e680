import pytest

from bellows.agents import AgentRegistry
from bellows.config import BellowsConfig
from bellows.llm.provider import ProviderManager
from bellows.session.manager import SessionManager
from bellows.session.message import ModelRef
from bellows.session.store import SQLiteMessageStore
from bellows.tools.registry import ToolRegistry
from bellows.tools.tool import ToolResult, define_tool

TEST_MODEL = "openai/test-model"


@pytest.fixture
def store():
    store = SQLiteMessageStore()
    yield store
    store.close()


@pytest.fixture
def sessions(store) -> SessionManager:
    return SessionManager(store)


@pytest.fixture
def session(sessions):
    return sessions.create_session(title="test", model=TEST_MODEL)


@pytest.fixture
def model_ref() -> ModelRef:
    return ModelRef.parse(TEST_MODEL)


@pytest.fixture
def providers() -> ProviderManager:
    return ProviderManager(env={}, model_info_fn=lambda model: {})


@pytest.fixture
def config(tmp_path) -> BellowsConfig:
    return BellowsConfig(data_dir=str(tmp_path / ".bellows"), model=None, max_steps=10)


@pytest.fixture
def agents(tmp_path) -> AgentRegistry:
    registry = AgentRegistry(tmp_path)
    registry.reload()
    return registry


@pytest.fixture
def tools() -> ToolRegistry:
    """A registry with an in-memory ``read`` tool backed by a dict of files."""
    registry = ToolRegistry()
    files = {"x.py": "print('hello')\n"}

    def read(args, ctx):
        path = args["file_path"]
        if path not in files:
            raise FileNotFoundError(f"file not found: {path}")
        return ToolResult(output=files[path], title=path)

    registry.register(
        define_tool(
            "read",
            "Read a file",
            {
                "type": "object",
                "properties": {"file_path": {"type": "string"}},
                "required": ["file_path"],
            },
            read,
        )
    )
    return registry
