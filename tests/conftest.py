import pytest

import ai
from graph_store import GraphStore
from node_models import GraphEdge, GraphNode
from rate_limit import RateLimiter
from storage import MemoryStore
from vault import SecretVault


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep logs and persisted state out of the real home directory."""
    monkeypatch.setenv("MINDGRAPH_HOME", str(tmp_path / "home"))
    monkeypatch.delenv(ai.API_KEY_ENV, raising=False)
    monkeypatch.delenv(ai.MODEL_ENV, raising=False)
    ai.configure_log_dir(tmp_path / "logs")
    yield tmp_path
    ai.configure_log_dir(None)


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def vault(kv):
    return SecretVault(kv)


@pytest.fixture
def limiter(kv):
    return RateLimiter(kv)


def node(node_id, label=None, category="explanation", collapsed=False):
    return GraphNode(node_id, label or node_id.upper(), category, is_collapsed=collapsed)


def edge(source, target):
    return GraphEdge(f"{source}{target}", source, target)


@pytest.fixture
def chain_store():
    """a -> b -> c with nothing collapsed."""
    return GraphStore(
        [node("a", category="topic"), node("b"), node("c")],
        [edge("a", "b"), edge("b", "c")],
    )
