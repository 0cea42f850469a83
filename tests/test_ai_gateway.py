import asyncio
import json
import threading

import pytest

import ai
from ai import CallState, GenerationGateway
from graph_store import GraphStore
from node_models import GraphEdge, GraphNode, Position

FLOW_RESPONSE = """Here is your map:
```json
{"nodes": [
  {"id": "r", "type": "custom", "position": {"x": 0, "y": 0}, "data": {"label": "Cells", "type": "topic"}},
  {"id": "m", "data": {"label": "Mitochondria", "type": "definition"}}
 ],
 "edges": [{"id": "er-m", "source": "r", "target": "m"}]}
```"""

EXPANSION_RESPONSE = json.dumps(
    {
        "nodes": [
            {"id": "p-child1", "data": {"label": "First", "type": "example"}},
            {"id": "p-child2", "data": {"label": "Second"}},
        ],
        "edges": [
            {"id": "e-p-child1", "source": "p", "target": "p-child1"},
            {"id": "e-p-child2", "source": "p", "target": "p-child2"},
        ],
    }
)

QUIZ_RESPONSE = """```json
[{"question": "Q?", "type": "true-false", "correctAnswer": "True"}]
```"""

PARENT = GraphNode("p", "Parent", "topic", position=Position(100, 50))


def scripted(reply):
    prompts = []

    def complete(prompt, api_key):
        prompts.append((prompt, api_key))
        return reply

    complete.prompts = prompts
    return complete


@pytest.fixture
def keyed_vault(vault):
    vault.store("sk-test")
    return vault


def make_gateway(vault, limiter, complete, clock=lambda: 1000.0):
    return GenerationGateway(vault, limiter, complete, clock=clock)


async def test_generate_mind_map_success(keyed_vault, limiter):
    complete = scripted(FLOW_RESPONSE)
    gateway = make_gateway(keyed_vault, limiter, complete)

    result = await gateway.generate_mind_map("Cells contain mitochondria which make energy.")

    assert result.ok
    assert [n.id for n in result.value.nodes] == ["r", "m"]
    assert result.value.nodes[1].position == Position(200, 100)
    assert result.states == [
        CallState.IDLE,
        CallState.RATE_CHECKING,
        CallState.CREDENTIAL_LOADING,
        CallState.CALLING,
        CallState.INGESTING,
        CallState.SUCCEEDED,
    ]
    prompt, key = complete.prompts[0]
    assert key == "sk-test"
    assert "Cells contain mitochondria" in prompt


async def test_generate_strips_script_tags(keyed_vault, limiter):
    complete = scripted(FLOW_RESPONSE)
    gateway = make_gateway(keyed_vault, limiter, complete)
    await gateway.generate_mind_map("Plants <script>alert(1)</script>grow toward light.")
    assert "alert" not in complete.prompts[0][0]


async def test_expand_node_then_merge(keyed_vault, limiter):
    gateway = make_gateway(keyed_vault, limiter, scripted(EXPANSION_RESPONSE))
    store = GraphStore([PARENT])

    result = await gateway.expand_node(PARENT)

    assert result.ok
    store.merge_expansion(PARENT.id, result.value)
    assert store.compute_visible().node_ids() == ["p", "p-child1", "p-child2"]
    child = store.get_node("p-child2")
    assert child.label == "Second"
    assert child.position.x == 100
    assert 150 <= child.position.y <= 200


async def test_generate_quiz_success(keyed_vault, limiter):
    gateway = make_gateway(keyed_vault, limiter, scripted(QUIZ_RESPONSE))
    nodes = [PARENT, GraphNode("c", "Child")]
    result = await gateway.generate_quiz(nodes, [GraphEdge("e", "p", "c")])
    assert result.ok
    assert result.value[0].correct_answer == "True"


async def test_summarize_success(keyed_vault, limiter):
    complete = scripted("  Cells are small.  ")
    gateway = make_gateway(keyed_vault, limiter, complete)
    result = await gateway.summarize([PARENT], title="Parent")
    assert result.value == "Cells are small."
    assert '(related to "Parent")' in complete.prompts[0][0]


async def test_rate_limited_after_five_calls(keyed_vault, limiter):
    complete = scripted("Summary.")
    gateway = make_gateway(keyed_vault, limiter, complete)
    for _ in range(5):
        assert (await gateway.summarize([PARENT])).ok

    result = await gateway.summarize([PARENT])

    assert result.failure.reason == "rate-limited"
    assert result.failure.retry_after_seconds == 60
    assert result.state is CallState.FAILED
    assert len(complete.prompts) == 5
    assert "60 seconds" in result.failure.message()


async def test_missing_credential(vault, limiter):
    complete = scripted(FLOW_RESPONSE)
    gateway = make_gateway(vault, limiter, complete)
    result = await gateway.generate_mind_map("Some meaningful text here.")
    assert result.failure.reason == "missing-credential"
    assert complete.prompts == []


async def test_environment_credential_fallback(vault, limiter, monkeypatch):
    monkeypatch.setenv(ai.API_KEY_ENV, "sk-env")
    complete = scripted("Summary.")
    result = await make_gateway(vault, limiter, complete).summarize([PARENT])
    assert result.ok
    assert complete.prompts[0][1] == "sk-env"


async def test_transport_error(keyed_vault, limiter):
    def broken(prompt, api_key):
        raise ai.TransportError("connection refused")

    result = await make_gateway(keyed_vault, limiter, broken).summarize([PARENT])
    assert result.failure.reason == "transport-error"
    assert "connection refused" in result.failure.detail


async def test_no_response_is_transport_error(keyed_vault, limiter):
    result = await make_gateway(keyed_vault, limiter, scripted(None)).summarize([PARENT])
    assert result.failure.reason == "transport-error"


async def test_malformed_response(keyed_vault, limiter):
    result = await make_gateway(keyed_vault, limiter, scripted("I cannot help with that.")).expand_node(PARENT)
    assert result.failure.reason == "malformed-response"


async def test_schema_invalid_response(keyed_vault, limiter):
    reply = json.dumps({"nodes": [{"id": "p"}], "edges": []})
    result = await make_gateway(keyed_vault, limiter, scripted(reply)).expand_node(PARENT)
    assert result.failure.reason == "schema-invalid"


async def test_invalid_input_skips_rate_window(keyed_vault, limiter):
    gateway = make_gateway(keyed_vault, limiter, scripted(FLOW_RESPONSE))
    assert (await gateway.generate_mind_map("<script>x</script>")).failure.reason == "invalid-input"
    assert (await gateway.generate_quiz([], [])).failure.reason == "invalid-input"
    assert (await gateway.summarize([])).failure.reason == "invalid-input"
    too_long = "a" * (ai.MAX_TEXT_LENGTH + 1)
    assert (await gateway.generate_mind_map(too_long)).failure.reason == "invalid-input"
    assert limiter.recorded(ai.OPERATION_GENERATE, now=1000.0) == 0


async def test_offline_model_needs_no_credential(vault, limiter):
    gateway = GenerationGateway(vault, limiter, model=lambda: ai.OFFLINE_MODEL)
    assert gateway.offline

    flow = await gateway.generate_mind_map("# Photosynthesis\nPlants make sugar.")
    assert flow.ok
    assert flow.value.nodes[0].label == "Photosynthesis"
    assert len(flow.value.edges) == 3

    expansion = await gateway.expand_node(PARENT)
    assert [n.id for n in expansion.value.new_nodes] == ["p-child1", "p-child2"]

    quiz = await gateway.generate_quiz(flow.value.nodes, flow.value.edges)
    assert len(quiz.value) == 2

    summary = await gateway.summarize([PARENT])
    assert summary.value == "This mind map covers Parent."


async def test_cancellation_propagates_and_nothing_is_merged(keyed_vault, limiter):
    started = threading.Event()
    release = threading.Event()

    def slow(prompt, api_key):
        started.set()
        release.wait(5)
        return EXPANSION_RESPONSE

    store = GraphStore([PARENT])
    gateway = make_gateway(keyed_vault, limiter, slow)

    async def expand_and_merge():
        result = await gateway.expand_node(PARENT)
        store.merge_expansion(PARENT.id, result.value)

    task = asyncio.create_task(expand_and_merge())
    while not started.is_set():
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    release.set()

    assert store.compute_visible().node_ids() == ["p"]


async def test_exchanges_are_logged(keyed_vault, limiter, isolated_home):
    gateway = make_gateway(keyed_vault, limiter, scripted("Summary."))
    ai.start_prompt_session("Summarize")
    await gateway.summarize([PARENT])
    ai.finish_prompt_session()
    await make_gateway(keyed_vault, limiter, scripted(None)).summarize([PARENT])

    prompt_log = (isolated_home / "logs" / "prompt.log").read_text(encoding="utf-8")
    assert "Task: Summarize" in prompt_log
    assert "Summary." in prompt_log
    connection_log = (isolated_home / "logs" / "connection.log").read_text(encoding="utf-8")
    assert "SUCCESS" in connection_log
    assert "TRANSPORT-ERROR" in connection_log


async def test_unwritable_log_dir_does_not_break_calls(keyed_vault, limiter, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    ai.configure_log_dir(blocker)

    ok = await make_gateway(keyed_vault, limiter, scripted("Summary.")).summarize([PARENT])
    failed = await make_gateway(keyed_vault, limiter, scripted(None)).summarize([PARENT])

    assert ok.value == "Summary."
    assert failed.failure.reason == "transport-error"
    assert ai.last_log_error() is not None
