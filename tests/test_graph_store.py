from graph_store import GraphStore
from node_models import Expansion, GraphEdge, GraphNode, Position

from conftest import edge, node


def test_chain_visible_when_nothing_collapsed(chain_store):
    visible = chain_store.compute_visible()
    assert visible.node_ids() == ["a", "b", "c"]
    assert visible.edge_ids() == ["ab", "bc"]


def test_collapsed_root_hides_whole_chain():
    store = GraphStore(
        [node("a", collapsed=True), node("b"), node("c")],
        [edge("a", "b"), edge("b", "c")],
    )
    visible = store.compute_visible()
    assert visible.node_ids() == ["a"]
    assert visible.edges == []


def test_collapsed_middle_keeps_anchor_visible():
    store = GraphStore(
        [node("a"), node("b", collapsed=True), node("c")],
        [edge("a", "b"), edge("b", "c")],
    )
    visible = store.compute_visible()
    assert visible.node_ids() == ["a", "b"]
    assert visible.edge_ids() == ["ab"]


def test_diamond_shared_descendant_hidden_by_one_collapsed_parent():
    store = GraphStore(
        [node("a"), node("b", collapsed=True), node("c"), node("d")],
        [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
    )
    visible = store.compute_visible()
    assert visible.node_ids() == ["a", "b", "c"]
    assert visible.edge_ids() == ["ab", "ac"]


def test_cycle_terminates_and_anchor_stays():
    store = GraphStore(
        [node("a", collapsed=True), node("b")],
        [edge("a", "b"), edge("b", "a")],
    )
    visible = store.compute_visible()
    assert visible.node_ids() == ["a"]
    assert visible.edges == []


def test_collapsed_node_hidden_by_collapsed_ancestor():
    store = GraphStore(
        [node("a", collapsed=True), node("b", collapsed=True), node("c")],
        [edge("a", "b"), edge("b", "c")],
    )
    assert store.compute_visible().node_ids() == ["a"]


def test_dangling_edges_never_projected():
    store = GraphStore([node("a"), node("b")], [edge("a", "b"), edge("a", "ghost")])
    visible = store.compute_visible()
    assert visible.edge_ids() == ["ab"]
    assert [e.id for e in store.valid_edges()] == ["ab"]


def test_toggle_twice_restores_projection(chain_store):
    before = chain_store.compute_visible()
    chain_store.toggle_collapse("b")
    assert chain_store.compute_visible().node_ids() == ["a", "b"]
    chain_store.toggle_collapse("b")
    after = chain_store.compute_visible()
    assert after.node_ids() == before.node_ids()
    assert after.edge_ids() == before.edge_ids()


def test_toggle_unknown_id_is_noop(chain_store):
    chain_store.toggle_collapse("missing")
    assert chain_store.compute_visible().node_ids() == ["a", "b", "c"]


def test_projection_is_a_copy(chain_store):
    visible = chain_store.compute_visible()
    visible.nodes[0].label = "changed"
    assert chain_store.get_node("a").label == "A"


def test_sample_map_hides_nothing_below_leaf():
    store = GraphStore.sample()
    visible = store.compute_visible()
    assert visible.node_ids() == ["1", "2", "3", "4"]
    assert visible.edge_ids() == ["e1-2", "e1-3", "e2-4"]
    store.toggle_collapse("2")
    assert store.compute_visible().node_ids() == ["1", "2", "3"]


def test_set_graph_clears_stale_selection(chain_store):
    chain_store.set_selected("c")
    chain_store.set_graph([node("x")], [])
    assert chain_store.selected_id is None
    assert chain_store.selected_node() is None


def test_merge_expansion_appends_children(chain_store):
    expansion = Expansion(
        [GraphNode("c1", "Child", position=Position(0, 150))],
        [GraphEdge("ec1", "c", "c1")],
    )
    merged = chain_store.merge_expansion("c", expansion)
    assert [n.id for n in merged.new_nodes] == ["c1"]
    assert chain_store.compute_visible().node_ids() == ["a", "b", "c", "c1"]
    assert chain_store.descendants("a") == {"b", "c", "c1"}


def test_merge_expansion_renames_colliding_ids(chain_store):
    expansion = Expansion(
        [GraphNode("b", "Another B"), GraphNode("z", "Grandchild")],
        [GraphEdge("ab", "c", "b"), GraphEdge("eb-z", "b", "z")],
    )
    merged = chain_store.merge_expansion("c", expansion)

    assert [n.id for n in merged.new_nodes] == ["b-2", "z"]
    sources_targets = [(e.id, e.source, e.target) for e in merged.new_edges]
    assert sources_targets == [("ab-2", "c", "b-2"), ("eb-z", "b-2", "z")]
    assert chain_store.get_node("b").label == "B"
    assert len({n.id for n in chain_store.nodes}) == len(chain_store)


def test_connect_creates_unlabelled_edge(chain_store):
    created = chain_store.connect("c", "a")
    assert created.id == "ec-a"
    assert created.label == ""
    assert chain_store.edges[-1].target == "a"


def test_update_node_changes_label_and_details(chain_store):
    chain_store.update_node("b", label="Beta", details="second")
    updated = chain_store.get_node("b")
    assert updated.label == "Beta"
    assert updated.details == "second"


def test_subgraph_keeps_internal_edges_only(chain_store):
    nodes, edges = chain_store.subgraph({"b", "c"})
    assert [n.id for n in nodes] == ["b", "c"]
    assert [e.id for e in edges] == ["bc"]


def test_root_node_prefers_topic_at_origin():
    store = GraphStore(
        [
            GraphNode("x", "Other", "topic", position=Position(5, 5)),
            GraphNode("r", "Root", "topic", position=Position(0, 0)),
        ]
    )
    assert store.root_node().id == "r"


def test_root_node_falls_back_to_first_topic_then_first_node():
    assert GraphStore([node("n"), node("t", category="topic")]).root_node().id == "t"
    assert GraphStore([node("n"), node("m")]).root_node().id == "n"
    assert GraphStore().root_node() is None
