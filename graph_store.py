from collections import deque
from typing import Iterable, List, Optional

from node_models import Expansion, GraphEdge, GraphNode, Position, VisibleSubgraph


def _adjacency(edges: Iterable[GraphEdge]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for edge in edges:
        index.setdefault(edge.source, []).append(edge.target)
    return index


def _reachable(start: str, adjacency: dict[str, list[str]]) -> set[str]:
    """Return every id reachable from ``start`` along directed edges.

    ``start`` itself is only included when a cycle leads back to it.
    """
    found: set[str] = set()
    visited = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, ()):
            if target in visited:
                continue
            visited.add(target)
            found.add(target)
            queue.append(target)
    return found


class GraphStore:
    """Canonical node/edge state plus selection and collapse flags.

    Every operation is total: unknown ids are ignored rather than reported,
    since callers always derive ids from the current state.
    """

    def __init__(
        self,
        nodes: Optional[Iterable[GraphNode]] = None,
        edges: Optional[Iterable[GraphEdge]] = None,
    ) -> None:
        self._nodes: List[GraphNode] = [node.copy() for node in nodes or ()]
        self._edges: List[GraphEdge] = [edge.copy() for edge in edges or ()]
        self._selected_id: Optional[str] = None

    @classmethod
    def sample(cls) -> "GraphStore":
        nodes = [
            GraphNode("1", "Introduction to AI", "topic", position=Position(250, 5)),
            GraphNode("2", "What is Machine Learning?", "definition", position=Position(100, 100)),
            GraphNode("3", "Supervised Learning", "explanation", position=Position(400, 100)),
            GraphNode(
                "4",
                "Example: Spam Detection",
                "example",
                is_collapsed=True,
                position=Position(100, 200),
            ),
        ]
        edges = [
            GraphEdge("e1-2", "1", "2"),
            GraphEdge("e1-3", "1", "3"),
            GraphEdge("e2-4", "2", "4"),
        ]
        return cls(nodes, edges)

    @property
    def nodes(self) -> list[GraphNode]:
        return [node.copy() for node in self._nodes]

    @property
    def edges(self) -> list[GraphEdge]:
        return [edge.copy() for edge in self._edges]

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: Optional[str]) -> Optional[GraphNode]:
        if node_id is None:
            return None
        for node in self._nodes:
            if node.id == node_id:
                return node.copy()
        return None

    def has_node(self, node_id: str) -> bool:
        return any(node.id == node_id for node in self._nodes)

    def set_graph(self, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> None:
        new_nodes = [node.copy() for node in nodes]
        new_edges = [edge.copy() for edge in edges]
        # Swap both references together so no reader sees a mixed state.
        self._nodes, self._edges = new_nodes, new_edges
        if self._selected_id is not None and not self.has_node(self._selected_id):
            self._selected_id = None

    def merge_nodes(self, new_nodes: Iterable[GraphNode]) -> None:
        self._nodes = self._nodes + [node.copy() for node in new_nodes]

    def merge_edges(self, new_edges: Iterable[GraphEdge]) -> None:
        self._edges = self._edges + [edge.copy() for edge in new_edges]

    def add_node(self, node: GraphNode) -> None:
        self.merge_nodes([node])

    def connect(self, source: str, target: str, label: str = "") -> GraphEdge:
        edge = GraphEdge(id=f"e{source}-{target}", source=source, target=target, label=label)
        self.merge_edges([edge])
        return edge

    def merge_expansion(self, parent_id: str, expansion: Expansion) -> Expansion:
        """Merge AI-suggested children, renaming ids that would collide.

        Colliding node ids get a numeric suffix (``<id>-2``, ``<id>-3`` ...)
        and the expansion's edges are rewritten to match. Returns what was
        actually merged.
        """
        taken = {node.id for node in self._nodes}
        renamed: dict[str, str] = {}
        merged_nodes: list[GraphNode] = []
        for node in expansion.new_nodes:
            new_id = node.id
            suffix = 2
            while new_id in taken:
                new_id = f"{node.id}-{suffix}"
                suffix += 1
            taken.add(new_id)
            if new_id != node.id:
                renamed[node.id] = new_id
            child = node.copy()
            child.id = new_id
            merged_nodes.append(child)

        merged_edges: list[GraphEdge] = []
        taken_edges = {edge.id for edge in self._edges}
        for edge in expansion.new_edges:
            rewired = edge.copy()
            # The parent keeps its id; only freshly merged children can be renamed.
            if rewired.source != parent_id:
                rewired.source = renamed.get(edge.source, edge.source)
            rewired.target = renamed.get(edge.target, edge.target)
            edge_id = rewired.id
            suffix = 2
            while edge_id in taken_edges:
                edge_id = f"{rewired.id}-{suffix}"
                suffix += 1
            taken_edges.add(edge_id)
            rewired.id = edge_id
            merged_edges.append(rewired)

        self.merge_nodes(merged_nodes)
        self.merge_edges(merged_edges)
        return Expansion(new_nodes=[n.copy() for n in merged_nodes], new_edges=[e.copy() for e in merged_edges])

    def set_selected(self, node_id: Optional[str]) -> None:
        self._selected_id = node_id

    def selected_node(self) -> Optional[GraphNode]:
        return self.get_node(self._selected_id)

    def toggle_collapse(self, node_id: str) -> None:
        for node in self._nodes:
            if node.id == node_id:
                node.is_collapsed = not node.is_collapsed
                return

    def update_node(
        self,
        node_id: str,
        *,
        label: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        for node in self._nodes:
            if node.id == node_id:
                if label is not None:
                    node.label = label
                if details is not None:
                    node.details = details or None
                return

    def descendants(self, node_id: str) -> set[str]:
        return _reachable(node_id, _adjacency(self._edges))

    def valid_edges(self) -> list[GraphEdge]:
        known = {node.id for node in self._nodes}
        return [edge.copy() for edge in self._edges if edge.source in known and edge.target in known]

    def subgraph(self, node_ids: Iterable[str]) -> tuple[list[GraphNode], list[GraphEdge]]:
        wanted = set(node_ids)
        nodes = [node.copy() for node in self._nodes if node.id in wanted]
        edges = [
            edge.copy()
            for edge in self._edges
            if edge.source in wanted and edge.target in wanted
        ]
        return nodes, edges

    def root_node(self) -> Optional[GraphNode]:
        for node in self._nodes:
            if node.category == "topic" and node.position.x == 0 and node.position.y == 0:
                return node.copy()
        for node in self._nodes:
            if node.category == "topic":
                return node.copy()
        return self._nodes[0].copy() if self._nodes else None

    def compute_visible(self) -> VisibleSubgraph:
        """Project the graph through every collapse flag.

        Each collapsed node hides everything reachable from it; the collapsed
        node itself stays visible unless another collapsed ancestor hides it.
        Edges survive only when both endpoints are visible and present.
        """
        adjacency = _adjacency(self._edges)
        hidden: set[str] = set()
        for node in self._nodes:
            if node.is_collapsed:
                # Cycles can lead back to the anchor; it must stay visible.
                hidden |= _reachable(node.id, adjacency) - {node.id}

        visible_nodes = [node.copy() for node in self._nodes if node.id not in hidden]
        visible_ids = {node.id for node in visible_nodes}
        visible_edges = [
            edge.copy()
            for edge in self._edges
            if edge.source in visible_ids and edge.target in visible_ids
        ]
        return VisibleSubgraph(nodes=visible_nodes, edges=visible_edges)
