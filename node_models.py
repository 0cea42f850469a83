from dataclasses import dataclass, field, replace
from typing import List, Literal, Optional

NodeCategory = Literal["topic", "definition", "explanation", "critical-point", "example"]
NODE_CATEGORIES: tuple[str, ...] = ("topic", "definition", "explanation", "critical-point", "example")
QuestionType = Literal["multiple-choice", "true-false"]


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class GraphNode:
    id: str
    label: str
    category: NodeCategory = "explanation"
    details: Optional[str] = None
    is_collapsed: bool = False
    # Advisory layout hint only; nothing in the graph logic depends on it.
    position: Position = field(default_factory=Position)

    def copy(self) -> "GraphNode":
        return replace(self, position=Position(self.position.x, self.position.y))


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    label: Optional[str] = None

    def copy(self) -> "GraphEdge":
        return replace(self)


@dataclass
class MindMapFlow:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)


@dataclass
class Expansion:
    new_nodes: List[GraphNode] = field(default_factory=list)
    new_edges: List[GraphEdge] = field(default_factory=list)


@dataclass
class VisibleSubgraph:
    """Read-only projection of the graph after collapse hiding."""

    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def edge_ids(self) -> list[str]:
        return [edge.id for edge in self.edges]


@dataclass
class QuizQuestion:
    question: str
    type: QuestionType
    correct_answer: str
    options: List[str] = field(default_factory=list)
    explanation: Optional[str] = None

    def is_correct(self, answer: Optional[str]) -> bool:
        return answer is not None and answer == self.correct_answer
