"""Turn free-form model output into validated graph, quiz and summary shapes.

Nothing here raises on bad input. Every function returns either the parsed
value or an :class:`IngestError`, so callers have to look at the result before
using it.
"""

import json
import random
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from node_models import (
    NODE_CATEGORIES,
    Expansion,
    GraphEdge,
    GraphNode,
    MindMapFlow,
    Position,
    QuizQuestion,
)

IngestErrorKind = Literal["no-json", "malformed-json", "schema-invalid"]

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
_DEFAULT_LABEL = "Untitled Node"
_EXPANSION_LABEL = "Untitled"
_DEFAULT_CATEGORY = "explanation"
_QUESTION_TYPES = ("multiple-choice", "true-false")
_TRUE_FALSE = {"true": "True", "false": "False"}


@dataclass(frozen=True)
class IngestError:
    kind: IngestErrorKind
    detail: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"


def extract_json(text: str, expect: Literal["object", "array"] = "object") -> Union[Any, IngestError]:
    """Pull the JSON payload out of ``text``.

    Code fences are dropped, then the slice between the first opening and the
    last closing character of the expected shape is parsed.
    """
    opener, closer = ("{", "}") if expect == "object" else ("[", "]")
    cleaned = _FENCE_PATTERN.sub("", text or "")
    start = cleaned.find(opener)
    end = cleaned.rfind(closer)
    if start == -1 or end == -1 or end <= start:
        return IngestError("no-json", f"no {expect} found in response")
    try:
        return json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        return IngestError("malformed-json", str(exc))


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _position(raw: Any) -> Optional[Position]:
    if not isinstance(raw, dict):
        return None
    x = _number(raw.get("x"))
    y = _number(raw.get("y"))
    if x is None or y is None:
        return None
    return Position(x, y)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _label(value: Any, verbatim: bool) -> str:
    if verbatim and isinstance(value, str):
        return value
    return _text(value) or _DEFAULT_LABEL


def _category(value: Any) -> str:
    if isinstance(value, str) and value in NODE_CATEGORIES:
        return value
    return _DEFAULT_CATEGORY


def _node_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return _text(value)


def _edges(raw_edges: list[Any]) -> Union[list[GraphEdge], IngestError]:
    edges: list[GraphEdge] = []
    for index, raw in enumerate(raw_edges):
        if not isinstance(raw, dict):
            return IngestError("schema-invalid", f"edge {index} is not an object")
        source = _node_id(raw.get("source"))
        target = _node_id(raw.get("target"))
        if source is None or target is None:
            return IngestError("schema-invalid", f"edge {index} needs source and target")
        edge_id = _node_id(raw.get("id")) or f"e{source}-{target}"
        label = raw.get("label")
        edges.append(
            GraphEdge(
                id=edge_id,
                source=source,
                target=target,
                label=label if isinstance(label, str) else None,
            )
        )
    return edges


def _node_lists(raw: Any) -> Union[tuple[list[Any], list[Any]], IngestError]:
    if not isinstance(raw, dict):
        return IngestError("schema-invalid", "expected an object with nodes and edges")
    nodes = raw.get("nodes")
    edges = raw.get("edges")
    if not isinstance(nodes, list) or not isinstance(edges, list):
        return IngestError("schema-invalid", "nodes and edges must both be arrays")
    return nodes, edges


def flow_from_dict(
    raw: Any, *, require_nodes: bool = True, from_export: bool = False
) -> Union[MindMapFlow, IngestError]:
    """Build a flow from decoded JSON.

    ``from_export`` keeps collapse flags and labels exactly as saved; model
    output never gets to collapse nodes.
    """
    lists = _node_lists(raw)
    if isinstance(lists, IngestError):
        return lists
    raw_nodes, raw_edges = lists
    if require_nodes and not raw_nodes:
        return IngestError("schema-invalid", "nodes must not be empty")

    nodes: list[GraphNode] = []
    for index, item in enumerate(raw_nodes):
        if not isinstance(item, dict):
            return IngestError("schema-invalid", f"node {index} is not an object")
        data = item.get("data") if isinstance(item.get("data"), dict) else {}
        details = data.get("details")
        nodes.append(
            GraphNode(
                id=_node_id(item.get("id")) or f"node-{index}",
                label=_label(data.get("label"), from_export),
                category=_category(data.get("type")),
                details=details if isinstance(details, str) and details else None,
                is_collapsed=from_export and data.get("isCollapsed") is True,
                position=_position(item.get("position")) or Position(index * 200, index * 100),
            )
        )

    edges = _edges(raw_edges)
    if isinstance(edges, IngestError):
        return edges
    return MindMapFlow(nodes=nodes, edges=edges)


def validate_mind_map_flow(raw: Any) -> Union[MindMapFlow, IngestError]:
    """Normalize a generated mind map.

    Missing ids, labels, categories and positions are synthesized. Edges that
    point at unknown nodes are kept; the graph store filters them out when it
    projects the visible subgraph.
    """
    return flow_from_dict(raw)


def validate_expansion(
    raw: Any,
    parent_position: Position,
    parent_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> Union[Expansion, IngestError]:
    lists = _node_lists(raw)
    if isinstance(lists, IngestError):
        return lists
    raw_nodes, raw_edges = lists
    jitter = rng or random

    nodes: list[GraphNode] = []
    for index, item in enumerate(raw_nodes):
        if not isinstance(item, dict):
            return IngestError("schema-invalid", f"node {index} is not an object")
        node_id = _node_id(item.get("id"))
        if node_id is None:
            return IngestError("schema-invalid", f"node {index} has no id")
        if parent_id is not None and node_id == parent_id:
            return IngestError("schema-invalid", f"expansion repeats the parent node {parent_id!r}")
        data = item.get("data") if isinstance(item.get("data"), dict) else {}
        details = data.get("details")
        position = _position(item.get("position"))
        if position is None:
            position = Position(parent_position.x, parent_position.y + 100 + jitter.uniform(0, 50))
        nodes.append(
            GraphNode(
                id=node_id,
                label=_text(data.get("label")) or _EXPANSION_LABEL,
                category=_category(data.get("type")),
                details=details if isinstance(details, str) and details else None,
                is_collapsed=False,
                position=position,
            )
        )

    edges = _edges(raw_edges)
    if isinstance(edges, IngestError):
        return edges
    return Expansion(new_nodes=nodes, new_edges=edges)


def validate_quiz(raw: Any) -> Union[list[QuizQuestion], IngestError]:
    if not isinstance(raw, list):
        return IngestError("schema-invalid", "quiz must be an array")
    if not raw:
        return IngestError("schema-invalid", "quiz has no questions")
    questions: list[QuizQuestion] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            return IngestError("schema-invalid", f"question {index} is not an object")
        question = _text(item.get("question"))
        kind = item.get("type")
        answer = _text(item.get("correctAnswer"))
        if question is None or answer is None or kind not in _QUESTION_TYPES:
            return IngestError("schema-invalid", f"question {index} is missing required fields")
        if kind == "true-false":
            answer = _TRUE_FALSE.get(answer.strip().lower())
            if answer is None:
                return IngestError("schema-invalid", f"question {index} needs a True or False answer")
        raw_options = item.get("options")
        options = [str(option) for option in raw_options] if isinstance(raw_options, list) else []
        if kind == "multiple-choice" and (not isinstance(raw_options, list) or len(options) < 2):
            return IngestError("schema-invalid", f"question {index} needs at least two options")
        explanation = item.get("explanation")
        questions.append(
            QuizQuestion(
                question=question,
                type=kind,
                correct_answer=answer,
                options=options,
                explanation=explanation if isinstance(explanation, str) and explanation else None,
            )
        )
    return questions


def validate_summary(text: Optional[str]) -> Union[str, IngestError]:
    cleaned = (text or "").strip()
    if not cleaned:
        return IngestError("schema-invalid", "empty summary")
    return cleaned
