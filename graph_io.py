import json
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

from ingest import IngestError, flow_from_dict
from node_models import GraphEdge, GraphNode, MindMapFlow

MAX_GRAPH_FILE_BYTES = 10 * 1024 * 1024
MAX_TEXT_FILE_BYTES = 50 * 1024 * 1024
MIN_TEXT_LENGTH = 10
TEXT_SUFFIXES = (".txt", ".md", ".markdown")


def _node_to_dict(node: GraphNode) -> dict[str, Any]:
    data: dict[str, Any] = {"label": node.label, "type": node.category, "isCollapsed": node.is_collapsed}
    if node.details:
        data["details"] = node.details
    return {
        "id": node.id,
        "type": "custom",
        "position": {"x": node.position.x, "y": node.position.y},
        "data": data,
    }


def _edge_to_dict(edge: GraphEdge) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": edge.id, "source": edge.source, "target": edge.target}
    if edge.label is not None:
        payload["label"] = edge.label
    return payload


def to_json(nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> str:
    """Serialize a graph as ``{"nodes": [...], "edges": [...]}``."""
    flow = {
        "nodes": [_node_to_dict(node) for node in nodes],
        "edges": [_edge_to_dict(edge) for edge in edges],
    }
    return json.dumps(flow, indent=2, ensure_ascii=False)


def from_json(text: str) -> Union[MindMapFlow, IngestError]:
    """Parse an exported graph; collapse flags are kept, other gaps defaulted."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        return IngestError("malformed-json", str(exc))
    return flow_from_dict(raw, require_nodes=False, from_export=True)


def save_graph(path: Path, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> Path:
    node_list = list(nodes)
    if not node_list:
        raise ValueError("Cannot export an empty mind map.")
    target = Path(path).expanduser()
    target.write_text(to_json(node_list, edges) + "\n", encoding="utf-8")
    return target


def load_graph(path: Path) -> Union[MindMapFlow, IngestError]:
    target = Path(path).expanduser()
    if target.suffix.lower() != ".json":
        raise ValueError("Invalid file type. Please choose a .json file.")
    if target.stat().st_size > MAX_GRAPH_FILE_BYTES:
        raise ValueError("File is too large (max 10MB).")
    return from_json(target.read_text(encoding="utf-8"))


def read_text_source(path: Path) -> str:
    """Read a .txt or Markdown file that will be turned into a mind map."""
    target = Path(path).expanduser()
    if target.suffix.lower() not in TEXT_SUFFIXES:
        raise ValueError("Invalid file type. Please choose a .txt or .md file.")
    if target.stat().st_size > MAX_TEXT_FILE_BYTES:
        raise ValueError("File is too large (max 50MB).")
    text = target.read_text(encoding="utf-8")
    if not text.strip():
        raise ValueError(f"Could not extract text from {target.name}. The file appears to be empty.")
    if len(text) < MIN_TEXT_LENGTH:
        raise ValueError(f"{target.name} contains very little content. Please ensure the file has meaningful text.")
    return text


def _outline_roots(nodes: List[GraphNode], edges: List[GraphEdge]) -> List[str]:
    known = {node.id for node in nodes}
    has_parent = {edge.target for edge in edges if edge.source in known and edge.target in known}
    return [node.id for node in nodes if node.id not in has_parent]


def to_markdown(nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> str:
    """Render the graph as a Markdown outline.

    - Each root (a node without a known parent) starts a level-1 heading.
    - A level whose siblings all are leaves becomes a bullet list; otherwise
      every sibling is a heading one level deeper.
    - ``details`` follow their node as a plain paragraph.
    - A node reachable from several parents is written once, under the first.
    """
    node_list = list(nodes)
    edge_list = list(edges)
    if not node_list:
        raise ValueError("Cannot export an empty mind map.")
    by_id = {node.id: node for node in node_list}
    children: dict[str, list[str]] = {}
    for edge in edge_list:
        if edge.source in by_id and edge.target in by_id:
            children.setdefault(edge.source, []).append(edge.target)

    lines: List[str] = []
    written: set[str] = set()

    def append_blank() -> None:
        if lines and lines[-1] != "":
            lines.append("")

    def emit_body(body: Optional[str], indent: str = "") -> None:
        if not body:
            return
        for raw in body.splitlines():
            lines.append(f"{indent}{raw}".rstrip() if raw.strip() else "")

    def pending(node_id: str) -> list[str]:
        return [child for child in children.get(node_id, []) if child not in written]

    def write_heading(node: GraphNode, depth: int) -> None:
        append_blank()
        lines.append(f"{'#' * min(depth + 1, 6)} {node.label}".rstrip())
        if node.details:
            lines.append("")
            emit_body(node.details)

    def write_list_item(node: GraphNode) -> None:
        lines.append(f"  * {node.label}".rstrip())
        emit_body(node.details, indent="    ")

    def write_children(parent_id: str, depth: int) -> None:
        kids = pending(parent_id)
        if not kids:
            return
        written.update(kids)
        if any(pending(kid) for kid in kids):
            for kid in kids:
                write_heading(by_id[kid], depth)
                write_children(kid, depth + 1)
        else:
            append_blank()
            for kid in kids:
                write_list_item(by_id[kid])

    roots = _outline_roots(node_list, edge_list)
    # Pure cycles have no parentless node; start from the first remaining one.
    order = roots + [node.id for node in node_list if node.id not in roots]
    for root_id in order:
        if root_id in written:
            continue
        written.add(root_id)
        write_heading(by_id[root_id], 0)
        write_children(root_id, 1)

    while lines and lines[0] == "":
        lines.pop(0)
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines) + "\n"
