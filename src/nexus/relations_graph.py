"""Object graph derived from mention markers and reference properties.

Links are never persisted. The graph is rebuilt from the current objects
on every read, so it is always consistent with their content.
"""

from __future__ import annotations

from typing import Iterable, Literal

from .errors import ObjectNotFoundError
from .models import GraphEdge, GraphNode, GraphQueryResult, NexusObject, ObjectGraph, REFERENCE_TYPES
from .parser import iter_mention_tags, parse_html

EdgeOrigin = Literal["mention", "link", "property"]


def build_object_graph(objects: Iterable[NexusObject]) -> ObjectGraph:
    """Build nodes 1:1 from objects and edges from every relationship marker.

    Edges whose target is not a known object are dropped. An object that
    mentions itself gets a self-edge.
    """
    objects = list(objects)
    nodes: dict[str, GraphNode] = {
        obj.id: GraphNode(id=obj.id, title=obj.title, type=obj.type, tags=list(obj.tags))
        for obj in objects
    }

    edges: list[GraphEdge] = []
    edge_keys: set[tuple] = set()

    def add_edge(source: str, target: str, origin: EdgeOrigin, property_key: str | None = None) -> None:
        if target not in nodes:
            return
        key = (source, target, origin, property_key)
        if key in edge_keys:
            return
        edge_keys.add(key)
        edges.append(GraphEdge(source=source, target=target, origin=origin, property_key=property_key))

    for obj in objects:
        # In-content markers (current and legacy attribute)
        if obj.content:
            for _, target, kind in iter_mention_tags(parse_html(obj.content)):
                add_edge(obj.id, target, kind)

        # Reference-typed metadata properties
        for prop in obj.metadata:
            if prop.type not in REFERENCE_TYPES:
                continue
            for target in prop.values():
                add_edge(obj.id, target, "property", prop.key)

    return ObjectGraph(nodes=nodes, edges=edges)


def query_object_graph(
    graph: ObjectGraph,
    root: str,
    *,
    depth: int = 1,
    direction: Literal["outgoing", "incoming", "both"] = "both",
    origin: set[EdgeOrigin] | None = None,
) -> GraphQueryResult:
    """Breadth-first neighbourhood of root up to depth hops.

    Raises:
        ObjectNotFoundError: If root is not a node of the graph.
    """
    if root not in graph.nodes:
        raise ObjectNotFoundError(f"Object not found in graph: {root}", {"id": root})

    outgoing: dict[str, list[GraphEdge]] = {}
    incoming: dict[str, list[GraphEdge]] = {}
    for edge in graph.edges:
        outgoing.setdefault(edge.source, []).append(edge)
        incoming.setdefault(edge.target, []).append(edge)

    visited_nodes: list[str] = [root]
    seen: set[str] = {root}
    collected_edges: list[GraphEdge] = []
    collected_edge_keys: set[tuple] = set()
    queue: list[tuple[str, int]] = [(root, 0)]

    while queue:
        node, current_depth = queue.pop(0)
        if current_depth >= depth:
            continue

        neighbors: list[tuple[str, GraphEdge]] = []
        if direction in ("outgoing", "both"):
            for edge in outgoing.get(node, []):
                if not origin or edge.origin in origin:
                    neighbors.append((edge.target, edge))
        if direction in ("incoming", "both"):
            for edge in incoming.get(node, []):
                if not origin or edge.origin in origin:
                    neighbors.append((edge.source, edge))

        for neighbor, edge in neighbors:
            edge_key = (edge.source, edge.target, edge.origin, edge.property_key)
            if edge_key not in collected_edge_keys:
                collected_edge_keys.add(edge_key)
                collected_edges.append(edge)
            if neighbor not in seen:
                seen.add(neighbor)
                visited_nodes.append(neighbor)
                queue.append((neighbor, current_depth + 1))

    nodes = [graph.nodes[node] for node in visited_nodes]
    return GraphQueryResult(root=root, depth=depth, nodes=nodes, edges=collected_edges)
