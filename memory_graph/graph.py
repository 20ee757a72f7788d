"""Read-only graph queries over entities, memories and edges.

Two graphs share the store:

* the entity graph, where two entities are adjacent when some memory
  mentions both (co-occurrence), and
* the memory graph, made of SIMILAR and typed memory edges, walked as
  undirected.

Every query takes an id plus bounded options and returns plain results;
unknown ids give empty or not-found results, malformed options raise
``ValueError``. Merged entity ids are redirected to their active target.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import Config, load_config
from .edges import EdgeType
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

MENTIONED_IN = "MENTIONED_IN"
CO_OCCURS = "CO_OCCURS"

MAX_MERGE_CHAIN = 16
EVIDENCE_PER_HOP = 5


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class GraphNode:
    id: str
    kind: str  # "entity" | "memory"
    label: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphEdge:
    source: str
    target: str
    type: str
    weight: float = 1.0


@dataclass
class Subgraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [asdict(n) for n in self.nodes],
            "edges": [asdict(e) for e in self.edges],
        }


@dataclass
class EntityPath:
    found: bool
    path: List[str] = field(default_factory=list)
    evidence: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def hops(self) -> int:
        return max(0, len(self.path) - 1)

    def to_dict(self) -> Dict[str, Any]:
        return {"found": self.found, "path": self.path, "hops": self.hops, "evidence": self.evidence}


@dataclass
class MemoryPath:
    found: bool
    path: List[str] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def hops(self) -> int:
        return max(0, len(self.path) - 1)

    def to_dict(self) -> Dict[str, Any]:
        return {"found": self.found, "path": self.path, "hops": self.hops, "edges": self.edges}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_positive(**values: int) -> None:
    for name, value in values.items():
        if value is None or int(value) < 1:
            raise ValueError(f"{name} must be a positive integer")


def bound_subgraph(
    focal_id: Optional[str],
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
    node_limit: int,
    edge_limit: int,
) -> Subgraph:
    """Cap a candidate node/edge set for display.

    *nodes* and *edges* must arrive in priority order. The focal node is
    always kept; any other node left without an edge into the kept set is
    dropped. Same input, same output.
    """
    seen = set()
    ordered: List[GraphNode] = []
    focal = [n for n in nodes if n.id == focal_id][:1]
    for node in focal + [n for n in nodes if n.id != focal_id]:
        if node.id not in seen:
            seen.add(node.id)
            ordered.append(node)
    kept = ordered[:max(node_limit, 1 if focal else 0)]
    kept_ids = {n.id for n in kept}

    kept_edges: List[GraphEdge] = []
    edge_keys = set()
    for edge in edges:
        if len(kept_edges) >= edge_limit:
            break
        key = (edge.source, edge.target, edge.type)
        if key in edge_keys or edge.source not in kept_ids or edge.target not in kept_ids:
            continue
        edge_keys.add(key)
        kept_edges.append(edge)

    linked = {e.source for e in kept_edges} | {e.target for e in kept_edges}
    final_nodes = [n for n in kept if n.id == focal_id or n.id in linked]
    return Subgraph(nodes=final_nodes, edges=kept_edges)


def _entity_node(row: Dict[str, Any]) -> GraphNode:
    return GraphNode(
        id=row["id"],
        kind="entity",
        label=row["name"],
        data={"type": row["entity_type"], "mention_count": row["mention_count"]},
    )


def _memory_node(row: Dict[str, Any]) -> GraphNode:
    text = row["text"]
    return GraphNode(
        id=row["id"],
        kind="memory",
        label=text if len(text) <= 80 else text[:77] + "...",
        data={
            "salience_score": row["salience_score"],
            "current_strength": row["current_strength"],
            "created_at": row["created_at"],
        },
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class GraphQueryEngine:
    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or load_config()

    def active_entity_id(self, entity_id: str) -> Optional[str]:
        """Follow merge pointers; None for unknown ids."""
        if not entity_id:
            return None
        current = entity_id
        for _ in range(MAX_MERGE_CHAIN):
            row = self.storage.get_entity(current)
            if row is None:
                return None
            if not row["is_merged"]:
                return current
            current = row["merged_into_id"]
        logger.error("Merge chain too long starting at %s", entity_id)
        return None

    # -- entity neighbourhood --------------------------------------------

    def find_entity_neighbors(
        self,
        entity_id: str,
        limit: int = 20,
        min_shared: int = 1,
        entity_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Co-occurring entities, most shared memories first."""
        _require_positive(limit=limit, min_shared=min_shared)
        eid = self.active_entity_id(entity_id)
        if eid is None:
            return []

        total = max(self.storage.entity_memory_count(eid), 1)
        out = []
        for row in self.storage.co_occurring_entities(eid, min_shared, entity_type, limit):
            out.append({
                "id": row["id"],
                "name": row["name"],
                "type": row["entity_type"],
                "mention_count": row["mention_count"],
                "shared_count": row["shared_count"],
                "shared_memory_ids": row["shared_memory_ids"],
                "connection_strength": round(min(1.0, row["shared_count"] / total), 4),
            })
        return out

    def find_shared_memories(
        self, entity_a: str, entity_b: str, limit: int = 20
    ) -> List[Dict[str, Any]]:
        _require_positive(limit=limit)
        a = self.active_entity_id(entity_a)
        b = self.active_entity_id(entity_b)
        if a is None or b is None:
            return []
        return self.storage.shared_memories(a, b, limit)

    # -- traversal ----------------------------------------------------------

    def traverse_entities(
        self,
        start_id: str,
        max_hops: int = 2,
        limit: int = 50,
        min_strength: float = 0.1,
    ) -> List[Dict[str, Any]]:
        """Entities reachable within *max_hops*, with a decaying path strength.

        A hop multiplies the strength by (shared memories / memories of the
        entity being expanded); hops after the first also apply
        ``traversal_hop_decay``. Each entity is reported once, at its
        shallowest depth, via its strongest path.
        """
        _require_positive(max_hops=max_hops, limit=limit)
        start = self.active_entity_id(start_id)
        if start is None:
            return []

        hop_decay = self.config.traversal_hop_decay
        visited = {start}
        frontier: List[Tuple[str, float, List[str]]] = [(start, 1.0, [start])]
        results: List[Dict[str, Any]] = []

        for hop in range(1, max_hops + 1):
            candidates: Dict[str, Tuple[float, List[str], Dict[str, Any]]] = {}
            for node_id, strength, path in frontier:
                own = max(self.storage.entity_memory_count(node_id), 1)
                for row in self.storage.co_occurring_entities(node_id):
                    if row["id"] in visited:
                        continue
                    score = strength * min(1.0, row["shared_count"] / own)
                    if hop > 1:
                        score *= hop_decay
                    if score < min_strength:
                        continue
                    prev = candidates.get(row["id"])
                    if prev is None or score > prev[0]:
                        candidates[row["id"]] = (score, path + [row["id"]], row)

            frontier = []
            for nid in sorted(candidates, key=lambda k: (-candidates[k][0], k)):
                score, path, row = candidates[nid]
                visited.add(nid)
                frontier.append((nid, score, path))
                results.append({
                    "id": nid,
                    "name": row["name"],
                    "type": row["entity_type"],
                    "hops": hop,
                    "strength": round(score, 4),
                    "path": path,
                })
            if not frontier:
                break

        results.sort(key=lambda r: (-r["strength"], r["hops"], r["id"]))
        return results[:limit]

    def traverse_memories(
        self,
        start_id: str,
        max_hops: int = 2,
        edge_types: Optional[Sequence[str]] = (EdgeType.SIMILAR,),
        min_weight: float = 0.3,
        limit: int = 30,
    ) -> List[Dict[str, Any]]:
        """Memories reachable over edges; path weight is the product of edge weights."""
        _require_positive(max_hops=max_hops, limit=limit)
        if self.storage.get_memory(start_id) is None:
            return []

        visited = {start_id}
        frontier: List[Tuple[str, float, List[str]]] = [(start_id, 1.0, [start_id])]
        found: List[Dict[str, Any]] = []

        for hop in range(1, max_hops + 1):
            candidates: Dict[str, Tuple[float, List[str], str]] = {}
            for node_id, weight, path in frontier:
                for edge in self.storage.edges_for_memory(node_id, edge_types, min_weight):
                    nid = edge["neighbor_id"]
                    if nid in visited:
                        continue
                    score = weight * float(edge["weight"])
                    prev = candidates.get(nid)
                    if prev is None or score > prev[0]:
                        candidates[nid] = (score, path + [nid], edge["edge_type"])

            frontier = []
            for nid in sorted(candidates, key=lambda k: (-candidates[k][0], k)):
                score, path, edge_type = candidates[nid]
                visited.add(nid)
                frontier.append((nid, score, path))
                found.append({
                    "id": nid, "hops": hop, "path_weight": round(score, 4),
                    "path": path, "edge_type": edge_type,
                })
            if not frontier:
                break

        found.sort(key=lambda r: (-r["path_weight"], r["hops"], r["id"]))
        found = found[:limit]
        memories = self.storage.get_memories([r["id"] for r in found])
        for r in found:
            memory = memories.get(r["id"])
            r["text"] = memory["text"] if memory else None
        return found

    # -- shortest paths -----------------------------------------------------

    def find_entity_path(self, start_id: str, end_id: str, max_hops: int = 4) -> EntityPath:
        """Breadth-first shortest co-occurrence path, with shared memories per hop."""
        _require_positive(max_hops=max_hops)
        start = self.active_entity_id(start_id)
        end = self.active_entity_id(end_id)
        if start is None or end is None:
            return EntityPath(found=False)
        if start == end:
            return EntityPath(found=True, path=[start])

        parents: Dict[str, Tuple[Optional[str], List[str]]] = {start: (None, [])}
        frontier = [start]
        for _ in range(max_hops):
            next_frontier: List[str] = []
            for node_id in frontier:
                for row in self.storage.co_occurring_entities(node_id):
                    nid = row["id"]
                    if nid in parents:
                        continue
                    parents[nid] = (node_id, row["shared_memory_ids"])
                    if nid == end:
                        return self._entity_path(parents, end)
                    next_frontier.append(nid)
            if not next_frontier:
                break
            frontier = next_frontier
        return EntityPath(found=False)

    @staticmethod
    def _entity_path(
        parents: Dict[str, Tuple[Optional[str], List[str]]], end: str
    ) -> EntityPath:
        path = [end]
        evidence: List[Dict[str, Any]] = []
        node = end
        while True:
            parent, shared = parents[node]
            if parent is None:
                break
            evidence.append({
                "from": parent,
                "to": node,
                "shared_count": len(shared),
                "shared_memory_ids": shared[:EVIDENCE_PER_HOP],
            })
            path.append(parent)
            node = parent
        path.reverse()
        evidence.reverse()
        return EntityPath(found=True, path=path, evidence=evidence)

    def find_memory_path(
        self,
        start_id: str,
        end_id: str,
        max_hops: int = 5,
        edge_types: Optional[Sequence[str]] = None,
    ) -> MemoryPath:
        _require_positive(max_hops=max_hops)
        known = self.storage.get_memories([start_id, end_id])
        if start_id not in known or end_id not in known:
            return MemoryPath(found=False)
        if start_id == end_id:
            return MemoryPath(found=True, path=[start_id])

        parents: Dict[str, Optional[Tuple[str, Dict[str, Any]]]] = {start_id: None}
        frontier = [start_id]
        for _ in range(max_hops):
            next_frontier: List[str] = []
            for node_id in frontier:
                for edge in self.storage.edges_for_memory(node_id, edge_types):
                    nid = edge["neighbor_id"]
                    if nid in parents:
                        continue
                    parents[nid] = (node_id, edge)
                    if nid == end_id:
                        return self._memory_path(parents, end_id)
                    next_frontier.append(nid)
            if not next_frontier:
                break
            frontier = next_frontier
        return MemoryPath(found=False)

    @staticmethod
    def _memory_path(
        parents: Dict[str, Optional[Tuple[str, Dict[str, Any]]]], end: str
    ) -> MemoryPath:
        path = [end]
        hops: List[Dict[str, Any]] = []
        node = end
        while parents[node] is not None:
            parent, edge = parents[node]  # type: ignore[misc]
            hops.append({
                "from": parent,
                "to": node,
                "type": edge["edge_type"],
                "weight": edge["weight"],
            })
            path.append(parent)
            node = parent
        path.reverse()
        hops.reverse()
        return MemoryPath(found=True, path=path, edges=hops)

    # -- subgraphs ------------------------------------------------------------

    def entity_subgraph(
        self,
        entity_id: str,
        memory_limit: int = 20,
        entity_limit: int = 10,
        include_edges: bool = True,
        edge_limit: int = 200,
    ) -> Subgraph:
        """An entity with its memories and co-occurring entities."""
        _require_positive(memory_limit=memory_limit, entity_limit=entity_limit, edge_limit=edge_limit)
        eid = self.active_entity_id(entity_id)
        if eid is None:
            return Subgraph()
        focal = self.storage.get_entity(eid)
        if focal is None:
            return Subgraph()

        memories = self.storage.entity_memories(eid, limit=memory_limit)
        memory_ids = {m["id"] for m in memories}
        neighbours = self.storage.co_occurring_entities(eid, limit=entity_limit)
        total = max(self.storage.entity_memory_count(eid), 1)

        nodes = [_entity_node(focal)]
        nodes += [_memory_node(m) for m in memories]
        nodes += [_entity_node(n) for n in neighbours]

        edges = [GraphEdge(eid, m["id"], MENTIONED_IN) for m in memories]
        for n in neighbours:
            edges.append(GraphEdge(eid, n["id"], CO_OCCURS, round(min(1.0, n["shared_count"] / total), 4)))
        for n in neighbours:
            for mid in n["shared_memory_ids"]:
                if mid in memory_ids:
                    edges.append(GraphEdge(n["id"], mid, MENTIONED_IN))
        if include_edges:
            edges += self._memory_edges(memory_ids)

        return bound_subgraph(eid, nodes, edges, 1 + memory_limit + entity_limit, edge_limit)

    def memory_subgraph(
        self,
        memory_id: str,
        max_hops: int = 1,
        include_entities: bool = True,
        node_limit: int = 50,
        edge_limit: int = 200,
    ) -> Subgraph:
        """A memory, its edge neighbourhood and (optionally) the entities they mention."""
        _require_positive(max_hops=max_hops, node_limit=node_limit, edge_limit=edge_limit)
        focal = self.storage.get_memory(memory_id)
        if focal is None:
            return Subgraph()

        order = [memory_id]
        seen = {memory_id}
        frontier = [memory_id]
        for _ in range(max_hops):
            next_frontier: List[str] = []
            for node_id in frontier:
                for edge in self.storage.edges_for_memory(node_id):
                    nid = edge["neighbor_id"]
                    if nid in seen or len(order) >= node_limit:
                        continue
                    seen.add(nid)
                    order.append(nid)
                    next_frontier.append(nid)
            frontier = next_frontier
            if not frontier:
                break

        memories = self.storage.get_memories(order)
        nodes = [_memory_node(memories[mid]) for mid in order if mid in memories]
        edges = self._memory_edges(order)

        if include_entities:
            mentions = self.storage.mentions_for_memories(order)
            entity_rows = self.storage.get_entities([m["entity_id"] for m in mentions])
            nodes += [_entity_node(entity_rows[eid]) for eid in sorted(entity_rows)]
            edges += [
                GraphEdge(m["entity_id"], m["memory_id"], MENTIONED_IN, float(m["mention_count"]))
                for m in mentions if m["entity_id"] in entity_rows
            ]

        return bound_subgraph(memory_id, nodes, edges, node_limit, edge_limit)

    def full_graph(
        self,
        node_limit: int = 100,
        entity_limit: int = 30,
        memory_limit: int = 70,
        min_salience: float = 0.0,
        entity_types: Optional[Sequence[str]] = None,
        include_edges: bool = True,
    ) -> Subgraph:
        """Capped overview: top entities by mentions and the memories linking them."""
        _require_positive(node_limit=node_limit, entity_limit=entity_limit, memory_limit=memory_limit)
        entities = self.storage.top_entities(entity_limit, entity_types)
        entity_ids = [e["id"] for e in entities]
        memories = self.storage.memories_for_entities(entity_ids, min_salience, memory_limit)
        memory_ids = [m["id"] for m in memories]

        wanted = set(entity_ids)
        nodes = [_entity_node(e) for e in entities] + [_memory_node(m) for m in memories]
        edges = [
            GraphEdge(m["entity_id"], m["memory_id"], MENTIONED_IN, float(m["mention_count"]))
            for m in self.storage.mentions_for_memories(memory_ids)
            if m["entity_id"] in wanted
        ]
        if include_edges:
            edges += self._memory_edges(memory_ids)

        return bound_subgraph(None, nodes, edges, node_limit, node_limit * 4)

    def _memory_edges(self, memory_ids: Iterable[str]) -> List[GraphEdge]:
        return [
            GraphEdge(e["source_memory_id"], e["target_memory_id"], e["edge_type"], float(e["weight"]))
            for e in self.storage.edges_among(list(memory_ids))
        ]

    # -- stats ----------------------------------------------------------------

    def graph_stats(self) -> Dict[str, Any]:
        stats = self.storage.stats(self.config.min_strength)
        edge_stats = self.storage.edge_stats()
        return {
            "memories": {
                "total": stats["total_memories"],
                "pending": stats["pending_memories"],
                "without_vectors": stats["vectorless_memories"],
                "active": stats["active_memories"],
                "dormant": stats["dormant_memories"],
            },
            "entities": {
                "active": stats["entities"],
                "merged": stats["merged_entities"],
                "by_type": self.storage.count_entities_by_type(),
            },
            "mentions": stats["mentions"],
            "edges": edge_stats,
        }
