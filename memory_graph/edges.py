"""Memory-to-memory edges.

SIMILAR edges are discovered from embedding neighbours and reinforced each
time a cycle rediscovers them; edges that go unreinforced lose weight and
are deleted once they reach the floor. Typed edges (FOLLOWS, CONTRADICTS,
ELABORATES, RESOLVES) are created explicitly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import Config, load_config
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class EdgeType:
    SIMILAR = "SIMILAR"
    FOLLOWS = "FOLLOWS"
    CONTRADICTS = "CONTRADICTS"
    ELABORATES = "ELABORATES"
    RESOLVES = "RESOLVES"

    ALL = (SIMILAR, FOLLOWS, CONTRADICTS, ELABORATES, RESOLVES)


@dataclass
class EdgeBuildResult:
    created: int = 0
    reinforced: int = 0
    skipped: int = 0


@dataclass
class EdgeDecayResult:
    decayed: int = 0
    pruned: int = 0


class SimilarityEdgeBuilder:
    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or load_config()

    def build(self, now: Optional[float] = None) -> EdgeBuildResult:
        """Create or reinforce SIMILAR edges for memories below the edge cap.

        Edges are directed source -> neighbour; readers treat them as
        undirected.
        """
        ts = now if now is not None else time.time()
        cfg = self.config
        result = EdgeBuildResult()

        sources = self.storage.memories_for_edge_building(
            EdgeType.SIMILAR, cfg.max_edges_per_memory
        )
        for source in sources:
            vector = self.storage.get_memory_vector(source["id"])
            if vector is None:
                result.skipped += 1
                continue

            neighbours = self.storage.nearest_memories(
                vector,
                limit=cfg.max_edges_per_memory,
                exclude_id=source["id"],
                min_similarity=cfg.similarity_threshold,
            )
            for hit in neighbours:
                created = self.storage.upsert_similar_edge(
                    source["id"], hit["id"], hit["similarity"],
                    reinforce_step=cfg.edge_reinforce_step, now=ts,
                )
                if created:
                    result.created += 1
                else:
                    result.reinforced += 1

        logger.info(
            "Edge build: %d sources, %d created, %d reinforced, %d skipped",
            len(sources), result.created, result.reinforced, result.skipped,
        )
        return result

    def decay(self, cutoff: float) -> EdgeDecayResult:
        """Decay SIMILAR edges last reinforced before *cutoff*, then prune the floor."""
        cfg = self.config
        decayed = self.storage.decay_edges(
            EdgeType.SIMILAR, cfg.edge_decay_rate, cfg.min_edge_weight, cutoff
        )
        pruned = self.storage.prune_edges(EdgeType.SIMILAR, cfg.min_edge_weight)
        logger.info("Edge decay: %d decayed, %d pruned", decayed, pruned)
        return EdgeDecayResult(decayed=decayed, pruned=pruned)

    def create_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: str,
        weight: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Create a typed edge; an existing one keeps the higher weight."""
        if edge_type not in EdgeType.ALL:
            raise ValueError(f"unknown edge type: {edge_type!r}")
        if source_id == target_id:
            raise ValueError("an edge needs two different memories")
        if not 0.0 <= weight <= 1.0:
            raise ValueError("edge weight must be within [0, 1]")
        missing = {source_id, target_id} - set(self.storage.get_memories([source_id, target_id]))
        if missing:
            raise ValueError(f"unknown memory id(s): {', '.join(sorted(missing))}")
        return self.storage.upsert_edge(
            source_id, target_id, edge_type, weight=weight, metadata=metadata, now=now
        )

    def related_memories(
        self,
        memory_id: str,
        edge_type: Optional[str] = None,
        min_weight: float = 0.2,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Neighbouring memories, one entry per neighbour (strongest edge wins)."""
        edge_types = [edge_type] if edge_type else None
        best: Dict[str, Dict[str, Any]] = {}
        for edge in self.storage.edges_for_memory(memory_id, edge_types, min_weight):
            if edge["neighbor_id"] not in best:
                best[edge["neighbor_id"]] = edge

        ranked = list(best.values())[:limit]
        memories = self.storage.get_memories([e["neighbor_id"] for e in ranked])
        out = []
        for edge in ranked:
            memory = memories.get(edge["neighbor_id"])
            if memory is None:
                continue
            out.append({
                "id": memory["id"],
                "text": memory["text"],
                "salience_score": memory["salience_score"],
                "edge_type": edge["edge_type"],
                "weight": edge["weight"],
                "similarity": edge["similarity"],
            })
        return out

    def edge_stats(self) -> Dict[str, Any]:
        return self.storage.edge_stats()
