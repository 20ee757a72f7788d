"""Consolidation sweep: the periodic batch job that maintains the graph.

One sweep runs these phases in order:

1. entity extraction for pending memories (bounded worker pool)
2. strength decay / strengthening
3. embedding backfill for memories without a vector
4. SIMILAR edge discovery and reinforcement
5. SIMILAR edge decay and pruning

A row in ``consolidation_sessions`` marks the sweep in progress and is always
closed as ``completed`` or ``failed``; a failed sweep re-raises and can
simply be run again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from . import metrics
from .config import Config, load_config
from .edges import SimilarityEdgeBuilder
from .embeddings import EmbeddingError
from .entities import KnowledgeGraph
from .storage import MemoryStorage
from .strength import StrengthEngine

logger = logging.getLogger(__name__)


class SweepInProgressError(RuntimeError):
    """Raised when a sweep is requested while another one holds the lock."""


@dataclass
class SweepStats:
    session_id: str
    started_at: float
    finished_at: Optional[float] = None
    duration_seconds: float = 0.0
    # extraction
    memories_extracted: int = 0
    entities_created: int = 0
    entities_touched: int = 0
    mentions_created: int = 0
    # strength
    memories_processed: int = 0
    memories_decayed: int = 0
    memories_strengthened: int = 0
    # embeddings
    vectors_backfilled: int = 0
    vector_failures: int = 0
    # edges
    edges_created: int = 0
    edges_reinforced: int = 0
    edges_decayed: int = 0
    edges_pruned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def counts(self) -> Dict[str, int]:
        """Per-kind item counters for the metrics collector."""
        return {
            "memories_extracted": self.memories_extracted,
            "memories_decayed": self.memories_decayed,
            "memories_strengthened": self.memories_strengthened,
            "vectors_backfilled": self.vectors_backfilled,
            "edges_created": self.edges_created,
            "edges_reinforced": self.edges_reinforced,
            "edges_pruned": self.edges_pruned,
            "entities_created": self.entities_created,
            "entities_touched": self.entities_touched,
            "mentions_created": self.mentions_created,
        }


class ConsolidationOrchestrator:
    """Runs consolidation sweeps, one at a time."""

    def __init__(
        self,
        storage: MemoryStorage,
        knowledge_graph: Optional[KnowledgeGraph] = None,
        embedder: Any = None,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.config = config or load_config()
        self.knowledge_graph = knowledge_graph or KnowledgeGraph(storage, config=self.config)
        self.embedder = embedder
        self.strength = StrengthEngine(storage, self.config)
        self.edges = SimilarityEdgeBuilder(storage, self.config)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def run_sweep(self, now: Optional[float] = None) -> SweepStats:
        if self._lock.locked():
            raise SweepInProgressError("a consolidation sweep is already running in this process")

        async with self._lock:
            started = now if now is not None else time.time()
            session_id = self.storage.begin_session(
                self.config.sweep_stale_after_seconds, now=started
            )
            if session_id is None:
                raise SweepInProgressError("another consolidation sweep is in progress")

            logger.info("Consolidation sweep %s started", session_id)
            stats = SweepStats(session_id=session_id, started_at=started)
            clock = time.monotonic()
            try:
                await self._extract_pending(stats, started)

                strength = self.strength.run(now=started)
                stats.memories_processed = strength.processed
                stats.memories_decayed = strength.decayed
                stats.memories_strengthened = strength.strengthened

                await self._backfill_vectors(stats)

                # edges rediscovered now carry last_reinforced_at == started,
                # so the decay pass below only touches edges missed this cycle
                built = self.edges.build(now=started)
                stats.edges_created = built.created
                stats.edges_reinforced = built.reinforced

                decayed = self.edges.decay(cutoff=started)
                stats.edges_decayed = decayed.decayed
                stats.edges_pruned = decayed.pruned
            except BaseException as exc:
                stats.duration_seconds = time.monotonic() - clock
                stats.finished_at = started + stats.duration_seconds
                logger.exception("Consolidation sweep %s failed", session_id)
                self.storage.finish_session(
                    session_id, "failed", stats.to_dict(), error=f"{type(exc).__name__}: {exc}"
                )
                metrics.record_sweep("failed", stats.duration_seconds, stats.counts())
                raise

            stats.duration_seconds = time.monotonic() - clock
            stats.finished_at = started + stats.duration_seconds
            self.storage.finish_session(session_id, "completed", stats.to_dict())
            metrics.record_sweep("completed", stats.duration_seconds, stats.counts())
            self._publish_graph_size()

            logger.info(
                "Consolidation sweep %s completed in %.2fs: %d extracted, "
                "%d decayed, %d strengthened, %d edges created, %d reinforced, %d pruned",
                session_id, stats.duration_seconds, stats.memories_extracted,
                stats.memories_decayed, stats.memories_strengthened,
                stats.edges_created, stats.edges_reinforced, stats.edges_pruned,
            )
            return stats

    async def _extract_pending(self, stats: SweepStats, now: float) -> None:
        semaphore = asyncio.Semaphore(max(1, self.config.sweep_workers))
        touched: set = set()

        async def _one(memory: Dict[str, Any]) -> None:
            async with semaphore:
                result = await self.knowledge_graph.extract_and_store(
                    memory["id"], memory["text"], now=now
                )
                self.storage.mark_processed(memory["id"], now=now)
            stats.memories_extracted += 1
            stats.entities_created += result.entities_created
            stats.mentions_created += result.mentions_created
            touched.update(e.id for e in result.entities)

        while True:
            batch = self.storage.pending_memories(self.config.sweep_batch_size)
            if not batch:
                break
            outcomes = await asyncio.gather(*(_one(m) for m in batch), return_exceptions=True)
            errors: List[BaseException] = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                raise errors[0]

        stats.entities_touched = len(touched)
        logger.info(
            "Extraction pass: %d memories, %d new entities, %d entities touched, %d new mentions",
            stats.memories_extracted, stats.entities_created,
            stats.entities_touched, stats.mentions_created,
        )

    async def _backfill_vectors(self, stats: SweepStats) -> None:
        if self.embedder is None:
            return
        rows = self.storage.memories_without_vectors(self.config.sweep_batch_size)
        if not rows:
            return
        try:
            vectors = await self.embedder.embed_batch([r["text"] for r in rows])
        except EmbeddingError as exc:
            # edges for these memories wait for the next sweep
            stats.vector_failures = len(rows)
            logger.warning("Embedding backfill skipped for %d memories: %s", len(rows), exc)
            return
        for row, vector in zip(rows, vectors):
            if self.storage.set_memory_vector(row["id"], vector):
                stats.vectors_backfilled += 1
        logger.info("Embedding backfill: %d vectors stored", stats.vectors_backfilled)

    def _publish_graph_size(self) -> None:
        s = self.storage.stats(self.config.min_strength)
        metrics.set_graph_size({
            "memories": s["total_memories"],
            "entities": s["entities"],
            "mentions": s["mentions"],
            "edges": s["edges"],
        })

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Run a sweep every *interval_seconds* until *stop_event* is set."""
        interval = interval_seconds if interval_seconds is not None else self.config.sweep_interval_seconds
        stop = stop_event or asyncio.Event()
        logger.info("Consolidation scheduler started (interval %.0fs)", interval)

        while not stop.is_set():
            try:
                await self.run_sweep()
            except SweepInProgressError as exc:
                logger.info("Sweep skipped: %s", exc)
            except Exception:
                # already recorded on the session; retry next tick
                logger.error("Scheduled sweep failed, retrying in %.0fs", interval)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Consolidation scheduler stopped")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def consolidation_stats(self, session_limit: int = 5) -> Dict[str, Any]:
        s = self.storage.stats(self.config.min_strength)
        edge_stats = self.storage.edge_stats()
        return {
            "total_edges": edge_stats["total"],
            "edges_by_type": edge_stats["by_type"],
            "average_edge_weight": round(edge_stats["average_weight"], 4),
            "active_memories": s["active_memories"],
            "dormant_memories": s["dormant_memories"],
            "pending_memories": s["pending_memories"],
            "recent_sessions": self.storage.recent_sessions(session_limit),
        }
