"""Tests for the consolidation sweep orchestrator."""

import asyncio

import pytest

from memory_graph import metrics
from memory_graph.consolidation import ConsolidationOrchestrator, SweepInProgressError

from conftest import FakeEmbedder

NOW = 1_700_000_000.0

FIRST = "I met with Sarah Chen about the Nebula project yesterday"
SECOND = "Sarah Chen sent the Nebula project plan"


@pytest.fixture
def embedder():
    return FakeEmbedder(vectors={
        FIRST: [1.0, 0.0, 0.0, 0.0],
        SECOND: [0.9, 0.1, 0.0, 0.0],
    })


@pytest.fixture
def orchestrator(tmp_storage, knowledge_graph, embedder, cfg):
    return ConsolidationOrchestrator(
        tmp_storage, knowledge_graph=knowledge_graph, embedder=embedder, config=cfg
    )


@pytest.fixture
def two_memories(add_memory):
    return add_memory(FIRST), add_memory(SECOND)


@pytest.mark.asyncio
class TestSweep:
    async def test_full_sweep(self, orchestrator, tmp_storage, two_memories):
        stats = await orchestrator.run_sweep(now=NOW)

        assert stats.memories_extracted == 2
        assert stats.entities_created == 2
        assert stats.entities_touched == 2
        assert stats.mentions_created == 4
        assert stats.memories_processed == 2
        assert stats.memories_decayed == 2
        assert stats.vectors_backfilled == 2
        assert stats.edges_created == 2
        assert stats.edges_pruned == 0

        session = tmp_storage.get_session(stats.session_id)
        assert session["status"] == "completed"
        assert session["stats"]["edges_created"] == 2
        assert tmp_storage.pending_memories() == []

    async def test_metrics_recorded(self, orchestrator, two_memories):
        await orchestrator.run_sweep(now=NOW)
        snap = metrics.collector.snapshot()
        assert snap["sweeps_total"] == {"completed": 1}
        assert snap["sweep_items_total"]["memories_extracted"] == 2
        assert snap["graph_size"]["memories"] == 2
        text = metrics.render_prometheus_metrics()
        assert 'memory_graph_sweeps_total{status="completed"} 1' in text

    async def test_second_sweep_reinforces(self, orchestrator, tmp_storage, two_memories):
        await orchestrator.run_sweep(now=NOW)
        stats = await orchestrator.run_sweep(now=NOW + 60)

        assert stats.memories_extracted == 0
        assert stats.vectors_backfilled == 0
        assert stats.edges_created == 0
        assert stats.edges_reinforced == 2
        assert stats.edges_decayed == 0
        a, b = two_memories
        assert tmp_storage.get_edge(a, b)["reinforcement_count"] == 1

    async def test_entities_shared_across_concurrent_extraction(
        self, orchestrator, entity_store, two_memories
    ):
        await orchestrator.run_sweep(now=NOW)
        sarah = entity_store.search("Sarah Chen", entity_type="person")
        assert len(sarah) == 1
        assert sarah[0].mention_count == 2

    async def test_embedding_failure_is_not_fatal(self, orchestrator, embedder, tmp_storage, two_memories):
        embedder.fail = True
        stats = await orchestrator.run_sweep(now=NOW)

        assert stats.vector_failures == 2
        assert stats.vectors_backfilled == 0
        assert stats.edges_created == 0
        assert tmp_storage.get_session(stats.session_id)["status"] == "completed"

    async def test_without_embedder(self, tmp_storage, knowledge_graph, cfg, two_memories):
        orchestrator = ConsolidationOrchestrator(tmp_storage, knowledge_graph, config=cfg)
        stats = await orchestrator.run_sweep(now=NOW)
        assert stats.memories_extracted == 2
        assert stats.vectors_backfilled == 0


@pytest.mark.asyncio
class TestFailureAndLocking:
    async def test_failed_phase_closes_session(self, orchestrator, tmp_storage, monkeypatch, two_memories):
        def boom(now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(orchestrator.strength, "run", boom)
        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.run_sweep(now=NOW)

        session = tmp_storage.recent_sessions(1)[0]
        assert session["status"] == "failed"
        assert session["error"] == "RuntimeError: boom"
        assert metrics.collector.snapshot()["sweeps_total"] == {"failed": 1}

        monkeypatch.undo()
        stats = await orchestrator.run_sweep(now=NOW + 60)
        assert tmp_storage.get_session(stats.session_id)["status"] == "completed"

    async def test_session_lock_held_elsewhere(self, orchestrator, tmp_storage, cfg):
        held = tmp_storage.begin_session(cfg.sweep_stale_after_seconds, now=NOW)
        with pytest.raises(SweepInProgressError):
            await orchestrator.run_sweep(now=NOW + 10)
        assert tmp_storage.get_session(held)["status"] == "in_progress"

    async def test_stale_session_is_recovered(self, orchestrator, tmp_storage, cfg):
        stale = tmp_storage.begin_session(
            cfg.sweep_stale_after_seconds, now=NOW - cfg.sweep_stale_after_seconds - 1
        )
        stats = await orchestrator.run_sweep(now=NOW)

        old = tmp_storage.get_session(stale)
        assert old["status"] == "failed"
        assert old["error"] == "stale session"
        assert tmp_storage.get_session(stats.session_id)["status"] == "completed"

    async def test_concurrent_sweeps_in_one_process(self, orchestrator, two_memories):
        outcomes = await asyncio.gather(
            orchestrator.run_sweep(now=NOW),
            orchestrator.run_sweep(now=NOW),
            return_exceptions=True,
        )
        assert sum(isinstance(o, SweepInProgressError) for o in outcomes) == 1
        assert sum(not isinstance(o, BaseException) for o in outcomes) == 1


@pytest.mark.asyncio
class TestScheduling:
    async def test_run_forever_stops(self, orchestrator, tmp_storage, two_memories):
        stop = asyncio.Event()
        task = asyncio.create_task(orchestrator.run_forever(interval_seconds=0.01, stop_event=stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        sessions = tmp_storage.recent_sessions(50)
        assert sessions
        assert all(s["status"] == "completed" for s in sessions)

    async def test_run_forever_survives_failures(self, orchestrator, tmp_storage, monkeypatch):
        def boom(now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(orchestrator.strength, "run", boom)
        stop = asyncio.Event()
        task = asyncio.create_task(orchestrator.run_forever(interval_seconds=0.01, stop_event=stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert all(s["status"] == "failed" for s in tmp_storage.recent_sessions(50))


@pytest.mark.asyncio
async def test_consolidation_stats(orchestrator, two_memories):
    await orchestrator.run_sweep(now=NOW)
    report = orchestrator.consolidation_stats()

    assert report["total_edges"] == 2
    assert report["edges_by_type"] == {"SIMILAR": 2}
    assert report["average_edge_weight"] == 1.0
    assert report["pending_memories"] == 0
    assert report["active_memories"] == 2
    assert [s["status"] for s in report["recent_sessions"]] == ["completed"]
