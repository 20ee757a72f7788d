"""Tests for SIMILAR edge discovery, reinforcement, decay and typed edges."""

import pytest

from memory_graph.config import Config
from memory_graph.edges import EdgeType, SimilarityEdgeBuilder

NOW = 1_700_000_000.0

A_VEC = [1.0, 0.0, 0.0, 0.0]
B_VEC = [0.8, 0.6, 0.0, 0.0]     # cos(A, B) = 0.8
C_VEC = [0.5, 0.866, 0.0, 0.0]   # cos(A, C) = 0.5, cos(B, C) ~ 0.92
D_VEC = [0.0, 0.0, 0.0, 1.0]     # orthogonal to everything


@pytest.fixture
def builder(tmp_storage):
    return SimilarityEdgeBuilder(tmp_storage, Config())


@pytest.fixture
def trio(add_memory):
    return (
        add_memory("alpha", vector=A_VEC),
        add_memory("beta", vector=B_VEC),
        add_memory("gamma", vector=C_VEC),
    )


def _set_weight(storage, source, target, weight):
    conn = storage._get_conn()
    conn.execute(
        "UPDATE memory_edges SET weight = ? WHERE source_memory_id = ? AND target_memory_id = ?",
        (weight, source, target),
    )
    conn.commit()


class TestBuild:
    def test_threshold(self, builder, tmp_storage, trio):
        a, b, c = trio
        result = builder.build(now=NOW)

        edge = tmp_storage.get_edge(a, b)
        assert edge is not None
        assert edge["similarity"] == pytest.approx(0.8, abs=1e-4)
        assert edge["weight"] == 1.0
        assert edge["reinforcement_count"] == 0
        assert tmp_storage.get_edge(a, c) is None
        assert tmp_storage.get_edge(c, a) is None
        # a->b, b->a, b->c, c->b
        assert result.created == 4
        assert result.reinforced == 0

    def test_rebuild_reinforces(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        result = builder.build(now=NOW + 60)

        assert result.created == 0
        assert result.reinforced == 4
        edge = tmp_storage.get_edge(a, b)
        assert edge["reinforcement_count"] == 1
        assert edge["weight"] == 1.0
        assert edge["last_reinforced_at"] == NOW + 60

    def test_reinforcement_raises_weight(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        _set_weight(tmp_storage, a, b, 0.5)
        builder.build(now=NOW + 60)
        assert tmp_storage.get_edge(a, b)["weight"] == pytest.approx(0.6)

    def test_memories_without_vectors_ignored(self, builder, tmp_storage, add_memory):
        add_memory("no vector")
        add_memory("lonely", vector=D_VEC)
        result = builder.build(now=NOW)
        assert (result.created, result.reinforced) == (0, 0)

    def test_edge_cap(self, tmp_storage, add_memory):
        ids = [add_memory(f"m{i}", vector=[1.0, 0.01 * i, 0.0, 0.0]) for i in range(5)]
        builder = SimilarityEdgeBuilder(tmp_storage, Config(max_edges_per_memory=2))
        builder.build(now=NOW)
        outgoing = [
            e for e in tmp_storage.edges_for_memory(ids[0])
            if e["source_memory_id"] == ids[0]
        ]
        assert len(outgoing) == 2


class TestDecay:
    def test_pruned_on_the_pass_that_reaches_the_floor(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        _set_weight(tmp_storage, a, b, 0.4)

        first = builder.decay(cutoff=NOW + 1)
        assert first.decayed == 4
        assert tmp_storage.get_edge(a, b)["weight"] == pytest.approx(0.3)

        second = builder.decay(cutoff=NOW + 1)
        assert tmp_storage.get_edge(a, b) is None
        assert second.pruned == 1

    def test_full_weight_edge_lasts_eight_passes(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        for _ in range(7):
            builder.decay(cutoff=NOW + 1)
        assert tmp_storage.get_edge(a, b)["weight"] == pytest.approx(0.3)
        builder.decay(cutoff=NOW + 1)
        assert tmp_storage.get_edge(a, b) is None

    def test_recently_reinforced_edges_do_not_decay(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        result = builder.decay(cutoff=NOW)
        assert result.decayed == 0
        assert tmp_storage.get_edge(a, b)["weight"] == 1.0

    def test_typed_edges_untouched(self, builder, tmp_storage, trio):
        a, b, _ = trio
        builder.create_edge(a, b, EdgeType.FOLLOWS, weight=0.25, now=NOW)
        builder.decay(cutoff=NOW + 1)
        assert tmp_storage.get_edge(a, b, EdgeType.FOLLOWS)["weight"] == 0.25


class TestTypedEdges:
    def test_create_and_keep_max_weight(self, builder, trio):
        a, b, _ = trio
        edge = builder.create_edge(a, b, EdgeType.ELABORATES, weight=0.6, metadata={"why": "detail"})
        assert edge["edge_type"] == "ELABORATES"
        assert edge["metadata"] == {"why": "detail"}

        again = builder.create_edge(a, b, EdgeType.ELABORATES, weight=0.4, metadata={"by": "user"})
        assert again["weight"] == pytest.approx(0.6)
        assert again["metadata"] == {"why": "detail", "by": "user"}

    @pytest.mark.parametrize("edge_type,weight", [("LIKES", 1.0), (EdgeType.FOLLOWS, 1.5)])
    def test_invalid_edges(self, builder, trio, edge_type, weight):
        a, b, _ = trio
        with pytest.raises(ValueError):
            builder.create_edge(a, b, edge_type, weight=weight)

    def test_self_and_unknown_endpoints(self, builder, trio):
        a, _, _ = trio
        with pytest.raises(ValueError):
            builder.create_edge(a, a, EdgeType.FOLLOWS)
        with pytest.raises(ValueError):
            builder.create_edge(a, "missing", EdgeType.FOLLOWS)

    def test_related_memories_deduplicates_directions(self, builder, trio):
        a, b, _ = trio
        builder.build(now=NOW)
        related = builder.related_memories(a)
        assert [r["id"] for r in related] == [b]
        assert related[0]["text"] == "beta"

        related_b = builder.related_memories(b, edge_type=EdgeType.SIMILAR)
        assert sorted(r["id"] for r in related_b) == sorted(trio[::2])

    def test_edge_stats(self, builder, trio):
        builder.build(now=NOW)
        stats = builder.edge_stats()
        assert stats["total"] == 4
        assert stats["by_type"] == {"SIMILAR": 4}
        assert stats["average_weight"] == pytest.approx(1.0)
