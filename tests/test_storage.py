"""Tests for SQLite storage layer."""

import sqlite3

import pytest

from memory_graph.storage import MemoryStorage

NOW = 1_700_000_000.0


@pytest.fixture
def storage(tmp_path):
    """Create a temporary storage instance."""
    db_path = str(tmp_path / "test_memory.sqlite")
    s = MemoryStorage(db_path=db_path, dimensions=4)
    yield s
    s.close()


class TestMemoryCRUD:
    def test_store_and_get(self, storage):
        mid = storage.store_memory(
            text="Lunch with Maya at the harbour",
            vector=[1.0, 0.0, 0.0, 0.0],
            salience=7.5,
            source="chat",
        )
        mem = storage.get_memory(mid)
        assert mem["text"] == "Lunch with Maya at the harbour"
        assert mem["source"] == "chat"
        assert mem["salience_score"] == 7.5
        assert mem["current_strength"] == 1.0
        assert mem["processing_status"] == "pending"
        assert mem["vector_rowid"] is not None

    @pytest.mark.parametrize("text,salience", [("", 5.0), ("   ", 5.0), ("ok", 11.0), ("ok", -1.0)])
    def test_rejects_bad_input(self, storage, text, salience):
        with pytest.raises(ValueError):
            storage.store_memory(text, salience=salience)

    def test_delete_cascades(self, storage):
        a = storage.store_memory("to delete", vector=[1.0, 0.0, 0.0, 0.0])
        b = storage.store_memory("neighbour", vector=[1.0, 0.0, 0.0, 0.0])
        entity = storage.insert_entity("Maya", "maya", "person")
        storage.insert_mention(a, entity["id"], "Maya", 0, 4)
        storage.upsert_similar_edge(a, b, 1.0)

        assert storage.delete_memory(a) is True
        assert storage.get_memory(a) is None
        assert storage.mentions_for_memory(a) == []
        assert storage.edges_for_memory(b) == []
        assert storage.delete_memory("nonexistent") is False

    def test_set_vector_later(self, storage):
        mid = storage.store_memory("no vector yet")
        assert storage.memories_without_vectors() == [{"id": mid, "text": "no vector yet"}]
        assert storage.set_memory_vector(mid, [0.0, 1.0, 0.0, 0.0])
        assert storage.get_memory_vector(mid).tolist() == [0.0, 1.0, 0.0, 0.0]
        assert storage.memories_without_vectors() == []
        assert storage.set_memory_vector("missing", [0.0, 1.0, 0.0, 0.0]) is False

    def test_access_and_processing(self, storage):
        mid = storage.store_memory("remember me")
        assert storage.record_access(mid, now=NOW)
        storage.mark_processed(mid, now=NOW)
        mem = storage.get_memory(mid)
        assert mem["access_count"] == 1
        assert mem["last_accessed_at"] == NOW
        assert mem["processing_status"] == "processed"
        assert storage.pending_memories() == []

    def test_strength_check_constraint(self, storage):
        mid = storage.store_memory("bounded")
        with pytest.raises(sqlite3.IntegrityError):
            storage.update_strengths([(mid, 1.5)])


class TestVectorSearch:
    def test_nearest_with_similarity(self, storage):
        hello = storage.store_memory("hello world", vector=[1.0, 0.0, 0.0, 0.0])
        storage.store_memory("goodbye world", vector=[0.0, 1.0, 0.0, 0.0])

        results = storage.nearest_memories([1.0, 0.0, 0.0, 0.0], limit=2)
        assert results[0]["id"] == hello
        assert results[0]["similarity"] == pytest.approx(1.0, abs=1e-5)
        assert all(r["similarity"] < 0.5 for r in results[1:])

    def test_exclude_and_threshold(self, storage):
        a = storage.store_memory("a", vector=[1.0, 0.0, 0.0, 0.0])
        b = storage.store_memory("b", vector=[0.8, 0.6, 0.0, 0.0])
        storage.store_memory("c", vector=[0.0, 1.0, 0.0, 0.0])

        results = storage.nearest_memories(
            [1.0, 0.0, 0.0, 0.0], limit=5, exclude_id=a, min_similarity=0.75
        )
        assert [r["id"] for r in results] == [b]


class TestEntities:
    def test_same_name_rows_coexist(self, storage):
        storage.insert_entity("Rick", "rick", "person", attributes={"initial_relationship": "brother-in-law"})
        storage.insert_entity("Rick", "rick", "person", attributes={"initial_relationship": "dealer"})
        assert len(storage.find_entities("rick", "person")) == 2
        assert storage.find_entities("rick", "place") == []

    def test_touch_adds_alias_once(self, storage):
        entity = storage.insert_entity("Maya", "maya", "person", now=NOW)
        storage.touch_entity(entity["id"], now=NOW + 5, alias="Maya (neighbour)")
        storage.touch_entity(entity["id"], now=NOW + 1, alias="Maya (neighbour)")
        row = storage.get_entity(entity["id"])
        assert row["mention_count"] == 3
        assert row["aliases"] == ["Maya (neighbour)"]
        assert row["last_seen_at"] == NOW + 5

    def test_merge_moves_mentions(self, storage):
        mid = storage.store_memory("Sarah and Sarah Chen")
        short = storage.insert_entity("Sarah", "sarah", "person", now=NOW)
        full = storage.insert_entity("Sarah Chen", "sarah chen", "person", now=NOW + 10)
        storage.insert_mention(mid, short["id"], "Sarah", 0, 5)
        storage.insert_mention(mid, full["id"], "Sarah Chen", 10, 20)

        storage.merge_entities(short["id"], full["id"], now=NOW + 20)

        target = storage.get_entity(full["id"])
        source = storage.get_entity(short["id"])
        assert target["mention_count"] == 2
        assert target["first_seen_at"] == NOW
        assert target["aliases"] == ["Sarah"]
        assert source["is_merged"] == 1
        assert source["merged_into_id"] == full["id"]
        assert {m["entity_id"] for m in storage.mentions_for_memory(mid)} == {full["id"]}
        assert storage.count_entities_by_type() == {"person": 1}

    def test_mention_is_idempotent(self, storage):
        mid = storage.store_memory("Maya called")
        entity = storage.insert_entity("Maya", "maya", "person")
        first, created = storage.insert_mention(mid, entity["id"], "Maya", 0, 4)
        again, created_again = storage.insert_mention(mid, entity["id"], "Maya", 0, 4)
        assert created and not created_again
        assert again["id"] == first["id"]

    def test_mentioned_entity_at_span(self, storage):
        mid = storage.store_memory("Rick came by")
        rick = storage.insert_entity("Rick", "rick", "person")
        storage.insert_mention(mid, rick["id"], "Rick", 0, 4)

        assert storage.mentioned_entity_at(mid, "rick", "person", 0)["id"] == rick["id"]
        assert storage.mentioned_entity_at(mid, "rick", "person", 5) is None
        assert storage.mentioned_entity_at(mid, "rick", "place", 0) is None

    def test_primary_relationship(self, storage):
        entity = storage.insert_entity("Rick", "rick", "person")
        for i, rel in enumerate(["dealer", "friend", "friend"]):
            mid = storage.store_memory(f"Rick note {i}")
            storage.insert_mention(mid, entity["id"], "Rick", 0, 4, relationship_type=rel)
        assert storage.primary_relationship(entity["id"]) == "friend"
        assert storage.entity_memory_count(entity["id"]) == 3


class TestEdges:
    def test_similar_edge_upsert(self, storage):
        a = storage.store_memory("a")
        b = storage.store_memory("b")
        assert storage.upsert_similar_edge(a, b, 0.9, now=NOW) is True
        assert storage.upsert_similar_edge(a, b, 0.9, now=NOW + 1) is False
        edge = storage.get_edge(a, b)
        assert edge["reinforcement_count"] == 1
        assert edge["last_reinforced_at"] == NOW + 1
        assert edge["created_at"] == NOW

    def test_decay_respects_floor_and_cutoff(self, storage):
        a = storage.store_memory("a")
        b = storage.store_memory("b")
        c = storage.store_memory("c")
        storage.upsert_similar_edge(a, b, 0.9, now=NOW)
        storage.upsert_similar_edge(a, c, 0.9, now=NOW + 100)

        assert storage.decay_edges("SIMILAR", 0.5, 0.2, cutoff=NOW + 50) == 1
        assert storage.get_edge(a, b)["weight"] == pytest.approx(0.5)
        storage.decay_edges("SIMILAR", 0.5, 0.2, cutoff=NOW + 50)
        assert storage.get_edge(a, b)["weight"] == pytest.approx(0.2)
        assert storage.prune_edges("SIMILAR", 0.2) == 1
        assert storage.get_edge(a, c)["weight"] == 1.0

    def test_edges_among(self, storage):
        a, b, c = (storage.store_memory(t) for t in "abc")
        storage.upsert_edge(a, b, "FOLLOWS", weight=0.5)
        storage.upsert_edge(b, c, "FOLLOWS", weight=0.5)
        assert [(e["source_memory_id"], e["target_memory_id"]) for e in storage.edges_among([a, b])] == [(a, b)]


class TestSessions:
    def test_lock_and_release(self, storage):
        sid = storage.begin_session(3600, now=NOW)
        assert sid is not None
        assert storage.begin_session(3600, now=NOW + 1) is None

        storage.finish_session(sid, "completed", {"edges_created": 3}, now=NOW + 2)
        session = storage.get_session(sid)
        assert session["status"] == "completed"
        assert session["stats"] == {"edges_created": 3}
        assert storage.begin_session(3600, now=NOW + 3) is not None

    def test_recent_sessions_order(self, storage):
        first = storage.begin_session(3600, now=NOW)
        storage.finish_session(first, "failed", error="boom")
        second = storage.begin_session(3600, now=NOW + 10)
        assert [s["id"] for s in storage.recent_sessions()] == [second, first]


class TestStats:
    def test_stats(self, storage):
        storage.store_memory("one", vector=[1.0, 0.0, 0.0, 0.0])
        storage.store_memory("two")
        storage.insert_entity("Maya", "maya", "person")
        stats = storage.stats()
        assert stats["total_memories"] == 2
        assert stats["vectorless_memories"] == 1
        assert stats["pending_memories"] == 2
        assert stats["active_memories"] == 2
        assert stats["entities"] == 1
        assert stats["edges"] == 0
