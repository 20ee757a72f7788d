"""SQLite + sqlite-vec storage layer.

Single-file database with:
* ``sqlite-vec`` extension for cosine nearest-neighbour search over memories
* Entity / mention tables for the knowledge graph (soft-merge, no hard deletes)
* Memory edges with an atomic upsert on (source, target, type)
* Consolidation session records used as the sweep lock
* Auto-create schema on first use
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Weight comparisons against the edge floor tolerate float drift from
# repeated subtraction (1.0 - 0.1 * 8 != 0.2).
_WEIGHT_EPSILON = 1e-9

# ---------------------------------------------------------------------------
# sqlite-vec extension loading
# ---------------------------------------------------------------------------

def _load_vec_extension(conn: sqlite3.Connection) -> None:
    """Load the sqlite-vec extension into *conn*.

    Extension loading is only enabled for the duration of the load call.
    """
    conn.enable_load_extension(True)
    try:
        import sqlite_vec

        sqlite_vec.load(conn)
    except Exception as exc:
        logger.error("Failed to load sqlite-vec: %s", exc)
        raise
    finally:
        try:
            conn.enable_load_extension(False)
        except sqlite3.Error:
            pass


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Observations
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    source TEXT DEFAULT 'cli',
    salience_score REAL NOT NULL DEFAULT 5.0
        CHECK (salience_score >= 0.0 AND salience_score <= 10.0),
    created_at REAL NOT NULL,
    updated_at REAL,
    vector_rowid INTEGER,
    current_strength REAL NOT NULL DEFAULT 1.0
        CHECK (current_strength >= 0.0 AND current_strength <= 1.0),
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at REAL,
    processing_status TEXT NOT NULL DEFAULT 'pending',
    processed_at REAL
);

CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_salience ON memories(salience_score);
CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(processing_status);
CREATE INDEX IF NOT EXISTS idx_memories_vector ON memories(vector_rowid);

-- Knowledge graph: entities (several active rows may share a canonical name)
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    canonical_name TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]',
    description TEXT,
    attributes TEXT NOT NULL DEFAULT '{}',
    embedding BLOB,
    first_seen_at REAL NOT NULL,
    last_seen_at REAL NOT NULL,
    mention_count INTEGER NOT NULL DEFAULT 1,
    is_merged INTEGER NOT NULL DEFAULT 0,
    merged_into_id TEXT REFERENCES entities(id),
    created_at REAL NOT NULL,
    updated_at REAL
);

CREATE INDEX IF NOT EXISTS idx_entities_canonical ON entities(canonical_name, entity_type);
CREATE INDEX IF NOT EXISTS idx_entities_mentions ON entities(mention_count);

-- Knowledge graph: mentions (one per memory, entity and span start)
CREATE TABLE IF NOT EXISTS entity_mentions (
    id TEXT PRIMARY KEY,
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    entity_id TEXT NOT NULL REFERENCES entities(id),
    mention_text TEXT NOT NULL,
    context_snippet TEXT,
    position_start INTEGER NOT NULL,
    position_end INTEGER NOT NULL,
    relationship_type TEXT,
    relationship_direction TEXT,
    extraction_method TEXT NOT NULL DEFAULT 'regex',
    confidence REAL,
    created_at REAL NOT NULL,
    UNIQUE (memory_id, entity_id, position_start)
);

CREATE INDEX IF NOT EXISTS idx_mentions_entity ON entity_mentions(entity_id);
CREATE INDEX IF NOT EXISTS idx_mentions_memory ON entity_mentions(memory_id);

-- Memory-to-memory edges
CREATE TABLE IF NOT EXISTS memory_edges (
    id TEXT PRIMARY KEY,
    source_memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    target_memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    edge_type TEXT NOT NULL,
    similarity REAL,
    weight REAL NOT NULL DEFAULT 1.0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    last_reinforced_at REAL NOT NULL,
    reinforcement_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE (source_memory_id, target_memory_id, edge_type)
);

CREATE INDEX IF NOT EXISTS idx_edges_source ON memory_edges(source_memory_id);
CREATE INDEX IF NOT EXISTS idx_edges_target ON memory_edges(target_memory_id);
CREATE INDEX IF NOT EXISTS idx_edges_reinforced ON memory_edges(edge_type, last_reinforced_at);

-- Consolidation sweeps (also the single-sweep lock)
CREATE TABLE IF NOT EXISTS consolidation_sessions (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    started_at REAL NOT NULL,
    finished_at REAL,
    stats TEXT NOT NULL DEFAULT '{}',
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_status ON consolidation_sessions(status);

-- Cache tables
CREATE TABLE IF NOT EXISTS embedding_cache (
    text_hash TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    created_at REAL NOT NULL
)
"""


def _entity_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["aliases"] = json.loads(d.get("aliases") or "[]")
    d["attributes"] = json.loads(d.get("attributes") or "{}")
    return d


def _edge_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["metadata"] = json.loads(d.get("metadata") or "{}")
    return d


class MemoryStorage:
    """SQLite-backed storage for memories, entities, mentions and edges."""

    def __init__(self, db_path: Optional[str] = None, dimensions: Optional[int] = None) -> None:
        from .config import load_config

        cfg = load_config()
        self.db_path = db_path or cfg.db_path
        self.dimensions = dimensions or cfg.embedding_dimensions

        # Ensure parent directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout = 5000")
            self._conn.execute("PRAGMA temp_store = MEMORY")
            _load_vec_extension(self._conn)
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        cur = conn.cursor()
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                cur.execute(stmt)

        # sqlite-vec virtual table; cosine distance = 1 - cosine similarity
        cur.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS memory_vectors USING vec0(
                embedding float[{self.dimensions}] distance_metric=cosine
            )
        """)

        # Safe migrations for existing DBs ---------------------------------
        def _col_exists(table: str, col: str) -> bool:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return any(r[1] == col for r in rows)

        def _add_col(table: str, coldef: str, colname: str) -> None:
            if _col_exists(table, colname):
                return
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {coldef}")
                logger.info("Schema migration: added %s.%s", table, colname)
            except sqlite3.OperationalError as exc:
                logger.debug("Schema migration skipped for %s.%s: %s", table, colname, exc)

        _add_col("memories", "processed_at REAL", "processed_at")
        _add_col("entities", "description TEXT", "description")
        _add_col("entity_mentions", "relationship_direction TEXT", "relationship_direction")

        conn.commit()

    # ------------------------------------------------------------------
    # Memory CRUD
    # ------------------------------------------------------------------

    def store_memory(
        self,
        text: str,
        vector: Optional[List[float]] = None,
        salience: float = 5.0,
        source: str = "cli",
        memory_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> str:
        """Insert a memory. Returns the memory ID."""
        if not text or not text.strip():
            raise ValueError("memory text must be non-empty")
        if not 0.0 <= salience <= 10.0:
            raise ValueError("salience must be within [0, 10]")

        conn = self._get_conn()
        mid = memory_id or _new_id()
        now = created_at if created_at is not None else time.time()

        try:
            vector_rowid: Optional[int] = None
            if vector is not None:
                blob = np.asarray(vector, dtype=np.float32).tobytes()
                cur = conn.execute(
                    "INSERT INTO memory_vectors(embedding) VALUES (?)", (blob,)
                )
                vector_rowid = cur.lastrowid

            conn.execute(
                """INSERT INTO memories
                   (id, text, source, salience_score, created_at, updated_at,
                    vector_rowid, current_strength, access_count, last_accessed_at,
                    processing_status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1.0, 0, NULL, 'pending')""",
                (mid, text, source, salience, now, now, vector_rowid),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return mid

    def get_memory(self, memory_id: str) -> Optional[Dict[str, Any]]:
        """Return a single memory dict or None."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_memories(self, memory_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Return ``{id: memory}`` for the given ids (missing ids are skipped)."""
        if not memory_ids:
            return {}
        conn = self._get_conn()
        ids = list(dict.fromkeys(memory_ids))
        rows = conn.execute(
            f"SELECT * FROM memories WHERE id IN ({_placeholders(ids)})", ids
        ).fetchall()
        return {r["id"]: dict(r) for r in rows}

    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory with its vector, mentions and edges. Returns True if found."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT vector_rowid FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if not row:
            return False

        try:
            if row["vector_rowid"] is not None:
                conn.execute(
                    "DELETE FROM memory_vectors WHERE rowid = ?", (row["vector_rowid"],)
                )
            # mentions and edges cascade
            conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return True

    def record_access(self, memory_id: str, now: Optional[float] = None) -> bool:
        """Access tracking: bump access_count and last_accessed_at."""
        conn = self._get_conn()
        cur = conn.execute(
            """
            UPDATE memories
               SET access_count = access_count + 1,
                   last_accessed_at = ?
             WHERE id = ?
            """,
            (now if now is not None else time.time(), memory_id),
        )
        conn.commit()
        return cur.rowcount > 0

    def set_memory_vector(self, memory_id: str, vector: List[float]) -> bool:
        """Attach (or replace) the embedding of a memory. Returns True if found."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT vector_rowid FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if not row:
            return False

        blob = np.asarray(vector, dtype=np.float32).tobytes()
        try:
            if row["vector_rowid"] is not None:
                conn.execute(
                    "UPDATE memory_vectors SET embedding = ? WHERE rowid = ?",
                    (blob, row["vector_rowid"]),
                )
            else:
                cur = conn.execute(
                    "INSERT INTO memory_vectors(embedding) VALUES (?)", (blob,)
                )
                conn.execute(
                    "UPDATE memories SET vector_rowid = ?, updated_at = ? WHERE id = ?",
                    (cur.lastrowid, time.time(), memory_id),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return True

    def get_memory_vector(self, memory_id: str) -> Optional[np.ndarray]:
        conn = self._get_conn()
        mem = conn.execute(
            "SELECT vector_rowid FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if not mem or mem["vector_rowid"] is None:
            return None
        row = conn.execute(
            "SELECT embedding FROM memory_vectors WHERE rowid = ?", (mem["vector_rowid"],)
        ).fetchone()
        if not row or row[0] is None:
            return None
        return np.frombuffer(row[0], dtype=np.float32)

    def pending_memories(self, limit: int = 200) -> List[Dict[str, Any]]:
        """Memories that have not been through entity extraction yet (oldest first)."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT * FROM memories
             WHERE processing_status = 'pending'
             ORDER BY created_at, id
             LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    def mark_processed(self, memory_id: str, now: Optional[float] = None) -> None:
        conn = self._get_conn()
        conn.execute(
            """
            UPDATE memories
               SET processing_status = 'processed', processed_at = ?
             WHERE id = ?
            """,
            (now if now is not None else time.time(), memory_id),
        )
        conn.commit()

    def memories_without_vectors(self, limit: int = 100) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT id, text FROM memories
             WHERE vector_rowid IS NULL
             ORDER BY created_at, id
             LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Strength bookkeeping
    # ------------------------------------------------------------------

    def strength_candidates(
        self, floor: float, after_id: str = "", limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Keyset page of memories whose strength is above *floor*."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT id, salience_score, access_count, last_accessed_at, current_strength
              FROM memories
             WHERE current_strength > ? AND id > ?
             ORDER BY id
             LIMIT ?
            """,
            (floor, after_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def update_strengths(
        self, updates: Iterable[Tuple[str, float]], now: Optional[float] = None
    ) -> int:
        """Apply ``(memory_id, new_strength)`` pairs in a single transaction."""
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        params = [(strength, ts, mid) for mid, strength in updates]
        if not params:
            return 0
        try:
            conn.executemany(
                "UPDATE memories SET current_strength = ?, updated_at = ? WHERE id = ?",
                params,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return len(params)

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def nearest_memories(
        self,
        query_vector: Sequence[float],
        limit: int = 10,
        exclude_id: Optional[str] = None,
        min_similarity: float = 0.0,
    ) -> List[Dict[str, Any]]:
        """Nearest-neighbour search via sqlite-vec.

        Returns ``{"id", "similarity"}`` dicts, most similar first, where
        similarity is the cosine similarity (1 - cosine distance).
        """
        conn = self._get_conn()
        blob = np.asarray(query_vector, dtype=np.float32).tobytes()
        k = limit + 1 if exclude_id else limit

        rows = conn.execute(
            """
            SELECT rowid AS vec_rowid, distance
              FROM memory_vectors
             WHERE embedding MATCH ? AND k = ?
             ORDER BY distance
            """,
            (blob, k),
        ).fetchall()

        results: List[Dict[str, Any]] = []
        for r in rows:
            similarity = 1.0 - float(r["distance"])
            if similarity < min_similarity:
                continue
            mem = conn.execute(
                "SELECT id FROM memories WHERE vector_rowid = ?", (r["vec_rowid"],)
            ).fetchone()
            if not mem or mem["id"] == exclude_id:
                continue
            results.append({"id": mem["id"], "similarity": similarity})
        return results[:limit]

    # ------------------------------------------------------------------
    # Entity CRUD
    # ------------------------------------------------------------------

    def find_entities(
        self, canonical_name: str, entity_type: str, include_merged: bool = False
    ) -> List[Dict[str, Any]]:
        """Exact lookup by canonical name + type (several rows may match)."""
        conn = self._get_conn()
        sql = "SELECT * FROM entities WHERE canonical_name = ? AND entity_type = ?"
        if not include_merged:
            sql += " AND is_merged = 0"
        sql += " ORDER BY mention_count DESC, first_seen_at, id"
        rows = conn.execute(sql, (canonical_name, entity_type)).fetchall()
        return [_entity_row(r) for r in rows]

    def insert_entity(
        self,
        name: str,
        canonical_name: str,
        entity_type: str,
        aliases: Optional[List[str]] = None,
        attributes: Optional[Dict[str, Any]] = None,
        embedding: Optional[Sequence[float]] = None,
        description: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        conn = self._get_conn()
        eid = _new_id()
        ts = now if now is not None else time.time()
        blob = np.asarray(embedding, dtype=np.float32).tobytes() if embedding is not None else None
        conn.execute(
            """INSERT INTO entities
               (id, name, canonical_name, entity_type, aliases, description,
                attributes, embedding, first_seen_at, last_seen_at,
                mention_count, is_merged, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?)""",
            (
                eid, name, canonical_name, entity_type,
                json.dumps(aliases or []), description,
                json.dumps(attributes or {}), blob, ts, ts, ts, ts,
            ),
        )
        conn.commit()
        entity = self.get_entity(eid)
        if entity is None:
            raise LookupError(f"entity {eid} vanished after insert")
        return entity

    def touch_entity(
        self, entity_id: str, now: Optional[float] = None, alias: Optional[str] = None
    ) -> None:
        """Record another mention: mention_count + 1, last_seen refreshed."""
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        conn.execute(
            """
            UPDATE entities
               SET mention_count = mention_count + 1,
                   last_seen_at = MAX(last_seen_at, ?),
                   updated_at = ?
             WHERE id = ?
            """,
            (ts, ts, entity_id),
        )
        if alias:
            row = conn.execute(
                "SELECT aliases FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
            aliases = json.loads(row["aliases"] or "[]") if row else []
            if alias not in aliases:
                aliases.append(alias)
                conn.execute(
                    "UPDATE entities SET aliases = ? WHERE id = ?",
                    (json.dumps(aliases), entity_id),
                )
        conn.commit()

    def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return an entity row (merged or not) or None."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM entities WHERE id = ?", (entity_id,)
        ).fetchone()
        return _entity_row(row) if row else None

    def get_entities(self, entity_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not entity_ids:
            return {}
        conn = self._get_conn()
        ids = list(dict.fromkeys(entity_ids))
        rows = conn.execute(
            f"SELECT * FROM entities WHERE id IN ({_placeholders(ids)})", ids
        ).fetchall()
        return {r["id"]: _entity_row(r) for r in rows}

    def list_entities(
        self,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Active entities, most mentioned first."""
        conn = self._get_conn()
        sql = "SELECT * FROM entities WHERE is_merged = 0"
        params: List[Any] = []
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        if search:
            sql += " AND (name LIKE ? OR canonical_name LIKE ?)"
            params.extend([f"%{search}%", f"%{search.lower()}%"])
        sql += " ORDER BY mention_count DESC, last_seen_at DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [_entity_row(r) for r in conn.execute(sql, params).fetchall()]

    def entity_name_index(self, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lightweight (id, name, canonical_name, aliases) rows for fuzzy matching."""
        conn = self._get_conn()
        sql = (
            "SELECT id, name, canonical_name, entity_type, aliases, mention_count "
            "FROM entities WHERE is_merged = 0"
        )
        params: List[Any] = []
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        rows = conn.execute(sql, params).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["aliases"] = json.loads(d.get("aliases") or "[]")
            out.append(d)
        return out

    def merge_entities(
        self, source_id: str, target_id: str, now: Optional[float] = None
    ) -> None:
        """Soft-merge *source* into *target*: mentions move, source keeps a pointer."""
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        try:
            src = conn.execute("SELECT * FROM entities WHERE id = ?", (source_id,)).fetchone()
            dst = conn.execute("SELECT * FROM entities WHERE id = ?", (target_id,)).fetchone()
            if src is None or dst is None:
                raise ValueError("both entities must exist to merge")

            conn.execute(
                "UPDATE OR IGNORE entity_mentions SET entity_id = ? WHERE entity_id = ?",
                (target_id, source_id),
            )
            # leftovers collided with an existing target mention at the same span
            conn.execute("DELETE FROM entity_mentions WHERE entity_id = ?", (source_id,))

            aliases = json.loads(dst["aliases"] or "[]")
            for alias in [src["name"]] + json.loads(src["aliases"] or "[]"):
                if alias not in aliases and alias != dst["name"]:
                    aliases.append(alias)

            conn.execute(
                """
                UPDATE entities
                   SET mention_count = mention_count + ?,
                       first_seen_at = MIN(first_seen_at, ?),
                       last_seen_at = MAX(last_seen_at, ?),
                       aliases = ?,
                       updated_at = ?
                 WHERE id = ?
                """,
                (
                    src["mention_count"], src["first_seen_at"], src["last_seen_at"],
                    json.dumps(aliases), ts, target_id,
                ),
            )
            conn.execute(
                """
                UPDATE entities
                   SET is_merged = 1, merged_into_id = ?, updated_at = ?
                 WHERE id = ? OR merged_into_id = ?
                """,
                (target_id, ts, source_id, source_id),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def count_entities_by_type(self) -> Dict[str, int]:
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT entity_type, COUNT(*) AS n FROM entities
             WHERE is_merged = 0
             GROUP BY entity_type
            """
        ).fetchall()
        return {r["entity_type"]: int(r["n"]) for r in rows}

    # ------------------------------------------------------------------
    # Mentions
    # ------------------------------------------------------------------

    def get_mention(
        self, memory_id: str, entity_id: str, position_start: int
    ) -> Optional[Dict[str, Any]]:
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT * FROM entity_mentions
             WHERE memory_id = ? AND entity_id = ? AND position_start = ?
            """,
            (memory_id, entity_id, position_start),
        ).fetchone()
        return dict(row) if row else None

    def mentioned_entity_at(
        self, memory_id: str, canonical_name: str, entity_type: str, position_start: int
    ) -> Optional[Dict[str, Any]]:
        """Active entity already mentioned in *memory_id* at this span under this name."""
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT e.* FROM entity_mentions em
              JOIN entities e ON e.id = em.entity_id
             WHERE em.memory_id = ? AND em.position_start = ?
               AND e.canonical_name = ? AND e.entity_type = ? AND e.is_merged = 0
             ORDER BY em.created_at, e.id
             LIMIT 1
            """,
            (memory_id, position_start, canonical_name, entity_type),
        ).fetchone()
        return _entity_row(row) if row else None

    def insert_mention(
        self,
        memory_id: str,
        entity_id: str,
        mention_text: str,
        position_start: int,
        position_end: int,
        context_snippet: Optional[str] = None,
        relationship_type: Optional[str] = None,
        relationship_direction: Optional[str] = None,
        extraction_method: str = "regex",
        confidence: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert a mention unless one exists at the same span.

        Returns ``(mention, created)``; an existing row is returned unchanged.
        """
        conn = self._get_conn()
        cur = conn.execute(
            """INSERT INTO entity_mentions
               (id, memory_id, entity_id, mention_text, context_snippet,
                position_start, position_end, relationship_type,
                relationship_direction, extraction_method, confidence, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (memory_id, entity_id, position_start) DO NOTHING""",
            (
                _new_id(), memory_id, entity_id, mention_text, context_snippet,
                position_start, position_end, relationship_type,
                relationship_direction, extraction_method, confidence,
                now if now is not None else time.time(),
            ),
        )
        created = cur.rowcount > 0
        conn.commit()
        mention = self.get_mention(memory_id, entity_id, position_start)
        if mention is None:
            raise LookupError(f"mention of {entity_id} in {memory_id} vanished after insert")
        return mention, created

    def mentions_for_memory(self, memory_id: str) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT * FROM entity_mentions
             WHERE memory_id = ?
             ORDER BY position_start, entity_id
            """,
            (memory_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def memory_entities(self, memory_id: str) -> List[Dict[str, Any]]:
        """Active entities mentioned in a memory."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT DISTINCT e.* FROM entities e
              JOIN entity_mentions em ON em.entity_id = e.id
             WHERE em.memory_id = ? AND e.is_merged = 0
             ORDER BY e.entity_type, e.name, e.id
            """,
            (memory_id,),
        ).fetchall()
        return [_entity_row(r) for r in rows]

    def entity_memories(
        self, entity_id: str, limit: int = 50, order: str = "recent"
    ) -> List[Dict[str, Any]]:
        """Memories mentioning an entity, with the first mention's text and relationship."""
        conn = self._get_conn()
        if order == "salience":
            order_sql = "m.salience_score DESC, m.created_at DESC, m.id"
        else:
            order_sql = "m.created_at DESC, m.id"
        rows = conn.execute(
            f"""
            SELECT m.*, MIN(em.mention_text) AS mention_text,
                   MAX(em.relationship_type) AS relationship_type
              FROM memories m
              JOIN entity_mentions em ON em.memory_id = m.id
             WHERE em.entity_id = ?
             GROUP BY m.id
             ORDER BY {order_sql}
             LIMIT ?
            """,
            (entity_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def entity_memory_count(self, entity_id: str) -> int:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT COUNT(DISTINCT memory_id) AS n FROM entity_mentions WHERE entity_id = ?",
            (entity_id,),
        ).fetchone()
        return int(row["n"] or 0)

    def primary_relationship(self, entity_id: str) -> Optional[str]:
        """Most frequent relationship_type recorded for an entity."""
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT relationship_type, COUNT(*) AS n FROM entity_mentions
             WHERE entity_id = ? AND relationship_type IS NOT NULL
             GROUP BY relationship_type
             ORDER BY n DESC, relationship_type
             LIMIT 1
            """,
            (entity_id,),
        ).fetchone()
        return row["relationship_type"] if row else None

    # ------------------------------------------------------------------
    # Co-occurrence queries
    # ------------------------------------------------------------------

    def co_occurring_entities(
        self,
        entity_id: str,
        min_shared: int = 1,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Active entities sharing memories with *entity_id*.

        Each row carries ``shared_count`` and ``shared_memory_ids`` (list).
        Ordered by shared_count, then overall mention_count, then id.
        """
        conn = self._get_conn()
        sql = """
            SELECT e.*, COUNT(DISTINCT m2.memory_id) AS shared_count,
                   GROUP_CONCAT(DISTINCT m2.memory_id) AS shared_ids
              FROM entity_mentions m1
              JOIN entity_mentions m2
                ON m2.memory_id = m1.memory_id AND m2.entity_id != m1.entity_id
              JOIN entities e ON e.id = m2.entity_id
             WHERE m1.entity_id = ? AND e.is_merged = 0
        """
        params: List[Any] = [entity_id]
        if entity_type:
            sql += " AND e.entity_type = ?"
            params.append(entity_type)
        sql += """
             GROUP BY e.id
            HAVING COUNT(DISTINCT m2.memory_id) >= ?
             ORDER BY shared_count DESC, e.mention_count DESC, e.id
        """
        params.append(min_shared)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        out = []
        for r in conn.execute(sql, params).fetchall():
            d = _entity_row(r)
            d["shared_memory_ids"] = sorted((d.pop("shared_ids") or "").split(","))
            out.append(d)
        return out

    def shared_memories(
        self, entity_a: str, entity_b: str, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Memories mentioning both entities, most recent first."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT m.* FROM memories m
             WHERE m.id IN (SELECT memory_id FROM entity_mentions WHERE entity_id = ?)
               AND m.id IN (SELECT memory_id FROM entity_mentions WHERE entity_id = ?)
             ORDER BY m.created_at DESC, m.id
             LIMIT ?
            """,
            (entity_a, entity_b, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def mentions_for_memories(self, memory_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """(memory_id, entity_id) pairs for active entities in the given memories."""
        if not memory_ids:
            return []
        conn = self._get_conn()
        ids = list(dict.fromkeys(memory_ids))
        rows = conn.execute(
            f"""
            SELECT em.memory_id, em.entity_id, COUNT(*) AS mention_count
              FROM entity_mentions em
              JOIN entities e ON e.id = em.entity_id
             WHERE em.memory_id IN ({_placeholders(ids)}) AND e.is_merged = 0
             GROUP BY em.memory_id, em.entity_id
             ORDER BY em.memory_id, em.entity_id
            """,
            ids,
        ).fetchall()
        return [dict(r) for r in rows]

    def top_entities(
        self, limit: int = 30, entity_types: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        sql = "SELECT * FROM entities WHERE is_merged = 0"
        params: List[Any] = []
        if entity_types:
            sql += f" AND entity_type IN ({_placeholders(entity_types)})"
            params.extend(entity_types)
        sql += " ORDER BY mention_count DESC, id LIMIT ?"
        params.append(limit)
        return [_entity_row(r) for r in conn.execute(sql, params).fetchall()]

    def memories_for_entities(
        self, entity_ids: Sequence[str], min_salience: float = 0.0, limit: int = 70
    ) -> List[Dict[str, Any]]:
        """Memories mentioning any of the entities, highest salience first."""
        if not entity_ids:
            return []
        conn = self._get_conn()
        ids = list(dict.fromkeys(entity_ids))
        rows = conn.execute(
            f"""
            SELECT DISTINCT m.* FROM memories m
              JOIN entity_mentions em ON em.memory_id = m.id
             WHERE em.entity_id IN ({_placeholders(ids)})
               AND m.salience_score >= ?
             ORDER BY m.salience_score DESC, m.created_at DESC, m.id
             LIMIT ?
            """,
            ids + [min_salience, limit],
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def memories_for_edge_building(
        self, edge_type: str, max_edges: int, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Memories with a vector and fewer than *max_edges* outgoing edges of *edge_type*."""
        conn = self._get_conn()
        sql = """
            SELECT m.id, m.vector_rowid,
                   (SELECT COUNT(*) FROM memory_edges e
                     WHERE e.source_memory_id = m.id AND e.edge_type = ?) AS edge_count
              FROM memories m
             WHERE m.vector_rowid IS NOT NULL
               AND (SELECT COUNT(*) FROM memory_edges e
                     WHERE e.source_memory_id = m.id AND e.edge_type = ?) < ?
             ORDER BY m.created_at, m.id
        """
        params: List[Any] = [edge_type, edge_type, max_edges]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def upsert_similar_edge(
        self,
        source_id: str,
        target_id: str,
        similarity: float,
        reinforce_step: float = 0.1,
        now: Optional[float] = None,
    ) -> bool:
        """Atomic insert-or-reinforce of a SIMILAR edge. Returns True when created."""
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        rows = conn.execute(
            """
            INSERT INTO memory_edges
                (id, source_memory_id, target_memory_id, edge_type, similarity,
                 weight, metadata, created_at, last_reinforced_at, reinforcement_count)
            VALUES (?, ?, ?, 'SIMILAR', ?, 1.0, '{}', ?, ?, 0)
            ON CONFLICT (source_memory_id, target_memory_id, edge_type) DO UPDATE SET
                reinforcement_count = memory_edges.reinforcement_count + 1,
                weight = MIN(1.0, memory_edges.weight + ?),
                last_reinforced_at = excluded.last_reinforced_at
            RETURNING reinforcement_count
            """,
            (_new_id(), source_id, target_id, similarity, ts, ts, reinforce_step),
        ).fetchall()
        conn.commit()
        return int(rows[0]["reinforcement_count"]) == 0

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: str,
        weight: float = 1.0,
        similarity: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Create a typed edge, or keep the max weight and merge metadata if it exists."""
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        rows = conn.execute(
            """
            INSERT INTO memory_edges
                (id, source_memory_id, target_memory_id, edge_type, similarity,
                 weight, metadata, created_at, last_reinforced_at, reinforcement_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            ON CONFLICT (source_memory_id, target_memory_id, edge_type) DO UPDATE SET
                weight = MAX(memory_edges.weight, excluded.weight),
                similarity = COALESCE(excluded.similarity, memory_edges.similarity),
                metadata = json_patch(memory_edges.metadata, excluded.metadata),
                last_reinforced_at = excluded.last_reinforced_at,
                reinforcement_count = memory_edges.reinforcement_count + 1
            RETURNING *
            """,
            (
                _new_id(), source_id, target_id, edge_type, similarity, weight,
                json.dumps(metadata or {}), ts, ts,
            ),
        ).fetchall()
        conn.commit()
        return _edge_row(rows[0])

    def get_edge(
        self, source_id: str, target_id: str, edge_type: str = "SIMILAR"
    ) -> Optional[Dict[str, Any]]:
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT * FROM memory_edges
             WHERE source_memory_id = ? AND target_memory_id = ? AND edge_type = ?
            """,
            (source_id, target_id, edge_type),
        ).fetchone()
        return _edge_row(row) if row else None

    def edges_for_memory(
        self,
        memory_id: str,
        edge_types: Optional[Sequence[str]] = None,
        min_weight: float = 0.0,
    ) -> List[Dict[str, Any]]:
        """Edges touching *memory_id* in either direction, with ``neighbor_id`` set."""
        conn = self._get_conn()
        sql = """
            SELECT *,
                   CASE WHEN source_memory_id = ? THEN target_memory_id
                        ELSE source_memory_id END AS neighbor_id
              FROM memory_edges
             WHERE (source_memory_id = ? OR target_memory_id = ?)
               AND weight >= ?
        """
        params: List[Any] = [memory_id, memory_id, memory_id, min_weight]
        if edge_types:
            sql += f" AND edge_type IN ({_placeholders(edge_types)})"
            params.extend(edge_types)
        sql += " ORDER BY weight DESC, neighbor_id, edge_type"
        return [_edge_row(r) for r in conn.execute(sql, params).fetchall()]

    def edges_among(
        self, memory_ids: Sequence[str], edge_types: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        """Edges whose both endpoints are in *memory_ids*."""
        if not memory_ids:
            return []
        conn = self._get_conn()
        ids = list(dict.fromkeys(memory_ids))
        marks = _placeholders(ids)
        sql = f"""
            SELECT * FROM memory_edges
             WHERE source_memory_id IN ({marks}) AND target_memory_id IN ({marks})
        """
        params: List[Any] = ids + ids
        if edge_types:
            sql += f" AND edge_type IN ({_placeholders(edge_types)})"
            params.extend(edge_types)
        sql += " ORDER BY weight DESC, source_memory_id, target_memory_id, edge_type"
        return [_edge_row(r) for r in conn.execute(sql, params).fetchall()]

    def decay_edges(
        self, edge_type: str, rate: float, floor: float, cutoff: float
    ) -> int:
        """Lower the weight of edges not reinforced since *cutoff*, bounded by *floor*."""
        conn = self._get_conn()
        cur = conn.execute(
            """
            UPDATE memory_edges
               SET weight = MAX(?, weight - ?)
             WHERE edge_type = ? AND last_reinforced_at < ? AND weight > ?
            """,
            (floor, rate, edge_type, cutoff, floor + _WEIGHT_EPSILON),
        )
        conn.commit()
        return int(cur.rowcount or 0)

    def prune_edges(self, edge_type: str, floor: float) -> int:
        """Delete edges whose weight has reached the floor."""
        conn = self._get_conn()
        cur = conn.execute(
            "DELETE FROM memory_edges WHERE edge_type = ? AND weight <= ?",
            (edge_type, floor + _WEIGHT_EPSILON),
        )
        conn.commit()
        return int(cur.rowcount or 0)

    def edge_stats(self) -> Dict[str, Any]:
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT COUNT(*) AS total, AVG(weight) AS avg_weight,
                   AVG(similarity) AS avg_similarity
              FROM memory_edges
            """
        ).fetchone()
        by_type = {
            r["edge_type"]: int(r["n"])
            for r in conn.execute(
                "SELECT edge_type, COUNT(*) AS n FROM memory_edges GROUP BY edge_type"
            ).fetchall()
        }
        return {
            "total": int(row["total"] or 0),
            "by_type": by_type,
            "average_weight": float(row["avg_weight"]) if row["avg_weight"] is not None else 0.0,
            "average_similarity": (
                float(row["avg_similarity"]) if row["avg_similarity"] is not None else 0.0
            ),
        }

    # ------------------------------------------------------------------
    # Consolidation sessions
    # ------------------------------------------------------------------

    def begin_session(self, stale_after: float, now: Optional[float] = None) -> Optional[str]:
        """Claim the sweep lock. Returns the new session id, or None if one is running.

        ``in_progress`` sessions older than *stale_after* seconds are marked
        failed first so that a crashed sweep cannot hold the lock forever.
        """
        conn = self._get_conn()
        ts = now if now is not None else time.time()
        try:
            stale = conn.execute(
                """
                UPDATE consolidation_sessions
                   SET status = 'failed', finished_at = ?, error = 'stale session'
                 WHERE status = 'in_progress' AND started_at < ?
                """,
                (ts, ts - stale_after),
            )
            if stale.rowcount:
                logger.warning("Marked %d stale consolidation session(s) failed", stale.rowcount)

            running = conn.execute(
                "SELECT id FROM consolidation_sessions WHERE status = 'in_progress' LIMIT 1"
            ).fetchone()
            if running:
                conn.commit()
                return None

            sid = _new_id()
            conn.execute(
                """INSERT INTO consolidation_sessions (id, status, started_at, stats)
                   VALUES (?, 'in_progress', ?, '{}')""",
                (sid, ts),
            )
            conn.commit()
            return sid
        except Exception:
            conn.rollback()
            raise

    def finish_session(
        self,
        session_id: str,
        status: str,
        stats: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        now: Optional[float] = None,
    ) -> None:
        conn = self._get_conn()
        if conn.in_transaction:
            conn.rollback()
        conn.execute(
            """
            UPDATE consolidation_sessions
               SET status = ?, finished_at = ?, stats = ?, error = ?
             WHERE id = ?
            """,
            (
                status, now if now is not None else time.time(),
                json.dumps(stats or {}), error, session_id,
            ),
        )
        conn.commit()

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM consolidation_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if not row:
            return None
        d = dict(row)
        d["stats"] = json.loads(d.get("stats") or "{}")
        return d

    def recent_sessions(self, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM consolidation_sessions ORDER BY started_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["stats"] = json.loads(d.get("stats") or "{}")
            out.append(d)
        return out

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def cache_embedding(self, text_hash: str, embedding_blob: bytes) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO embedding_cache (text_hash, embedding, created_at) VALUES (?, ?, ?)",
            (text_hash, embedding_blob, time.time()),
        )
        conn.commit()

    def get_cached_embedding(self, text_hash: str) -> Optional[bytes]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT embedding FROM embedding_cache WHERE text_hash = ?", (text_hash,)
        ).fetchone()
        return row["embedding"] if row else None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self, min_strength: float = 0.1) -> Dict[str, Any]:
        """Quick counts for dashboards and the sweep report."""
        conn = self._get_conn()

        def _count(sql: str, params: Tuple[Any, ...] = ()) -> int:
            return int(conn.execute(sql, params).fetchone()[0] or 0)

        return {
            "total_memories": _count("SELECT COUNT(*) FROM memories"),
            "pending_memories": _count(
                "SELECT COUNT(*) FROM memories WHERE processing_status = 'pending'"
            ),
            "vectorless_memories": _count(
                "SELECT COUNT(*) FROM memories WHERE vector_rowid IS NULL"
            ),
            "dormant_memories": _count(
                "SELECT COUNT(*) FROM memories WHERE current_strength <= ?", (min_strength,)
            ),
            "active_memories": _count(
                "SELECT COUNT(*) FROM memories WHERE current_strength > ?", (min_strength,)
            ),
            "entities": _count("SELECT COUNT(*) FROM entities WHERE is_merged = 0"),
            "merged_entities": _count("SELECT COUNT(*) FROM entities WHERE is_merged = 1"),
            "mentions": _count("SELECT COUNT(*) FROM entity_mentions"),
            "edges": _count("SELECT COUNT(*) FROM memory_edges"),
            "similar_edges": _count(
                "SELECT COUNT(*) FROM memory_edges WHERE edge_type = 'SIMILAR'"
            ),
            "db_path": self.db_path,
        }
