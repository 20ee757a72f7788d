"""Knowledge-graph entities and mentions.

* ``Entity`` records with an explicit merge state (``Active`` or
  ``MergedInto(target_id)``) so read paths must handle merged rows
* ``EntityStore``: get-or-create through the disambiguation resolver, one
  critical section per (canonical name, type); idempotent mention linking;
  soft merge; fuzzy lookup with rapidfuzz; entity profiles
* ``KnowledgeGraph.extract_and_store``: extraction -> resolution -> storage
  for one observation
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from rapidfuzz import fuzz, process as rfprocess

from .config import Config, load_config
from .disambiguation import DisambiguationResolver
from .embeddings import EmbeddingError
from .extraction import ENTITY_TYPES, EntityExtractor, ExtractedEntity, ExtractionOptions
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

MAX_MERGE_CHAIN = 16

# Same-name creation is serialized on one of a fixed set of locks.
LOCK_STRIPES = 64


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class MergedInto:
    target_id: str


EntityState = Union[Active, MergedInto]


@dataclass
class Entity:
    """A named referent: person, project, organization, place or concept."""
    id: str
    name: str
    canonical_name: str
    entity_type: str
    aliases: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    has_embedding: bool = False
    first_seen_at: float = 0.0
    last_seen_at: float = 0.0
    mention_count: int = 1
    state: EntityState = field(default_factory=Active)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entity":
        state: EntityState = (
            MergedInto(row["merged_into_id"]) if row.get("is_merged") else Active()
        )
        return cls(
            id=row["id"],
            name=row["name"],
            canonical_name=row["canonical_name"],
            entity_type=row["entity_type"],
            aliases=list(row.get("aliases") or []),
            attributes=dict(row.get("attributes") or {}),
            description=row.get("description"),
            has_embedding=row.get("embedding") is not None,
            first_seen_at=float(row.get("first_seen_at") or 0.0),
            last_seen_at=float(row.get("last_seen_at") or 0.0),
            mention_count=int(row.get("mention_count") or 0),
            state=state,
        )

    @property
    def is_active(self) -> bool:
        return isinstance(self.state, Active)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.state, MergedInto):
            merged_into: Optional[str] = self.state.target_id
        else:
            merged_into = None
        return {
            "id": self.id,
            "name": self.name,
            "canonical_name": self.canonical_name,
            "type": self.entity_type,
            "aliases": list(self.aliases),
            "attributes": dict(self.attributes),
            "description": self.description,
            "first_seen_at": self.first_seen_at,
            "last_seen_at": self.last_seen_at,
            "mention_count": self.mention_count,
            "merged_into": merged_into,
        }


@dataclass(frozen=True)
class Mention:
    """Link between one observation and one entity at a text span."""
    id: str
    memory_id: str
    entity_id: str
    mention_text: str
    position_start: int
    position_end: int
    context_snippet: Optional[str] = None
    relationship_type: Optional[str] = None
    relationship_direction: Optional[str] = None
    extraction_method: str = "regex"
    confidence: Optional[float] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Mention":
        return cls(
            id=row["id"],
            memory_id=row["memory_id"],
            entity_id=row["entity_id"],
            mention_text=row["mention_text"],
            position_start=int(row["position_start"]),
            position_end=int(row["position_end"]),
            context_snippet=row.get("context_snippet"),
            relationship_type=row.get("relationship_type"),
            relationship_direction=row.get("relationship_direction"),
            extraction_method=row.get("extraction_method") or "regex",
            confidence=row.get("confidence"),
            created_at=float(row.get("created_at") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class EntityResolution:
    entity: Entity
    created: bool


@dataclass
class ExtractionResult:
    entities: List[Entity] = field(default_factory=list)
    mentions: List[Mention] = field(default_factory=list)
    entities_created: int = 0
    mentions_created: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "mentions": [m.to_dict() for m in self.mentions],
            "entities_created": self.entities_created,
            "mentions_created": self.mentions_created,
        }


@dataclass
class EntityProfile:
    """Everything known about one entity ("who is X?")."""
    entity: Entity
    memories: List[Dict[str, Any]]
    connected: List[Dict[str, Any]]
    primary_relationship: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "memories": self.memories,
            "connected_entities": self.connected,
            "primary_relationship": self.primary_relationship,
        }


def canonicalize(name: str) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return " ".join(name.split()).lower()


def _qualified_alias(name: str, relationship: Optional[str]) -> Optional[str]:
    return f"{name} ({relationship})" if relationship else None


# ---------------------------------------------------------------------------
# Entity store
# ---------------------------------------------------------------------------

class EntityStore:
    """Get-or-create and mention linking against the entity tables."""

    def __init__(
        self,
        storage: MemoryStorage,
        resolver: Optional[DisambiguationResolver] = None,
        embedder: Any = None,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.config = config or load_config()
        self.resolver = resolver or DisambiguationResolver(config=self.config)
        self.embedder = embedder
        self._locks: Tuple[asyncio.Lock, ...] = tuple(asyncio.Lock() for _ in range(LOCK_STRIPES))

    def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]

    # -- writes ---------------------------------------------------------

    async def get_or_create(
        self,
        extracted: ExtractedEntity,
        observation_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> EntityResolution:
        """Resolve *extracted* to an existing entity or create a new one.

        A resolved entity gets mention_count + 1 unless *observation_id* already
        holds a mention of it at the same span (reprocessing).
        """
        canonical = canonicalize(extracted.name)
        if not canonical:
            raise ValueError("entity name must be non-empty")
        if extracted.entity_type not in ENTITY_TYPES:
            raise ValueError(f"unknown entity type: {extracted.entity_type!r}")

        async with self._lock_for((canonical, extracted.entity_type)):
            if observation_id is not None:
                # reprocessing: keep whichever same-name entity already owns this span
                linked = self.storage.mentioned_entity_at(
                    observation_id, canonical, extracted.entity_type, extracted.start
                )
                if linked is not None:
                    return EntityResolution(Entity.from_row(linked), created=False)

            existing = [
                Entity.from_row(row)
                for row in self.storage.find_entities(canonical, extracted.entity_type)
            ]
            entity_id = await self.resolver.resolve(extracted, existing)

            if entity_id is None:
                entity = await self._create(extracted, canonical, now)
                logger.debug(
                    "Created entity %s %r (%s), %d same-name entities already known",
                    entity.id, entity.name, entity.entity_type, len(existing),
                )
                return EntityResolution(entity, created=True)

            already_linked = observation_id is not None and self.storage.get_mention(
                observation_id, entity_id, extracted.start
            ) is not None
            if not already_linked:
                self.storage.touch_entity(
                    entity_id, now=now,
                    alias=_qualified_alias(extracted.name, extracted.relationship),
                )
            entity = self.get(entity_id)
            if entity is None:
                raise LookupError(f"resolved entity {entity_id} does not exist")
            return EntityResolution(entity, created=False)

    async def _create(
        self, extracted: ExtractedEntity, canonical: str, now: Optional[float]
    ) -> Entity:
        embedding = None
        if self.embedder is not None:
            try:
                embedding = await asyncio.wait_for(
                    self.embedder.embed(extracted.name),
                    timeout=self.config.embed_timeout_seconds,
                )
            except (EmbeddingError, asyncio.TimeoutError) as exc:
                logger.warning("Entity embedding skipped for %r: %s", extracted.name, exc)

        attributes: Dict[str, Any] = {}
        aliases: List[str] = []
        if extracted.relationship:
            attributes["initial_relationship"] = extracted.relationship
            aliases.append(f"{extracted.name} ({extracted.relationship})")

        row = self.storage.insert_entity(
            name=extracted.name,
            canonical_name=canonical,
            entity_type=extracted.entity_type,
            aliases=aliases,
            attributes=attributes,
            embedding=embedding,
            description=extracted.context,
            now=now,
        )
        return Entity.from_row(row)

    def create_mention(
        self,
        memory_id: str,
        entity: Entity,
        extracted: ExtractedEntity,
        now: Optional[float] = None,
    ) -> Tuple[Mention, bool]:
        """Link *entity* to *memory_id* at the extracted span (idempotent)."""
        row, created = self.storage.insert_mention(
            memory_id=memory_id,
            entity_id=entity.id,
            mention_text=extracted.mention_text,
            position_start=extracted.start,
            position_end=extracted.end,
            context_snippet=extracted.context,
            relationship_type=extracted.relationship,
            relationship_direction="to_author" if extracted.relationship else None,
            extraction_method=extracted.method,
            confidence=extracted.confidence,
            now=now,
        )
        return Mention.from_row(row), created

    def merge(self, source_id: str, target_id: str, now: Optional[float] = None) -> Entity:
        """Soft-merge *source* into *target*; returns the updated target."""
        if source_id == target_id:
            raise ValueError("cannot merge an entity into itself")
        source = self.get(source_id)
        target = self.get(target_id)
        if source is None or target is None:
            raise ValueError("both entities must exist to merge")
        if not source.is_active or not target.is_active:
            raise ValueError("only active entities can be merged")
        self.storage.merge_entities(source_id, target_id, now=now)
        logger.info("Merged entity %s (%s) into %s", source_id, source.name, target_id)
        merged = self.get(target_id)
        if merged is None:
            raise LookupError(f"merge target {target_id} vanished")
        return merged

    # -- reads ----------------------------------------------------------

    def get(self, entity_id: str) -> Optional[Entity]:
        row = self.storage.get_entity(entity_id)
        return Entity.from_row(row) if row else None

    def resolve_active(self, entity_id: str) -> Optional[Entity]:
        """Follow merge pointers to the active entity (None if unknown)."""
        entity = self.get(entity_id)
        for _ in range(MAX_MERGE_CHAIN):
            if entity is None:
                return None
            state = entity.state
            if isinstance(state, Active):
                return entity
            entity = self.get(state.target_id)
        logger.error("Merge chain too long starting at %s", entity_id)
        return None

    def list_entities(
        self,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> List[Entity]:
        rows = self.storage.list_entities(entity_type, limit, offset, search)
        return [Entity.from_row(r) for r in rows]

    def search(
        self,
        query: str,
        entity_type: Optional[str] = None,
        limit: int = 10,
        score_cutoff: float = 75.0,
    ) -> List[Entity]:
        """Fuzzy lookup over canonical names and aliases."""
        needle = canonicalize(query)
        if not needle:
            return []

        labels: List[str] = []
        owners: List[Dict[str, Any]] = []
        for row in self.storage.entity_name_index(entity_type):
            for label in [row["canonical_name"]] + [canonicalize(a) for a in row["aliases"]]:
                labels.append(label)
                owners.append(row)

        best: Dict[str, Tuple[float, int]] = {}
        for _label, score, idx in rfprocess.extract(
            needle, labels, scorer=fuzz.WRatio, score_cutoff=score_cutoff, limit=None
        ):
            owner = owners[idx]
            prev = best.get(owner["id"])
            if prev is None or score > prev[0]:
                best[owner["id"]] = (score, int(owner["mention_count"]))

        ranked = sorted(best.items(), key=lambda kv: (-kv[1][0], -kv[1][1], kv[0]))[:limit]
        rows = self.storage.get_entities([eid for eid, _ in ranked])
        return [Entity.from_row(rows[eid]) for eid, _ in ranked if eid in rows]

    def find_by_name(self, query: str) -> Optional[Entity]:
        matches = self.search(query, limit=1)
        return matches[0] if matches else None

    def profile(self, entity_id: str, memory_limit: int = 50) -> Optional[EntityProfile]:
        entity = self.resolve_active(entity_id)
        if entity is None:
            return None
        connected = [
            {
                "id": row["id"],
                "name": row["name"],
                "type": row["entity_type"],
                "mention_count": row["mention_count"],
                "shared_memory_count": row["shared_count"],
            }
            for row in self.storage.co_occurring_entities(entity.id, limit=10)
        ]
        return EntityProfile(
            entity=entity,
            memories=self.storage.entity_memories(entity.id, limit=memory_limit),
            connected=connected,
            primary_relationship=self.storage.primary_relationship(entity.id),
        )

    def memory_entities(self, memory_id: str) -> List[Entity]:
        return [Entity.from_row(r) for r in self.storage.memory_entities(memory_id)]

    def count_by_type(self) -> Dict[str, int]:
        counts = {t: 0 for t in ENTITY_TYPES}
        counts.update(self.storage.count_entities_by_type())
        return counts


# ---------------------------------------------------------------------------
# Knowledge graph write path
# ---------------------------------------------------------------------------

class KnowledgeGraph:
    """Extraction + resolution + persistence for observations."""

    def __init__(
        self,
        storage: MemoryStorage,
        extractor: Optional[EntityExtractor] = None,
        entity_store: Optional[EntityStore] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.config = config or load_config()
        self.extractor = extractor or EntityExtractor(config=self.config)
        self.entities = entity_store or EntityStore(storage, config=self.config)

    async def extract_and_store(
        self,
        observation_id: str,
        text: str,
        options: Optional[ExtractionOptions] = None,
        now: Optional[float] = None,
    ) -> ExtractionResult:
        """Extract entities from *text* and link them to the observation.

        Re-running on the same (observation, text) returns the same mentions
        without creating duplicates.
        """
        if not observation_id or not observation_id.strip():
            raise ValueError("observation id must be non-empty")
        if not text or not text.strip():
            raise ValueError("text must be non-empty")
        if self.storage.get_memory(observation_id) is None:
            raise ValueError(f"unknown observation: {observation_id}")

        ts = now if now is not None else time.time()
        candidates = await self.extractor.extract(text, options)

        result = ExtractionResult()
        seen: Dict[str, int] = {}
        for candidate in candidates:
            resolution = await self.entities.get_or_create(
                candidate, observation_id=observation_id, now=ts
            )
            mention, created = self.entities.create_mention(
                observation_id, resolution.entity, candidate, now=ts
            )
            if resolution.created:
                result.entities_created += 1
            if created:
                result.mentions_created += 1
            result.mentions.append(mention)

            # keep one (latest) snapshot per entity, in first-seen order
            entity = self.entities.get(resolution.entity.id) or resolution.entity
            if entity.id in seen:
                result.entities[seen[entity.id]] = entity
            else:
                seen[entity.id] = len(result.entities)
                result.entities.append(entity)

        logger.debug(
            "extract_and_store %s: %d entities (%d new), %d mentions (%d new)",
            observation_id, len(result.entities), result.entities_created,
            len(result.mentions), result.mentions_created,
        )
        return result

    async def process_memory(
        self, memory_id: str, options: Optional[ExtractionOptions] = None
    ) -> ExtractionResult:
        """Extract a stored memory by id and mark it processed."""
        memory = self.storage.get_memory(memory_id)
        if memory is None:
            raise ValueError(f"unknown observation: {memory_id}")
        result = await self.extract_and_store(memory_id, memory["text"], options)
        self.storage.mark_processed(memory_id)
        return result
