"""Command-line entry point (``memory-graph``).

Usage:
    memory-graph add "Had lunch with Sarah Chen about the Nebula project"
    memory-graph extract <memory_id> --force-model
    memory-graph sweep                 # one consolidation sweep
    memory-graph sweep --loop          # sweep every MEMORY_GRAPH_SWEEP_INTERVAL seconds
    memory-graph entities --type person --search rick
    memory-graph who "Sarah Chen"
    memory-graph neighbors <entity_id>
    memory-graph path <start> <end> [--memories]
    memory-graph subgraph <id> [--memory]
    memory-graph graph-stats
    memory-graph metrics

Results are printed as JSON on stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List, Optional

from . import metrics
from .config import Config, load_config
from .consolidation import ConsolidationOrchestrator
from .disambiguation import DisambiguationResolver
from .embeddings import EmbeddingError, OpenRouterEmbeddings
from .entities import EntityStore, KnowledgeGraph
from .extraction import ENTITY_TYPES, EntityExtractor, ExtractionOptions
from .graph import GraphQueryEngine
from .llm import OpenRouterCompletions
from .storage import MemoryStorage

logger = logging.getLogger("memory_graph")


class Services:
    """Everything one CLI invocation needs, wired from a single Config."""

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        self.storage = MemoryStorage(db_path=cfg.db_path, dimensions=cfg.embedding_dimensions)
        self.embedder: Optional[OpenRouterEmbeddings] = None
        completer: Optional[OpenRouterCompletions] = None
        if cfg.openrouter_api_key:
            self.embedder = OpenRouterEmbeddings(
                api_key=cfg.openrouter_api_key,
                model=cfg.embedding_model,
                dimensions=cfg.embedding_dimensions,
            )
            self.embedder.set_storage(self.storage)
            completer = OpenRouterCompletions(
                api_key=cfg.openrouter_api_key, model=cfg.completion_model
            )

        self.entities = EntityStore(
            self.storage,
            resolver=DisambiguationResolver(completer, cfg),
            embedder=self.embedder,
            config=cfg,
        )
        self.graph = KnowledgeGraph(
            self.storage,
            extractor=EntityExtractor(completer, cfg),
            entity_store=self.entities,
            config=cfg,
        )
        self.queries = GraphQueryEngine(self.storage, cfg)
        self.orchestrator = ConsolidationOrchestrator(
            self.storage, self.graph, embedder=self.embedder, config=cfg
        )

    def close(self) -> None:
        self.storage.close()


def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, ensure_ascii=False, indent=2, default=str)
    sys.stdout.write("\n")


def _options(args: argparse.Namespace) -> ExtractionOptions:
    return ExtractionOptions(
        force_model=getattr(args, "force_model", False),
        regex_only=getattr(args, "regex_only", False),
    )


def _entity_id(svc: Services, ref: str) -> Optional[str]:
    """Accept an entity id or a (fuzzy) name."""
    if svc.storage.get_entity(ref) is not None:
        return ref
    entity = svc.entities.find_by_name(ref)
    return entity.id if entity else None


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

async def cmd_add(svc: Services, args: argparse.Namespace) -> Any:
    vector = None
    if svc.embedder is not None:
        try:
            vector = await svc.embedder.embed(args.text)
        except EmbeddingError as exc:
            logger.warning("Storing without a vector (next sweep backfills it): %s", exc)
    memory_id = svc.storage.store_memory(
        args.text, vector=vector, salience=args.salience, source=args.source
    )
    out: dict = {"id": memory_id}
    if not args.no_extract:
        result = await svc.graph.process_memory(memory_id, _options(args))
        out.update(result.to_dict())
    return out


async def cmd_extract(svc: Services, args: argparse.Namespace) -> Any:
    result = await svc.graph.process_memory(args.memory_id, _options(args))
    return result.to_dict()


async def cmd_sweep(svc: Services, args: argparse.Namespace) -> Any:
    if args.loop:
        await svc.orchestrator.run_forever(args.interval)
        return None
    stats = await svc.orchestrator.run_sweep()
    return stats.to_dict()


async def cmd_entities(svc: Services, args: argparse.Namespace) -> Any:
    if args.fuzzy:
        found = svc.entities.search(args.fuzzy, entity_type=args.type, limit=args.limit)
    else:
        found = svc.entities.list_entities(args.type, args.limit, args.offset, args.search)
    return {
        "entities": [e.to_dict() for e in found],
        "counts": svc.entities.count_by_type(),
    }


async def cmd_who(svc: Services, args: argparse.Namespace) -> Any:
    entity_id = _entity_id(svc, args.entity)
    profile = svc.entities.profile(entity_id, args.limit) if entity_id else None
    if profile is None:
        return {"found": False, "query": args.entity}
    return {"found": True, **profile.to_dict()}


async def cmd_neighbors(svc: Services, args: argparse.Namespace) -> Any:
    entity_id = _entity_id(svc, args.entity)
    if entity_id is None:
        return []
    return svc.queries.find_entity_neighbors(
        entity_id, limit=args.limit, min_shared=args.min_shared, entity_type=args.type
    )


async def cmd_path(svc: Services, args: argparse.Namespace) -> Any:
    if args.memories:
        return svc.queries.find_memory_path(args.start, args.end, max_hops=args.max_hops).to_dict()
    start = _entity_id(svc, args.start) or args.start
    end = _entity_id(svc, args.end) or args.end
    return svc.queries.find_entity_path(start, end, max_hops=args.max_hops).to_dict()


async def cmd_subgraph(svc: Services, args: argparse.Namespace) -> Any:
    if args.full:
        return svc.queries.full_graph(node_limit=args.limit).to_dict()
    if args.memory:
        return svc.queries.memory_subgraph(
            args.id, max_hops=args.max_hops, node_limit=args.limit
        ).to_dict()
    entity_id = _entity_id(svc, args.id) or args.id
    return svc.queries.entity_subgraph(entity_id).to_dict()


async def cmd_graph_stats(svc: Services, args: argparse.Namespace) -> Any:
    stats = svc.queries.graph_stats()
    stats["consolidation"] = svc.orchestrator.consolidation_stats()
    return stats


async def cmd_metrics(svc: Services, args: argparse.Namespace) -> Any:
    sys.stdout.write(metrics.render_prometheus_metrics())
    return None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memory-graph",
        description="Memory consolidation and knowledge-graph engine",
    )
    parser.add_argument("--config", help="Path to a JSON config file (default: $MEMORY_GRAPH_CONFIG)")
    parser.add_argument("--db", help="SQLite database path (default: $MEMORY_GRAPH_DB)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="Store an observation and extract its entities")
    p.add_argument("text")
    p.add_argument("--salience", type=float, default=5.0, help="Importance 0-10 (default: 5)")
    p.add_argument("--source", default="cli")
    p.add_argument("--no-extract", action="store_true", help="Leave extraction to the next sweep")
    p.add_argument("--force-model", action="store_true")
    p.add_argument("--regex-only", action="store_true")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("extract", help="Re-run entity extraction for a stored observation")
    p.add_argument("memory_id")
    p.add_argument("--force-model", action="store_true")
    p.add_argument("--regex-only", action="store_true")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("sweep", help="Run a consolidation sweep")
    p.add_argument("--loop", action="store_true", help="Keep sweeping on an interval")
    p.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("entities", help="List or search entities")
    p.add_argument("--type", choices=ENTITY_TYPES)
    p.add_argument("--search", help="Substring filter on the name")
    p.add_argument("--fuzzy", help="Fuzzy match on names and aliases")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)
    p.set_defaults(func=cmd_entities)

    p = sub.add_parser("who", help="What do I know about an entity?")
    p.add_argument("entity", help="Entity id or name")
    p.add_argument("--limit", type=int, default=20, help="Max memories to show")
    p.set_defaults(func=cmd_who)

    p = sub.add_parser("neighbors", help="Co-occurring entities")
    p.add_argument("entity", help="Entity id or name")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--min-shared", type=int, default=1)
    p.add_argument("--type", choices=ENTITY_TYPES)
    p.set_defaults(func=cmd_neighbors)

    p = sub.add_parser("path", help="Shortest path between two entities or memories")
    p.add_argument("start")
    p.add_argument("end")
    p.add_argument("--memories", action="store_true", help="Ids are memory ids")
    p.add_argument("--max-hops", type=int, default=4)
    p.set_defaults(func=cmd_path)

    p = sub.add_parser("subgraph", help="Bounded subgraph around an entity or memory")
    p.add_argument("id", nargs="?", default="")
    p.add_argument("--memory", action="store_true", help="Focal id is a memory id")
    p.add_argument("--full", action="store_true", help="Capped overview of the whole graph")
    p.add_argument("--max-hops", type=int, default=1)
    p.add_argument("--limit", type=int, default=50, help="Node limit")
    p.set_defaults(func=cmd_subgraph)

    p = sub.add_parser("graph-stats", help="Graph and consolidation statistics")
    p.set_defaults(func=cmd_graph_stats)

    p = sub.add_parser("metrics", help="Prometheus metrics of this process")
    p.set_defaults(func=cmd_metrics)

    return parser


async def _run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if args.db:
        cfg.db_path = args.db
    for problem in cfg.validate():
        logger.warning("Config: %s", problem)

    svc = Services(cfg)
    try:
        result = await args.func(svc, args)
    finally:
        svc.close()
    if result is not None:
        _emit(result)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    try:
        return asyncio.run(_run(args))
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
