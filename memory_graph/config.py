"""Configuration for the memory graph engine.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``MEMORY_GRAPH_*`` prefix.  The OpenRouter
    credentials keep their provider names (``OPENROUTER_API_KEY``,
    ``OPENROUTER_BASE_URL``).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

VALID_SINGLE_CANDIDATE_POLICIES = ("merge", "strict")


@dataclass
class Config:
    """Central configuration for extraction, consolidation and graph queries."""

    # OpenRouter (embeddings + chat completions)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "qwen/qwen3-embedding-8b"
    embedding_dimensions: int = 4096
    completion_model: str = "meta-llama/llama-3.3-70b-instruct"

    # Storage
    db_path: str = ""  # resolved in load_config()

    # Collaborator timeouts / retries
    embed_timeout_seconds: float = 60.0
    embed_max_retries: int = 3
    embed_cache_size: int = 1024
    llm_timeout_seconds: float = 30.0
    llm_max_retries: int = 2

    # Extraction
    min_regex_confidence: float = 0.6
    llm_extraction_temperature: float = 0.2
    llm_extraction_max_tokens: int = 1000

    # Disambiguation: "merge" keeps the same entity when only one side has a
    # relationship hint, "strict" treats that case as a new entity.
    disambiguation_single_policy: str = "merge"
    disambiguation_max_tokens: int = 20

    # Strength / decay
    decay_base_rate: float = 0.05
    min_strength: float = 0.1
    access_decay_days: float = 7.0
    unaccessed_multiplier: float = 1.5
    strengthen_base_gain: float = 0.1
    max_strength: float = 1.0
    frequent_access_threshold: int = 3
    high_salience_threshold: float = 6.0

    # SIMILAR edges
    similarity_threshold: float = 0.75
    max_edges_per_memory: int = 10
    edge_decay_rate: float = 0.1
    min_edge_weight: float = 0.2
    edge_reinforce_step: float = 0.1

    # Graph traversal
    traversal_hop_decay: float = 0.8

    # Consolidation sweep
    sweep_interval_seconds: float = 3600.0
    sweep_batch_size: int = 200
    sweep_workers: int = 4
    sweep_stale_after_seconds: float = 6 * 3600.0

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if not self.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY is required for embeddings and model extraction")
        if self.embedding_dimensions < 1:
            errors.append("MEMORY_GRAPH_DIMENSIONS must be >= 1")
        if not 0.0 <= self.min_strength < self.max_strength <= 1.0:
            errors.append("min_strength must be in [0, max_strength) and max_strength <= 1.0")
        if not 0.0 < self.similarity_threshold <= 1.0:
            errors.append("MEMORY_GRAPH_SIMILARITY_THRESHOLD must be in (0, 1]")
        if not 0.0 <= self.min_edge_weight < 1.0:
            errors.append("MEMORY_GRAPH_MIN_EDGE_WEIGHT must be in [0, 1)")
        if self.max_edges_per_memory < 1:
            errors.append("MEMORY_GRAPH_MAX_EDGES must be >= 1")
        if self.sweep_workers < 1:
            errors.append("MEMORY_GRAPH_SWEEP_WORKERS must be >= 1")
        if self.disambiguation_single_policy not in VALID_SINGLE_CANDIDATE_POLICIES:
            errors.append(
                "MEMORY_GRAPH_SINGLE_CANDIDATE_POLICY must be one of "
                + ", ".join(VALID_SINGLE_CANDIDATE_POLICIES)
            )
        return errors


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional except OPENROUTER_API_KEY):
        OPENROUTER_API_KEY
        OPENROUTER_BASE_URL
        MEMORY_GRAPH_DB
        MEMORY_GRAPH_EMBED_MODEL
        MEMORY_GRAPH_DIMENSIONS
        MEMORY_GRAPH_LLM_MODEL
        MEMORY_GRAPH_LLM_TIMEOUT
        MEMORY_GRAPH_SIMILARITY_THRESHOLD
        MEMORY_GRAPH_SWEEP_INTERVAL
        MEMORY_GRAPH_SWEEP_WORKERS
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("MEMORY_GRAPH_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError):
                    logger.warning("Ignoring bad config value %s=%r", key, val)

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "OPENROUTER_API_KEY": ("openrouter_api_key", str),
        "OPENROUTER_BASE_URL": ("openrouter_base_url", str),
        "MEMORY_GRAPH_DB": ("db_path", str),
        "MEMORY_GRAPH_EMBED_MODEL": ("embedding_model", str),
        "MEMORY_GRAPH_DIMENSIONS": ("embedding_dimensions", int),
        "MEMORY_GRAPH_LLM_MODEL": ("completion_model", str),
        "MEMORY_GRAPH_LLM_TIMEOUT": ("llm_timeout_seconds", float),
        "MEMORY_GRAPH_EMBED_TIMEOUT": ("embed_timeout_seconds", float),
        "MEMORY_GRAPH_MIN_REGEX_CONFIDENCE": ("min_regex_confidence", float),
        "MEMORY_GRAPH_SINGLE_CANDIDATE_POLICY": ("disambiguation_single_policy", str),
        "MEMORY_GRAPH_MIN_STRENGTH": ("min_strength", float),
        "MEMORY_GRAPH_DECAY_RATE": ("decay_base_rate", float),
        "MEMORY_GRAPH_SIMILARITY_THRESHOLD": ("similarity_threshold", float),
        "MEMORY_GRAPH_MAX_EDGES": ("max_edges_per_memory", int),
        "MEMORY_GRAPH_EDGE_DECAY_RATE": ("edge_decay_rate", float),
        "MEMORY_GRAPH_MIN_EDGE_WEIGHT": ("min_edge_weight", float),
        "MEMORY_GRAPH_SWEEP_INTERVAL": ("sweep_interval_seconds", float),
        "MEMORY_GRAPH_SWEEP_BATCH": ("sweep_batch_size", int),
        "MEMORY_GRAPH_SWEEP_WORKERS": ("sweep_workers", int),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                logger.warning("Ignoring bad environment value %s=%r", env_key, val)

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".memory-graph" / "memory.sqlite")

    return cfg
