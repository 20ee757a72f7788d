"""Memory strength: decay without reinforcement, growth with access and salience.

Each consolidation cycle recomputes decay and strengthening from the stored
salience and access statistics, so rerunning with unchanged inputs applies
the same bounded change instead of compounding hidden state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import Config, load_config
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
MIN_CHANGE = 0.001


@dataclass(frozen=True)
class MemorySnapshot:
    """The fields of one memory that drive its strength."""
    id: str
    salience: float
    access_count: int
    last_accessed_at: Optional[float]
    current_strength: float

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MemorySnapshot":
        return cls(
            id=row["id"],
            salience=float(row["salience_score"]),
            access_count=int(row["access_count"] or 0),
            last_accessed_at=row["last_accessed_at"],
            current_strength=float(row["current_strength"]),
        )


@dataclass
class StrengthResult:
    processed: int = 0
    decayed: int = 0
    strengthened: int = 0


def _recently_accessed(memory: MemorySnapshot, cfg: Config, now: float) -> bool:
    if memory.last_accessed_at is None:
        return False
    return (now - memory.last_accessed_at) <= cfg.access_decay_days * SECONDS_PER_DAY


def calculate_decay(memory: MemorySnapshot, cfg: Config, now: float) -> float:
    """Amount of strength lost this cycle (never pushes below ``min_strength``)."""
    salience_protection = (memory.salience / 10.0) * 0.5
    access_protection = 0.3 if _recently_accessed(memory, cfg, now) else 0.0
    frequency_protection = min(memory.access_count / 10.0, 0.2)
    protection = min(0.9, salience_protection + access_protection + frequency_protection)

    rate = cfg.decay_base_rate * (1.0 - protection)
    if memory.last_accessed_at is None and memory.salience < cfg.high_salience_threshold:
        rate *= cfg.unaccessed_multiplier

    return min(rate, max(0.0, memory.current_strength - cfg.min_strength))


def calculate_strengthen(memory: MemorySnapshot, cfg: Config, now: float) -> float:
    """Amount of strength gained this cycle (never pushes above ``max_strength``)."""
    gain = 0.0
    if _recently_accessed(memory, cfg, now):
        gain += cfg.strengthen_base_gain * 0.5
    if memory.salience >= cfg.high_salience_threshold:
        gain += cfg.strengthen_base_gain * 0.3
    if memory.access_count >= cfg.frequent_access_threshold:
        gain += cfg.strengthen_base_gain * 0.2

    return min(gain, max(0.0, cfg.max_strength - memory.current_strength))


def net_strength_change(memory: MemorySnapshot, cfg: Config, now: float) -> float:
    return calculate_strengthen(memory, cfg, now) - calculate_decay(memory, cfg, now)


class StrengthEngine:
    """Applies one decay/strengthen cycle to every memory above the floor."""

    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or load_config()

    def plan(self, memory: MemorySnapshot, now: float) -> Optional[float]:
        """New strength for *memory*, or None when the change is negligible."""
        cfg = self.config
        net = net_strength_change(memory, cfg, now)
        if abs(net) <= MIN_CHANGE:
            return None
        return min(cfg.max_strength, max(cfg.min_strength, memory.current_strength + net))

    def run(self, now: Optional[float] = None) -> StrengthResult:
        ts = now if now is not None else time.time()
        cfg = self.config
        result = StrengthResult()

        # Collect every page before writing so keyset pagination is not
        # disturbed by memories dropping to the floor mid-run.
        snapshots: List[MemorySnapshot] = []
        after_id = ""
        while True:
            rows = self.storage.strength_candidates(
                cfg.min_strength, after_id=after_id, limit=cfg.sweep_batch_size
            )
            if not rows:
                break
            snapshots.extend(MemorySnapshot.from_row(r) for r in rows)
            after_id = rows[-1]["id"]

        pending: List[Tuple[str, float]] = []
        for memory in snapshots:
            result.processed += 1
            new_strength = self.plan(memory, ts)
            if new_strength is None:
                continue
            if new_strength < memory.current_strength:
                result.decayed += 1
            else:
                result.strengthened += 1
            pending.append((memory.id, new_strength))
            if len(pending) >= cfg.sweep_batch_size:
                self.storage.update_strengths(pending, now=ts)
                pending = []

        if pending:
            self.storage.update_strengths(pending, now=ts)

        logger.info(
            "Strength pass: %d processed, %d decayed, %d strengthened",
            result.processed, result.decayed, result.strengthened,
        )
        return result
