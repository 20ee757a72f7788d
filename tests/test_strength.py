"""Tests for memory strength decay and strengthening."""

import random

import pytest

from memory_graph.config import Config
from memory_graph.strength import (
    SECONDS_PER_DAY,
    MemorySnapshot,
    StrengthEngine,
    calculate_decay,
    calculate_strengthen,
    net_strength_change,
)

NOW = 1_700_000_000.0


def _snap(salience=5.0, access_count=0, last_accessed_at=None, strength=1.0):
    return MemorySnapshot(
        id="m", salience=salience, access_count=access_count,
        last_accessed_at=last_accessed_at, current_strength=strength,
    )


@pytest.fixture
def config():
    return Config()


class TestFormulas:
    def test_unaccessed_low_salience_decays_faster(self, config):
        # protection 0.25 -> 0.05 * 0.75 * 1.5
        assert calculate_decay(_snap(), config, NOW) == pytest.approx(0.05625)
        assert calculate_strengthen(_snap(), config, NOW) == 0.0

    def test_high_salience_unaccessed_has_no_multiplier(self, config):
        # protection 0.4 -> 0.05 * 0.6
        assert calculate_decay(_snap(salience=8.0), config, NOW) == pytest.approx(0.03)

    def test_protection_capped(self, config):
        recent = NOW - SECONDS_PER_DAY
        memory = _snap(salience=8.0, access_count=5, last_accessed_at=recent, strength=0.5)
        assert calculate_decay(memory, config, NOW) == pytest.approx(0.005)
        assert calculate_strengthen(memory, config, NOW) == pytest.approx(0.1)
        assert net_strength_change(memory, config, NOW) == pytest.approx(0.095)

    def test_stale_access_gives_no_protection(self, config):
        old = NOW - 30 * SECONDS_PER_DAY
        memory = _snap(salience=5.0, access_count=1, last_accessed_at=old)
        # 0.25 + 0.1 protection, accessed once so no multiplier
        assert calculate_decay(memory, config, NOW) == pytest.approx(0.05 * 0.65)
        assert calculate_strengthen(memory, config, NOW) == 0.0

    def test_decay_never_crosses_floor(self, config):
        assert calculate_decay(_snap(strength=0.12), config, NOW) == pytest.approx(0.02)
        assert calculate_decay(_snap(strength=0.1), config, NOW) == 0.0

    def test_strengthen_never_crosses_ceiling(self, config):
        recent = NOW - 60
        memory = _snap(salience=9.0, access_count=4, last_accessed_at=recent, strength=0.98)
        assert calculate_strengthen(memory, config, NOW) == pytest.approx(0.02)


class TestEngine:
    def test_plan_skips_negligible_change(self, tmp_storage, config):
        engine = StrengthEngine(tmp_storage, config)
        assert engine.plan(_snap(strength=0.1005), NOW) is None
        assert engine.plan(_snap(), NOW) == pytest.approx(1.0 - 0.05625)

    def test_plan_is_repeatable(self, tmp_storage, config):
        engine = StrengthEngine(tmp_storage, config)
        memory = _snap(salience=7.0, access_count=2, last_accessed_at=NOW - 3600, strength=0.6)
        assert engine.plan(memory, NOW) == engine.plan(memory, NOW)

    def test_run_updates_rows(self, tmp_storage, config, add_memory):
        fading = add_memory("forgettable", salience=2.0)
        used = add_memory("used every day", salience=8.0)
        tmp_storage.update_strengths([(used, 0.5)], now=NOW)
        for _ in range(4):
            tmp_storage.record_access(used, now=NOW - 3600)

        result = StrengthEngine(tmp_storage, config).run(now=NOW)

        assert result.processed == 2
        assert result.decayed == 1
        assert result.strengthened == 1
        assert tmp_storage.get_memory(fading)["current_strength"] < 1.0
        assert tmp_storage.get_memory(used)["current_strength"] > 0.5

    def test_memories_at_floor_are_not_processed(self, tmp_storage, config, add_memory):
        mid = add_memory("dormant")
        tmp_storage.update_strengths([(mid, config.min_strength)], now=NOW)
        result = StrengthEngine(tmp_storage, config).run(now=NOW)
        assert result.processed == 0

    def test_bounds_hold_over_many_cycles(self, tmp_storage, add_memory):
        config = Config(sweep_batch_size=7)
        rng = random.Random(42)
        ids = []
        for i in range(25):
            mid = add_memory(f"memory {i}", salience=rng.uniform(0, 10))
            for _ in range(rng.randint(0, 5)):
                tmp_storage.record_access(mid, now=NOW - rng.uniform(0, 20) * SECONDS_PER_DAY)
            ids.append(mid)

        engine = StrengthEngine(tmp_storage, config)
        for cycle in range(60):
            engine.run(now=NOW + cycle * SECONDS_PER_DAY)
            for mid in ids:
                strength = tmp_storage.get_memory(mid)["current_strength"]
                assert config.min_strength <= strength <= 1.0
