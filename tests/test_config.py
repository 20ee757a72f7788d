"""Tests for configuration loading and validation."""

import json

from memory_graph.config import Config, load_config


def test_defaults(monkeypatch):
    monkeypatch.delenv("MEMORY_GRAPH_DB", raising=False)
    cfg = load_config()
    assert cfg.openrouter_api_key == "test-key-for-pytest"
    assert cfg.similarity_threshold == 0.75
    assert cfg.disambiguation_single_policy == "merge"
    assert cfg.db_path.endswith("memory.sqlite")
    assert cfg.validate() == []


def test_json_file_then_env_overlay(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "similarity_threshold": 0.8,
        "sweep_workers": "8",
        "max_edges_per_memory": "lots",
        "no_such_field": 1,
    }))
    monkeypatch.setenv("MEMORY_GRAPH_SIMILARITY_THRESHOLD", "0.9")

    cfg = load_config(str(path))
    assert cfg.similarity_threshold == 0.9
    assert cfg.sweep_workers == 8
    assert cfg.max_edges_per_memory == 10
    assert not hasattr(cfg, "no_such_field")


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "c.json"
    path.write_text(json.dumps({"disambiguation_single_policy": "strict"}))
    monkeypatch.setenv("MEMORY_GRAPH_CONFIG", str(path))
    assert load_config().disambiguation_single_policy == "strict"


def test_bad_env_value_ignored(monkeypatch):
    monkeypatch.setenv("MEMORY_GRAPH_SWEEP_WORKERS", "many")
    assert load_config().sweep_workers == 4


def test_validate_reports_problems():
    cfg = Config(
        openrouter_api_key="",
        similarity_threshold=0.0,
        sweep_workers=0,
        disambiguation_single_policy="maybe",
    )
    errors = cfg.validate()
    assert len(errors) == 4
    assert any("OPENROUTER_API_KEY" in e for e in errors)
    assert any("SINGLE_CANDIDATE_POLICY" in e for e in errors)
