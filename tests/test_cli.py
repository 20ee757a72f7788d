"""End-to-end tests for the ``memory-graph`` command line."""

import json

import pytest

from memory_graph.cli import build_parser, main

LITERAL = "I met with Sarah Chen about the Nebula project yesterday"


@pytest.fixture
def run(tmp_path, monkeypatch, capsys):
    """Run the CLI offline against a temp database and return parsed stdout."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("MEMORY_GRAPH_DIMENSIONS", "4")
    db = str(tmp_path / "cli.sqlite")

    def _run(*argv, parse=True):
        capsys.readouterr()
        code = main(["--db", db, *argv])
        out = capsys.readouterr().out
        return code, (json.loads(out) if parse and out.strip() else out)
    return _run


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_add_then_query(run):
    code, added = run("add", LITERAL)
    assert code == 0
    assert added["entities_created"] == 2
    names = {e["name"] for e in added["entities"]}
    assert names == {"Sarah Chen", "Nebula"}

    code, listed = run("entities", "--type", "person")
    assert [e["name"] for e in listed["entities"]] == ["Sarah Chen"]
    assert listed["counts"]["project"] == 1

    code, profile = run("who", "sarah chen")
    assert profile["found"]
    assert [m["id"] for m in profile["memories"]] == [added["id"]]
    assert [c["name"] for c in profile["connected_entities"]] == ["Nebula"]

    code, neighbours = run("neighbors", "Sarah Chen")
    assert [n["name"] for n in neighbours] == ["Nebula"]

    code, path = run("path", "Sarah Chen", "Nebula")
    assert path["found"] and path["hops"] == 1


def test_unknown_entity(run):
    code, profile = run("who", "Nobody Atall")
    assert code == 0
    assert profile == {"found": False, "query": "Nobody Atall"}


def test_sweep_and_stats(run):
    run("add", LITERAL, "--no-extract")
    code, stats = run("sweep")
    assert code == 0
    assert stats["memories_extracted"] == 1
    # no API key configured: nothing to backfill with
    assert stats["vectors_backfilled"] == 0

    code, report = run("graph-stats")
    assert report["entities"]["active"] == 2
    assert report["consolidation"]["pending_memories"] == 0
    assert report["consolidation"]["recent_sessions"][0]["status"] == "completed"


def test_subgraph_full(run):
    run("add", LITERAL)
    code, graph = run("subgraph", "--full")
    assert len(graph["nodes"]) == 3
    assert {e["type"] for e in graph["edges"]} == {"MENTIONED_IN"}


def test_bad_input_exit_code(run):
    code, _ = run("extract", "no-such-memory", parse=False)
    assert code == 2
    code, _ = run("add", "   ", parse=False)
    assert code == 2
