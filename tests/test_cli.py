import json
import logging
import sys

import pytest

from cineai_rec import cli


def test_cli_dispatch_init_db(monkeypatch):
    called = {}

    def fake_init(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_init_db", fake_init)
    monkeypatch.setattr(sys, "argv", ["prog", "init-db"])

    cli.main()
    assert called["command"] == "init-db"


def test_cli_parses_recommend_args(monkeypatch):
    captured = {}

    def fake_recommend(args):
        captured.update(vars(args))

    monkeypatch.setattr(cli, "cmd_recommend", fake_recommend)
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "recommend", "alice", "--query", "cozy mystery", "--intent", "mood", "--count", "5"],
    )

    cli.main()

    assert captured["user_id"] == "alice"
    assert captured["query"] == "cozy mystery"
    assert captured["intent"] == "mood"
    assert captured["count"] == 5
    assert captured["json"] is False


def test_cli_requires_a_command(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog"])

    with pytest.raises(SystemExit):
        cli.main()


def test_cmd_score_logs_weighted_score(monkeypatch, caplog, tmp_path):
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "--weights-file", str(tmp_path / "absent.json"),
         "score", "--signals", '{"semantic": 1.0, "storyline": 0.5}'],
    )

    with caplog.at_level(logging.INFO, logger="cineai_rec.cli"):
        cli.main()

    assert "Score: 0.4000" in caplog.text


def test_cmd_score_rejects_unknown_signal(monkeypatch, tmp_path):
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "--weights-file", str(tmp_path / "absent.json"),
         "score", "--signals", '{"vibes": 1.0}'],
    )

    with pytest.raises(SystemExit, match="Unknown signal"):
        cli.main()


def test_cmd_weights_set_normalize_and_save(monkeypatch, tmp_path):
    out = tmp_path / "tuned.json"
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "--weights-file", str(tmp_path / "absent.json"),
         "weights", "--set", "semantic=0.6", "--normalize", "--save", str(out)],
    )

    cli.main()

    payload = json.loads(out.read_text())
    assert sum(payload["weights"].values()) == pytest.approx(1.0)
    assert payload["weights"]["semantic"] == pytest.approx(0.6 / 1.3)
    assert payload["boosts"]["memory"] == 0.25


def test_cmd_weights_rejects_unknown_name(monkeypatch, tmp_path):
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "--weights-file", str(tmp_path / "absent.json"), "weights", "--set", "charm=0.2"],
    )

    with pytest.raises(SystemExit, match="unknown weight"):
        cli.main()


def test_cmd_import_and_resolve_against_local_db(fresh_db, monkeypatch, tmp_path, caplog):
    movies = tmp_path / "movies.json"
    movies.write_text(json.dumps([
        {"title": "Knives Out", "year": 2019, "genres": "Mystery, Comedy", "rating": 7.9},
        {"year": 1999},
    ]))
    monkeypatch.setattr(cli, "TMDB_API_KEY", None)

    monkeypatch.setattr(sys, "argv", ["prog", "import-movies", str(movies)])
    cli.main()
    assert fresh_db.count_movies() == 1
    assert fresh_db.find_movie_by_title("knives out").genres == ["Mystery", "Comedy"]

    monkeypatch.setattr(sys, "argv", ["prog", "resolve", "knives out", "Not A Film"])
    with caplog.at_level(logging.INFO, logger="cineai_rec.cli"):
        cli.main()

    assert "Knives Out (2019) [database, confidence 0.80]" in caplog.text


def test_cmd_recommend_requires_api_key(monkeypatch):
    monkeypatch.setattr(cli, "ANTHROPIC_API_KEY", None)
    monkeypatch.setattr(sys, "argv", ["prog", "recommend", "alice", "--query", "anything"])

    with pytest.raises(SystemExit, match="ANTHROPIC_API_KEY"):
        cli.main()
