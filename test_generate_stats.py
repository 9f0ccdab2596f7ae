"""Tests for generate_stats.py"""

import json
from datetime import datetime, timedelta, timezone

import pytest

import generate_stats as gs
import live_feed as lf
import player_store as ps
from test_live_feed import FakeResponse

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def iso(days_ago):
    return (NOW - timedelta(days=days_ago)).isoformat()


def epoch(days_ago):
    return int((NOW - timedelta(days=days_ago)).timestamp())


@pytest.fixture
def dirs(tmp_path, monkeypatch):
    """Point the script at temp archive/players dirs and a fake worker URL."""
    archive = tmp_path / "archive"
    players = tmp_path / "players"
    monkeypatch.setattr(gs, "ARCHIVE_DIR", archive)
    monkeypatch.setattr(gs, "PLAYERS_DIR", players)
    monkeypatch.setattr(ps, "ENV_FILE", tmp_path / ".env")
    monkeypatch.setenv("CF_WORKER_URL", "https://worker.example")
    return archive, players


def serve(monkeypatch, feed_body, discord_body=None):
    """Fake the worker: '/' returns feed_body, '/discord' returns discord_body."""
    def fake_get(url, **kwargs):
        if url.endswith("/discord"):
            return FakeResponse(discord_body if discord_body is not None else {})
        if isinstance(feed_body, str):
            return FakeResponse(text=feed_body)
        return FakeResponse(feed_body)

    monkeypatch.setattr(lf.requests, "get", fake_get)


def base_record(fc="1111-2222-3333", **extra):
    record = {
        "name": "Alice",
        "fc": fc,
        "vr_history": [
            {"date": iso(40), "vrChange": 10, "totalVR": 10},
            {"date": iso(10), "vrChange": -10, "totalVR": 0},
            {"date": iso(5), "vrChange": 50, "totalVR": 50},
        ],
        "discord": "unknown",
    }
    record.update(extra)
    return record


def read_player(directory, fc):
    return json.loads((directory / f"{ps.safe_fc(fc)}.json").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# update_players
# ---------------------------------------------------------------------------

class TestUpdatePlayers:
    def test_live_rows_appended_and_stats(self):
        players = {"1111-2222-3333": base_record()}
        snaps = lf.to_snapshots([(epoch(0), [{"fc": "1111-2222-3333", "ev": 120}])])
        added = gs.update_players(players, snaps, {}, NOW)
        record = players["1111-2222-3333"]
        assert added == 1
        assert [h["totalVR"] for h in record["vr_history"]] == [0, 50, 120]
        assert record["vr_history"][-1]["vrChange"] == 70
        assert record["vrStats"] == {"last24Hours": 0, "lastWeek": 70, "lastMonth": 120}

    def test_rerun_is_idempotent(self):
        players = {}
        snaps = lf.to_snapshots([(epoch(2), [{"fc": "a", "ev": 100}]),
                                 (epoch(1), [{"fc": "a", "ev": 130}])])
        gs.update_players(players, snaps, {}, NOW)
        first = json.dumps(players, sort_keys=True)
        assert gs.update_players(players, snaps, {}, NOW) == 0
        assert json.dumps(players, sort_keys=True) == first

    def test_new_player_gets_unknown_discord(self):
        players = {}
        gs.update_players(players, lf.to_snapshots([(epoch(0), [{"fc": "b", "ev": 1}])]), {}, NOW)
        assert players["b"]["discord"] == "unknown"
        assert players["b"]["name"] == "Unknown"

    def test_discord_cache_applied(self):
        players = {"a": base_record("a", discord="linked:abc"),
                   "b": base_record("b"),
                   "c": base_record("c")}
        cache = {"a": "not_linked", "b": "not_linked", "c": "linked:xyz"}
        gs.update_players(players, [], cache, NOW)
        assert players["a"]["discord"] == "linked:abc"
        assert players["b"]["discord"] == "not_linked"
        assert players["c"]["discord"] == "linked:xyz"

    def test_fully_pruned_player_kept(self):
        old = {"fc": "old", "name": "Old", "vr_history": [{"date": iso(60), "vrChange": 1, "totalVR": 1}]}
        players = {"old": old}
        gs.update_players(players, [], {}, NOW)
        assert players["old"]["vr_history"] == []
        assert "vrStats" not in players["old"]


# ---------------------------------------------------------------------------
# run / main
# ---------------------------------------------------------------------------

class TestRun:
    def test_updates_existing_players(self, dirs, monkeypatch):
        _, players_dir = dirs
        ps.write_players(players_dir, {"1111-2222-3333": base_record()})
        serve(monkeypatch, {"results": [
            {"timestamp": epoch(0), "data": json.dumps([{"fc": "1111-2222-3333", "name": "Alicia", "ev": 120}])},
        ]}, {"1111-2222-3333": "linked:xyz"})

        gs.run(now=NOW)

        record = read_player(players_dir, "1111-2222-3333")
        assert record["name"] == "Alicia"
        assert record["discord"] == "linked:xyz"
        assert record["vrStats"]["lastWeek"] == 70
        assert len(record["vr_history"]) == 3

    def test_bad_feed_uses_base_only(self, dirs, monkeypatch):
        _, players_dir = dirs
        ps.write_players(players_dir, {"1111-2222-3333": base_record()})
        serve(monkeypatch, "not json")

        gs.run(now=NOW)

        record = read_player(players_dir, "1111-2222-3333")
        assert [h["totalVR"] for h in record["vr_history"]] == [0, 50]
        # nothing in the last day, so the 24h window falls back to the oldest entry
        assert record["vrStats"] == {"last24Hours": 50, "lastWeek": 0, "lastMonth": 50}

    def test_archive_is_base_and_removed(self, dirs, monkeypatch):
        archive, players_dir = dirs
        ps.write_players(archive, {"a": base_record("a")})
        ps.write_players(players_dir, {"stale": base_record("stale")})
        serve(monkeypatch, [])

        players = gs.run(now=NOW)

        assert set(players) == {"a"}
        assert not archive.exists()
        assert read_player(players_dir, "a")["fc"] == "a"

    def test_archive_overlap_not_duplicated(self, dirs, monkeypatch):
        archive, players_dir = dirs
        live_date = lf.to_snapshots([(epoch(1), [])])[0][0]
        record = base_record("a")
        record["vr_history"].append({"date": live_date, "vrChange": 25, "totalVR": 75})
        ps.write_players(archive, {"a": record})
        serve(monkeypatch, [{"timestamp": epoch(1), "data": [{"fc": "a", "ev": 999}]}])

        gs.run(now=NOW)

        history = read_player(players_dir, "a")["vr_history"]
        assert [h["totalVR"] for h in history] == [0, 50, 75]

    def test_missing_worker_url_is_fatal(self, dirs, monkeypatch, capsys):
        monkeypatch.delenv("CF_WORKER_URL", raising=False)
        with pytest.raises(SystemExit) as exc:
            gs.main()
        assert exc.value.code == 1
        assert "FATAL" in capsys.readouterr().out
