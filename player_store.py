"""
JSON file storage for Retro Rewind player records.
One pretty-printed file per player under archive/ (backfill output) or
players/ (dashboard data), named by a filesystem-safe friend code.
Also holds the shared console and .env helpers used by both scripts.
"""

import json
import os
import re
import shutil
from pathlib import Path

BASE_DIR = Path(__file__).parent
ARCHIVE_DIR = BASE_DIR / "archive"
PLAYERS_DIR = BASE_DIR / "players"
ENV_FILE = BASE_DIR / ".env"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9-]")


def safe_print(*args, **kwargs):
    """Print that won't crash on Unicode in cp1252 console."""
    try:
        print(*args, **kwargs)
    except UnicodeEncodeError:
        text = " ".join(str(a) for a in args)
        print(text.encode("ascii", errors="replace").decode(), **kwargs)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def load_env_value(key, env_file=None):
    """Look up a setting in the environment, then in the .env file."""
    value = os.environ.get(key)
    if value:
        return value.strip()

    env_file = env_file or ENV_FILE
    if not env_file.exists():
        return None
    with open(env_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line.startswith("#") or "=" not in line:
                continue
            k, _, v = line.partition("=")
            if k.strip() == key:
                return v.strip().strip('"').strip("'") or None
    return None


# ---------------------------------------------------------------------------
# Player files
# ---------------------------------------------------------------------------

def safe_fc(fc):
    """'1234-5678-9012' stays as is; anything outside [A-Za-z0-9-] becomes '_'."""
    return _UNSAFE_CHARS.sub("_", str(fc))


def player_path(directory, fc):
    return Path(directory) / f"{safe_fc(fc)}.json"


def write_player(directory, record):
    """Write one player record as indented JSON and return the path."""
    path = player_path(directory, record["fc"])
    with open(path, "w", encoding="utf-8") as f:
        json.dump(record, f, indent=2, ensure_ascii=False)
    return path


def write_players(directory, player_map):
    """Write every record in player_map. Returns the number of files written."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    for record in player_map.values():
        write_player(directory, record)
    return len(player_map)


def load_players(directory):
    """Load all *.json player files in a directory into {fc: record}.

    Files that can't be parsed or have no fc are skipped with a warning.
    """
    directory = Path(directory)
    player_map = {}
    if not directory.exists():
        return player_map

    for path in sorted(directory.glob("*.json")):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            safe_print(f"WARNING: Skipping unreadable player file {path.name}: {e}")
            continue

        if not isinstance(data, dict) or not isinstance(data.get("fc"), str) or not data["fc"]:
            safe_print(f"WARNING: Skipping {path.name} (no fc)")
            continue
        history = data.get("vr_history")
        if not isinstance(history, list):
            history = []
        data["vr_history"] = [
            h for h in history
            if isinstance(h, dict) and "date" in h and isinstance(h.get("totalVR"), int)
        ]
        player_map[data["fc"]] = data

    return player_map


def choose_base_dir(archive_dir=None, players_dir=None):
    """Return (directory, from_archive): a pending backfill archive wins."""
    archive_dir = Path(archive_dir or ARCHIVE_DIR)
    players_dir = Path(players_dir or PLAYERS_DIR)
    if archive_dir.exists():
        return archive_dir, True
    return players_dir, False


def reset_dir(directory):
    """Delete a directory if present and recreate it empty."""
    directory = Path(directory)
    if directory.exists():
        shutil.rmtree(directory)
    directory.mkdir(parents=True)


def remove_dir(directory):
    directory = Path(directory)
    if directory.exists():
        shutil.rmtree(directory)
