"""
Live update of player VR history.
Loads the base player data (a pending backfill archive if present, else the
existing players/ files), appends the live snapshot rows from the Cloudflare
worker, prunes to 30 days, recomputes vrStats, syncs discord links and writes
players/<fc>.json.
Requires CF_WORKER_URL (environment or .env).
"""

import sys
from datetime import datetime, timezone

from live_feed import fetch_discord_cache, fetch_feed, to_snapshots
from player_store import (
    ARCHIVE_DIR, PLAYERS_DIR, choose_base_dir, load_env_value, load_players,
    remove_dir, safe_print, write_players,
)
from vr_history import apply_snapshots, finalize_player


def update_players(player_map, snapshots, discord_cache, now):
    """Apply live snapshots on top of player_map, then prune and compute stats."""
    added = apply_snapshots(player_map, snapshots, default_discord="unknown")
    for record in player_map.values():
        finalize_player(record, now, discord_cache)
    return added


def run(now=None):
    now = now or datetime.now(timezone.utc)
    PLAYERS_DIR.mkdir(parents=True, exist_ok=True)

    worker_url = load_env_value("CF_WORKER_URL")
    if not worker_url:
        raise RuntimeError("CF_WORKER_URL env var missing")

    base_dir, from_archive = choose_base_dir(ARCHIVE_DIR, PLAYERS_DIR)
    safe_print(f"Loading base data from {base_dir.name}...")
    player_map = load_players(base_dir)
    safe_print(f"Loaded {len(player_map)} players")

    safe_print("Fetching Cloudflare Data...")
    feed_rows = fetch_feed(worker_url)
    safe_print(f"Processing {len(feed_rows)} live data points...")
    discord_cache = fetch_discord_cache(worker_url)

    safe_print("Calculating stats...")
    added = update_players(player_map, to_snapshots(feed_rows), discord_cache, now)
    safe_print(f"Added {added} history entries")

    written = write_players(PLAYERS_DIR, player_map)
    safe_print(f"Wrote {written} player files")

    if from_archive:
        safe_print("Removing archive...")
        remove_dir(ARCHIVE_DIR)

    safe_print("Update Complete.")
    return player_map


def main():
    try:
        run()
    except (RuntimeError, OSError) as e:
        safe_print(f"FATAL: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
