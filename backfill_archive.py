"""
One-time backfill of player VR history from the rr-player-database git history.
Bare-clones the repo, reads every revision of rr-players.json from the last
DAYS_BACK days (in parallel, straight from the packfiles), rebuilds each
player's history and writes archive/<fc>.json. generate_stats.py picks the
archive up on its next run.
"""

import json
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from pathlib import Path

from player_store import (
    ARCHIVE_DIR, load_env_value, remove_dir, reset_dir, safe_print, write_players,
)
from vr_history import apply_snapshots, flatten_population, sort_snapshot_keys

BASE_DIR = Path(__file__).parent
TEMP_GIT_DIR = BASE_DIR / "temp_rr_db.git"
DEFAULT_REPO_URL = "https://github.com/impactcoding/rr-player-database.git"
FILE_PATH = "rr-players.json"
DAYS_BACK = 30
PARALLEL_LIMIT = 50  # concurrent `git show` processes
PROGRESS_EVERY = 500


# ---------------------------------------------------------------------------
# Git access
# ---------------------------------------------------------------------------

def clone_bare(repo_url, git_dir):
    """Bare clone (no working tree). Raises CalledProcessError on failure."""
    subprocess.run(["git", "clone", "--bare", repo_url, str(git_dir)], check=True)


def parse_log_output(output):
    """Parse 'HASH|ISO_DATE' lines from git log into oldest-first pairs."""
    revisions = []
    for line in output.splitlines():
        line = line.strip()
        if not line or "|" not in line:
            continue
        rev, _, date = line.partition("|")
        revisions.append((rev.strip(), date.strip()))
    revisions.reverse()
    return revisions


def list_revisions(git_dir, file_path, since):
    """Commits touching file_path since `since`, oldest first.

    Raises CalledProcessError if git log fails; the source is unusable then.
    """
    result = subprocess.run(
        [
            "git", "--git-dir", str(git_dir), "log",
            f"--since={since.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S +0000')}",
            "--pretty=format:%H|%aI",
            "--", file_path,
        ],
        check=True,
        capture_output=True,
        text=True,
    )
    return parse_log_output(result.stdout)


def read_file_at_revision(git_dir, rev, file_path):
    """Return the file content at a revision. Raises RuntimeError if git show fails."""
    result = subprocess.run(
        ["git", "--git-dir", str(git_dir), "show", f"{rev}:{file_path}"],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    if result.returncode != 0:
        raise RuntimeError(f"git show failed for {rev}: {result.stderr.strip()[:200]}")
    return result.stdout


# ---------------------------------------------------------------------------
# Snapshot extraction
# ---------------------------------------------------------------------------

def _load_population(read_content, rev):
    content = read_content(rev)
    players = flatten_population(json.loads(content))
    if players is None:
        raise ValueError(f"unexpected JSON shape at {rev}")
    return players


def extract_snapshots(revisions, read_content, max_workers=PARALLEL_LIMIT):
    """Read and parse every revision, returning {iso_date: players}.

    read_content(rev) -> str is run on a bounded thread pool. A revision
    that can't be read or parsed is skipped. Results are stored in
    revision order so that two commits sharing a timestamp resolve to the
    later one.
    """
    results = {}
    failed = 0
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(_load_population, read_content, rev): idx
            for idx, (rev, _) in enumerate(revisions)
        }
        for done, future in enumerate(as_completed(futures), 1):
            idx = futures[future]
            try:
                results[idx] = future.result()
            except (ValueError, RuntimeError, OSError):
                failed += 1
            if done % PROGRESS_EVERY == 0:
                safe_print(f"Processed: {done}/{len(revisions)}")

    snapshots = {}
    for idx, (_, date) in enumerate(revisions):
        if idx in results:
            snapshots[date] = results[idx]

    if failed:
        safe_print(f"Skipped {failed} unreadable revision(s)")
    return snapshots


def build_archive(snapshots):
    """Rebuild {fc: record} from a {date: players} map."""
    player_map = {}
    ordered = [(date, snapshots[date]) for date in sort_snapshot_keys(snapshots)]
    apply_snapshots(player_map, ordered)
    return player_map


def staging_dir():
    return ARCHIVE_DIR.with_name(ARCHIVE_DIR.name + ".partial")


def run(now=None):
    now = now or datetime.now(timezone.utc)
    repo_url = load_env_value("RR_REPO_URL") or DEFAULT_REPO_URL

    staging = staging_dir()

    safe_print("Cleaning up...")
    remove_dir(TEMP_GIT_DIR)
    reset_dir(staging)

    safe_print("Cloning bare repository...")
    clone_bare(repo_url, TEMP_GIT_DIR)

    safe_print("Fetching commit list...")
    since = now - timedelta(days=DAYS_BACK)
    revisions = list_revisions(TEMP_GIT_DIR, FILE_PATH, since)
    safe_print(f"Found {len(revisions)} commits. Processing with concurrency {PARALLEL_LIMIT}...")

    def read_content(rev):
        return read_file_at_revision(TEMP_GIT_DIR, rev, FILE_PATH)

    snapshots = extract_snapshots(revisions, read_content)
    safe_print(f"Data extraction complete ({len(snapshots)} snapshots). Building player history...")

    player_map = build_archive(snapshots)

    safe_print(f"Writing {len(player_map)} player files...")
    write_players(staging, player_map)

    # archive/ only ever holds a complete backfill
    remove_dir(ARCHIVE_DIR)
    staging.rename(ARCHIVE_DIR)

    remove_dir(TEMP_GIT_DIR)
    safe_print("Backfill Done.")
    return player_map


def main():
    try:
        run()
    except (subprocess.CalledProcessError, OSError) as e:
        remove_dir(staging_dir())
        remove_dir(TEMP_GIT_DIR)
        safe_print(f"FATAL: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
