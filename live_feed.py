"""
Live VR feed from the Cloudflare worker.
GET /         -> snapshot rows {timestamp, data} (several body shapes seen)
GET /discord  -> {fc: "not_linked" | profile id}
"""

import json

import requests

from player_store import safe_print
from vr_history import epoch_to_iso, flatten_population

HTTP_TIMEOUT = 60
USER_AGENT = "RR-VR-Tracker/1.0"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def extract_rows(body):
    """Pull the row list out of a feed body.

    Accepts a bare list, {"results": [...]}, or a JSON string of either.
    Anything else gives [] with a warning.
    """
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            safe_print("WARNING: Live feed body is not valid JSON, skipping update.")
            return []

    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("results"), list):
        return body["results"]

    safe_print(f"WARNING: Unrecognized live feed shape ({type(body).__name__}), skipping update.")
    return []


def parse_row(row):
    """Return (epoch_seconds, players) for one feed row, or None if unusable."""
    if not isinstance(row, dict) or isinstance(row.get("timestamp"), bool):
        return None
    try:
        timestamp = float(row["timestamp"])
    except (KeyError, TypeError, ValueError):
        return None
    try:
        epoch_to_iso(timestamp)
    except (OverflowError, ValueError, OSError):
        return None
    if timestamp.is_integer():
        timestamp = int(timestamp)

    data = row.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return None

    players = flatten_population(data)
    if players is None:
        return None
    return timestamp, players


def normalize_feed(body):
    """Feed body -> [(epoch_seconds, players)] sorted oldest first.

    Rows that fail to parse are dropped individually.
    """
    rows = extract_rows(body)
    parsed = []
    skipped = 0
    for row in rows:
        item = parse_row(row)
        if item is None:
            skipped += 1
            continue
        parsed.append(item)

    if skipped:
        safe_print(f"WARNING: Skipped {skipped} unreadable live feed row(s)")
    parsed.sort(key=lambda item: item[0])
    return parsed


def to_snapshots(feed_rows):
    """[(epoch, players)] -> [(iso_date, players)] ready for apply_snapshots."""
    return [(epoch_to_iso(ts), players) for ts, players in feed_rows]


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def _get(url):
    resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=HTTP_TIMEOUT)
    resp.raise_for_status()
    try:
        return resp.json()
    except ValueError:
        return resp.text


def fetch_feed(base_url):
    """Fetch and normalize the live history rows. Failures give []."""
    url = f"{base_url.rstrip('/')}/"
    try:
        body = _get(url)
    except requests.RequestException as e:
        safe_print(f"WARNING: Could not fetch live feed ({e}), continuing with base data only.")
        return []
    return normalize_feed(body)


def fetch_discord_cache(base_url):
    """Fetch the fc -> discord link cache. Failures give {}."""
    url = f"{base_url.rstrip('/')}/discord"
    try:
        body = _get(url)
    except requests.RequestException as e:
        safe_print(f"WARNING: Could not fetch discord cache ({e})")
        return {}
    if not isinstance(body, dict):
        return {}
    return body
