"""
Per-player VR history for Retro Rewind players.
Folds full-population snapshots into one record per friend code, prunes
old entries and computes rolling VR deltas. No I/O happens here; the
backfill and live-update scripts share these functions.
"""

import math
import re
from datetime import datetime, timedelta, timezone

RETENTION_DAYS = 30

STAT_WINDOWS = [
    ("last24Hours", timedelta(days=1)),
    ("lastWeek", timedelta(days=7)),
    ("lastMonth", timedelta(days=30)),
]

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def read_vr(player):
    """Return the player's VR as an int: 'ev' first, then 'vr', else 0.

    Falsy values fall through to the next field. Strings are read up to
    the first non-digit ("1234.5" -> 1234); anything unreadable is 0.
    """
    raw = player.get("ev") or player.get("vr") or 0
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) else 0
    m = _INT_PREFIX.match(str(raw))
    return int(m.group(1)) if m else 0


def flatten_population(data):
    """Snapshot data may be a list of players or a dict keyed by anything."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.values())
    return None


def parse_date(value):
    """Parse an ISO-8601 string into an aware datetime (naive -> UTC)."""
    if not isinstance(value, str) or not value:
        return None
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def epoch_to_iso(seconds):
    """Epoch seconds -> '2024-05-01T12:00:00.000Z' (UTC, millisecond precision)."""
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def sort_snapshot_keys(snapshots):
    """Order snapshot timestamps chronologically; unparseable ones go last."""
    far_future = datetime.max.replace(tzinfo=timezone.utc)

    def key(ts):
        return (parse_date(ts) or far_future, ts)

    return sorted(snapshots, key=key)


# ---------------------------------------------------------------------------
# History reconstruction
# ---------------------------------------------------------------------------

def new_player(fc, name=None, discord=None):
    record = {
        "name": name or "Unknown",
        "fc": fc,
        "vr_history": [],
    }
    if discord is not None:
        record["discord"] = discord
    return record


def _insert_position(history, when):
    """Index where an entry dated `when` belongs (after any entry not later)."""
    if when is None:
        return len(history)
    i = len(history)
    while i > 0:
        prev = parse_date(history[i - 1].get("date"))
        if prev is None or prev <= when:
            break
        i -= 1
    return i


def add_history_entry(record, date, current_vr, known_dates=None):
    """Add one VR observation to a player record.

    Returns False if the record already holds an entry with this exact
    date string. Normally the entry is appended; a date older than the
    tail is slotted into place and the following entry's vrChange is
    re-based so deltas stay consistent. known_dates, when given, is the
    set of dates already in the history and is kept up to date.
    """
    history = record["vr_history"]
    if known_dates is None:
        known_dates = {h.get("date") for h in history}
    if date in known_dates:
        return False
    known_dates.add(date)

    pos = _insert_position(history, parse_date(date))
    prev_total = history[pos - 1]["totalVR"] if pos > 0 else current_vr
    entry = {
        "date": date,
        "vrChange": current_vr - prev_total,
        "totalVR": current_vr,
    }
    history.insert(pos, entry)
    if pos + 1 < len(history):
        nxt = history[pos + 1]
        nxt["vrChange"] = nxt["totalVR"] - current_vr
    return True


def apply_snapshot(player_map, date, players, default_discord=None, date_index=None):
    """Fold one population snapshot into player_map (fc -> record) in place.

    Returns the number of history entries added.
    """
    if date_index is None:
        date_index = {}
    added = 0
    for p in players:
        if not isinstance(p, dict):
            continue
        fc = p.get("fc")
        if not fc or not isinstance(fc, str):
            continue

        record = player_map.get(fc)
        if record is None:
            record = new_player(fc, p.get("name"), default_discord)
            player_map[fc] = record
        if p.get("name"):
            record["name"] = p["name"]

        known = date_index.get(fc)
        if known is None:
            known = {h.get("date") for h in record["vr_history"]}
            date_index[fc] = known
        if add_history_entry(record, date, read_vr(p), known):
            added += 1
    return added


def apply_snapshots(player_map, snapshots, default_discord=None):
    """Apply (date, players) pairs in the given order; caller sorts them.

    Re-applying snapshots whose dates are already recorded is a no-op, so
    an archive and a live feed can overlap safely.
    """
    added = 0
    date_index = {}
    for date, players in snapshots:
        added += apply_snapshot(player_map, date, players, default_discord, date_index)
    return added


# ---------------------------------------------------------------------------
# Stats & pruning
# ---------------------------------------------------------------------------

def prune_history(history, now, retention_days=RETENTION_DAYS):
    """Sort by date and drop entries older than the retention horizon.

    An entry exactly retention_days old is kept. Entries whose date cannot
    be parsed are dropped since their age is unknown.
    """
    horizon = timedelta(days=retention_days)
    dated = []
    for h in history:
        when = parse_date(h.get("date")) if isinstance(h, dict) else None
        if when is None:
            continue
        if now - when <= horizon:
            dated.append((when, h))
    dated.sort(key=lambda pair: pair[0])
    pruned = [h for _, h in dated]
    if pruned:
        # the oldest kept entry is the new zero baseline
        pruned[0]["vrChange"] = pruned[0]["totalVR"]
    return pruned


def compute_vr_stats(history, now):
    """Latest total minus the total at the first entry inside each window.

    Falls back to the oldest entry when nothing lies inside the window.
    History must be sorted and non-empty.
    """
    current_total = history[-1]["totalVR"]

    def vr_at(window):
        cutoff = now - window
        for h in history:
            if parse_date(h["date"]) >= cutoff:
                return h["totalVR"]
        return history[0]["totalVR"]

    return {key: current_total - vr_at(window) for key, window in STAT_WINDOWS}


def merge_discord(stored, cached):
    """Reconcile a cached discord link status with the stored one.

    A concrete profile always wins; "not_linked" never replaces a real
    profile; no cache entry leaves the stored value alone.
    """
    current = stored or "unknown"
    if not cached or not isinstance(cached, str):
        return current
    if cached == "not_linked":
        if current in ("unknown", "not_linked"):
            return "not_linked"
        return current
    return cached


def finalize_player(record, now, discord_cache=None):
    """Prune history, refresh vrStats and sync the discord field."""
    record["vr_history"] = prune_history(record.get("vr_history") or [], now)
    if record["vr_history"]:
        record["vrStats"] = compute_vr_stats(record["vr_history"], now)
    else:
        record.pop("vrStats", None)

    cached = (discord_cache or {}).get(record["fc"])
    record["discord"] = merge_discord(record.get("discord"), cached)
    return record
