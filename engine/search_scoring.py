"""Relevance scoring, duplicate collapsing and interleaving for catalog search.

Everything here is pure: functions take raw provider objects or normalized
items and return new values, so ranking can be tested without any network.
"""

from __future__ import annotations

import math
from typing import Any, Iterable

from config.settings import SEARCH_CANONICAL_DURATION_MS

CATEGORY_ORDER = ("tracks", "artists", "albums", "playlists")

_CATEGORY_BONUS = {
    "track": 5,
    "artist": 3,
    "album": 2,
    "playlist": 1,
}

_EXACT_POINTS = 1000
_PREFIX_POINTS = 100
_SUBSTRING_POINTS = 50
_WORD_EXACT_POINTS = 25
_WORD_PARTIAL_POINTS = 10

# Weights applied to the secondary text of each category.
TRACK_ARTIST_WEIGHT = 0.5
ALBUM_ARTIST_WEIGHT = 0.3
PLAYLIST_DESCRIPTION_WEIGHT = 0.2


def calculate_relevance(name: str | None, query: str | None, kind: str) -> float:
    """Score how well ``name`` matches ``query`` for an item of ``kind``.

    - +1000 exact case-insensitive match, else +100 prefix, else +50 substring.
    - For every (query word, name word) pair: +25 when equal, +10 when one
      contains the other.
    - Category bonus: track 5, artist 3, album 2, playlist 1.

    The query is lowercased and trimmed, the name only lowercased.
    """
    name_lower = str(name or "").lower()
    query_lower = str(query or "").lower().strip()
    score = 0

    if name_lower == query_lower:
        score += _EXACT_POINTS
    elif name_lower.startswith(query_lower):
        score += _PREFIX_POINTS
    elif query_lower in name_lower:
        score += _SUBSTRING_POINTS

    query_words = query_lower.split()
    name_words = name_lower.split()
    for query_word in query_words:
        for name_word in name_words:
            if name_word == query_word:
                score += _WORD_EXACT_POINTS
            elif query_word in name_word or name_word in query_word:
                score += _WORD_PARTIAL_POINTS

    score += _CATEGORY_BONUS.get(kind, 0)
    return float(score)


def _first_artist_name(raw: dict) -> str:
    artists = raw.get("artists") or []
    if artists and isinstance(artists[0], dict):
        return str(artists[0].get("name") or "")
    return ""


def track_group_key(raw_track: dict) -> tuple[str, str]:
    return (str(raw_track.get("name") or "").lower(), _first_artist_name(raw_track).lower())


def group_tracks(raw_tracks: Iterable[dict]) -> list[list[dict]]:
    """Group raw tracks by lowercase (name, first artist), keeping first-seen order."""
    groups: dict[tuple[str, str], list[dict]] = {}
    for track in raw_tracks:
        if not isinstance(track, dict):
            continue
        groups.setdefault(track_group_key(track), []).append(track)
    return list(groups.values())


def _duration_distance(track: dict, target_ms: float) -> float:
    duration = track.get("duration_ms")
    if duration is None:
        return math.inf
    try:
        return abs(float(duration) - target_ms)
    except (TypeError, ValueError):
        return math.inf


def select_popular_representative(
    group: list[dict],
    canonical_duration_ms: int = SEARCH_CANONICAL_DURATION_MS,
) -> dict:
    """Pick the release with the highest popularity.

    Equal popularity prefers the duration closest to ``canonical_duration_ms``;
    a full tie keeps the earlier hit.
    """
    best = group[0]
    for current in group[1:]:
        current_pop = int(current.get("popularity") or 0)
        best_pop = int(best.get("popularity") or 0)
        if current_pop > best_pop:
            best = current
        elif current_pop == best_pop and _duration_distance(current, canonical_duration_ms) < _duration_distance(
            best, canonical_duration_ms
        ):
            best = current
    return best


def select_median_representative(group: list[dict]) -> dict:
    """Pick the release whose duration is closest to the group's median duration."""
    if len(group) == 1:
        return group[0]
    durations = sorted(float(t.get("duration_ms") or 0) for t in group)
    mid = len(durations) // 2
    if len(durations) % 2 == 0:
        median = (durations[mid - 1] + durations[mid]) / 2
    else:
        median = durations[mid]
    best = group[0]
    best_diff = math.inf
    for track in group:
        diff = _duration_distance(track, median)
        if diff < best_diff:
            best_diff = diff
            best = track
    return best


def dedupe_tracks(raw_tracks: Iterable[dict], *, strategy: str = "popularity") -> list[dict]:
    """Collapse duplicate releases of the same song into one representative each."""
    picker = select_popular_representative if strategy == "popularity" else select_median_representative
    return [picker(group) if len(group) > 1 else group[0] for group in group_tracks(raw_tracks)]


def score_track(raw_track: dict, query: str) -> float:
    return calculate_relevance(raw_track.get("name"), query, "track") + (
        calculate_relevance(_first_artist_name(raw_track), query, "artist") * TRACK_ARTIST_WEIGHT
    )


def score_artist(raw_artist: dict, query: str) -> float:
    return calculate_relevance(raw_artist.get("name"), query, "artist")


def score_album(raw_album: dict, query: str) -> float:
    return calculate_relevance(raw_album.get("name"), query, "album") + (
        calculate_relevance(_first_artist_name(raw_album), query, "artist") * ALBUM_ARTIST_WEIGHT
    )


def score_playlist(raw_playlist: dict, query: str) -> float:
    return calculate_relevance(raw_playlist.get("name"), query, "playlist") + (
        calculate_relevance(raw_playlist.get("description") or "", query, "playlist") * PLAYLIST_DESCRIPTION_WEIGHT
    )


def _rank_key(item: dict[str, Any]) -> tuple[float, int, int]:
    return (
        -float(item.get("relevance") or 0.0),
        -int(item.get("popularity") or 0),
        -int(item.get("followers") or 0),
    )


def sort_by_relevance(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort by relevance desc, then popularity desc, then followers desc (stable)."""
    return sorted(items, key=_rank_key)


def interleave_categories(by_type: dict[str, list[dict[str, Any]]], limit: int) -> list[dict[str, Any]]:
    """Round-robin ``ceil(limit/4)`` items per category, re-rank, then truncate."""
    if limit <= 0:
        return []
    per_category = math.ceil(limit / len(CATEGORY_ORDER))
    combined: list[dict[str, Any]] = []
    for index in range(per_category):
        for category in CATEGORY_ORDER:
            items = by_type.get(category) or []
            if index < len(items):
                combined.append(items[index])
    combined.sort(key=lambda item: -float(item.get("relevance") or 0.0))
    return combined[:limit]
