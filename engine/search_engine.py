"""Multi-category catalog search merged into one relevance-ranked list."""

from __future__ import annotations

import logging
from typing import Any

from config.settings import SEARCH_FETCH_LIMIT
from engine.search_scoring import (
    dedupe_tracks,
    interleave_categories,
    score_album,
    score_artist,
    score_playlist,
    score_track,
    sort_by_relevance,
)
from spotify.client import SEARCH_TYPES, SpotifyCatalogClient
from spotify.normalize import (
    normalize_album,
    normalize_artist,
    normalize_playlist,
    normalize_track,
    page_items,
)
from spotify.results import ApiError, RankedResults, SpotifyApiError

logger = logging.getLogger(__name__)


def rank_search_payload(payload: dict[str, Any], query: str, limit: int) -> RankedResults:
    """Turn one raw multi-type search response into :class:`RankedResults`.

    Tracks are collapsed per (name, first artist) before scoring; each
    category is sorted independently, then ``ceil(limit/4)`` items per
    category are interleaved, re-ranked and truncated to ``limit``.
    """
    raw_tracks, tracks_total = page_items(payload, "tracks")
    raw_artists, artists_total = page_items(payload, "artists")
    raw_albums, albums_total = page_items(payload, "albums")
    raw_playlists, playlists_total = page_items(payload, "playlists")

    tracks = []
    for raw in dedupe_tracks(raw_tracks, strategy="popularity"):
        item = normalize_track(raw)
        item["popularity"] = int(raw.get("popularity") or 0)
        item["relevance"] = score_track(raw, query)
        tracks.append(item)

    artists = []
    for raw in raw_artists:
        item = normalize_artist(raw)
        item["relevance"] = score_artist(raw, query)
        artists.append(item)

    albums = []
    for raw in raw_albums:
        item = normalize_album(raw)
        item["relevance"] = score_album(raw, query)
        albums.append(item)

    playlists = []
    for raw in raw_playlists:
        item = normalize_playlist(raw)
        item["relevance"] = score_playlist(raw, query)
        playlists.append(item)

    by_type = {
        "tracks": sort_by_relevance(tracks),
        "artists": sort_by_relevance(artists),
        "albums": sort_by_relevance(albums),
        "playlists": sort_by_relevance(playlists),
    }
    return RankedResults(
        results=interleave_categories(by_type, limit),
        by_type=by_type,
        total_found={
            "tracks": tracks_total,
            "artists": artists_total,
            "albums": albums_total,
            "playlists": playlists_total,
        },
    )


class SearchAggregator:
    """Runs the combined catalog query and ranks the merged result set."""

    def __init__(self, client: SpotifyCatalogClient, *, fetch_limit: int = SEARCH_FETCH_LIMIT) -> None:
        self.client = client
        self.fetch_limit = min(int(fetch_limit), 50)

    async def search_multi_type(self, query: str, limit: int = 10) -> RankedResults | ApiError:
        try:
            payload = await self.client.search(query, SEARCH_TYPES, self.fetch_limit)
        except SpotifyApiError as exc:
            logger.error("multi-type search failed query=%r status=%s message=%s", query, exc.status, exc.message)
            return exc.to_result()

        ranked = rank_search_payload(payload, query, limit)
        logger.info(
            "multi-type search query=%r limit=%s returned=%s totals=%s",
            query,
            limit,
            len(ranked.results),
            ranked.total_found,
        )
        return ranked
