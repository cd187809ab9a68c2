"""Reshape Spotify API payloads into stable media item records."""

from __future__ import annotations

from typing import Any, Literal, TypedDict


class TrackItem(TypedDict, total=False):
    type: Literal["track"]
    spotify_id: str | None
    name: str
    artist: str
    artists: list[str]
    album: str | None
    image: str | None
    duration: int | None  # milliseconds
    preview_url: str | None
    explicit: bool
    popularity: int
    track_number: int | None
    relevance: float


class ArtistItem(TypedDict, total=False):
    type: Literal["artist"]
    spotify_id: str | None
    name: str
    image: str | None
    genres: list[str]
    followers: int
    popularity: int
    external_url: str | None
    relevance: float


class AlbumItem(TypedDict, total=False):
    type: Literal["album"]
    spotify_id: str | None
    name: str
    artist: str
    artists: list[str]
    image: str | None
    release_date: str | None
    total_tracks: int
    album_type: str | None
    external_url: str | None
    relevance: float


class PlaylistItem(TypedDict, total=False):
    type: Literal["playlist"]
    spotify_id: str | None
    name: str
    description: str
    image: str | None
    owner: str
    tracks_total: int
    public: bool | None
    collaborative: bool | None
    external_url: str | None
    relevance: float


def first_image_url(entity: dict | None) -> str | None:
    images = (entity or {}).get("images") or []
    if images and isinstance(images[0], dict):
        return images[0].get("url") or None
    return None


def artist_names(entity: dict | None) -> list[str]:
    return [
        str(artist.get("name")).strip()
        for artist in ((entity or {}).get("artists") or [])
        if isinstance(artist, dict) and artist.get("name")
    ]


def primary_artist_name(entity: dict | None) -> str:
    names = artist_names(entity)
    return names[0] if names else ""


def _external_url(entity: dict) -> str | None:
    return (entity.get("external_urls") or {}).get("spotify")


def normalize_track(track: dict, *, album: dict | None = None) -> TrackItem:
    """Flatten a track object; ``album`` supplies artwork for album track listings."""
    album_obj = track.get("album") if isinstance(track.get("album"), dict) else album
    names = artist_names(track)
    item: TrackItem = {
        "type": "track",
        "spotify_id": track.get("id"),
        "name": track.get("name") or "",
        "artist": ", ".join(names),
        "artists": names,
        "album": (album_obj or {}).get("name"),
        "image": first_image_url(album_obj),
        "duration": track.get("duration_ms"),
        "preview_url": track.get("preview_url"),
        "explicit": bool(track.get("explicit") or False),
    }
    if track.get("popularity") is not None:
        item["popularity"] = int(track.get("popularity") or 0)
    if track.get("track_number") is not None:
        item["track_number"] = track.get("track_number")
    return item


def normalize_artist(artist: dict) -> ArtistItem:
    return {
        "type": "artist",
        "spotify_id": artist.get("id"),
        "name": artist.get("name") or "",
        "image": first_image_url(artist),
        "genres": list(artist.get("genres") or []),
        "followers": int((artist.get("followers") or {}).get("total") or 0),
        "popularity": int(artist.get("popularity") or 0),
        "external_url": _external_url(artist),
    }


def normalize_album(album: dict) -> AlbumItem:
    names = artist_names(album)
    return {
        "type": "album",
        "spotify_id": album.get("id"),
        "name": album.get("name") or "",
        "artist": ", ".join(names),
        "artists": names,
        "image": first_image_url(album),
        "release_date": album.get("release_date") or None,
        "total_tracks": int(album.get("total_tracks") or 0),
        "album_type": album.get("album_type"),
        "external_url": _external_url(album),
    }


def normalize_playlist(playlist: dict) -> PlaylistItem:
    owner = playlist.get("owner") or {}
    return {
        "type": "playlist",
        "spotify_id": playlist.get("id"),
        "name": playlist.get("name") or "",
        "description": playlist.get("description") or "",
        "image": first_image_url(playlist),
        "owner": owner.get("display_name") or "Unknown",
        "tracks_total": int((playlist.get("tracks") or {}).get("total") or 0),
        "public": playlist.get("public"),
        "collaborative": playlist.get("collaborative"),
        "external_url": _external_url(playlist),
    }


def page_items(payload: Any, category: str) -> tuple[list[dict], int]:
    """Return ``(items, total)`` for one category of a search response.

    A missing category yields ``([], 0)``; ``None`` entries (unavailable
    playlists, local tracks) are dropped.
    """
    if not isinstance(payload, dict):
        return [], 0
    page = payload.get(category)
    if not isinstance(page, dict):
        return [], 0
    items = [item for item in (page.get("items") or []) if isinstance(item, dict)]
    return items, int(page.get("total") or 0)
