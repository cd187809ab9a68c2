"""Typed outcomes returned across component boundaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

UNAUTHENTICATED = "unauthenticated"
TRANSIENT = "transient"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at_ms: int


@dataclass(frozen=True)
class AuthFailure:
    """Token could not be produced.

    ``reason`` is ``UNAUTHENTICATED`` when the caller has to run the
    authorization flow again, ``TRANSIENT`` when a later retry may succeed.
    """

    reason: str
    message: str = ""

    @property
    def is_transient(self) -> bool:
        return self.reason == TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": {"kind": self.reason, "message": self.message}}


@dataclass(frozen=True)
class ApiError:
    status: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "error": {"kind": "api_error", "status": self.status, "message": self.message},
        }


@dataclass(frozen=True)
class NotFound:
    message: str = "no matching result"

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "error": {"kind": "not_found"}}


@dataclass(frozen=True)
class Failure:
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "error": {"kind": "failure"}}


@dataclass(frozen=True)
class LocalFile:
    path: str
    title: str | None = None
    uploader: str | None = None
    source_url: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "path": self.path,
            "duration": self.duration_ms,
            "metadata": {
                "title": self.title,
                "channel": self.uploader,
                "url": self.source_url,
            },
        }


@dataclass
class RankedResults:
    """Output of the multi-category search aggregation."""

    results: list[dict[str, Any]]
    by_type: dict[str, list[dict[str, Any]]]
    total_found: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "results": self.results,
            "by_type": self.by_type,
            "total_found": self.total_found,
            # older clients read only the flat track list
            "tracks": self.by_type.get("tracks", []),
        }


class SpotifyApiError(Exception):
    """Raised by the catalog request layer for non-success upstream responses."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"spotify api error ({status}): {message}")
        self.status = int(status)
        self.message = message

    def to_result(self) -> ApiError:
        return ApiError(status=self.status, message=self.message)
