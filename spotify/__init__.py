"""Spotify integration modules."""

from spotify.client import SpotifyCatalogClient
from spotify.token_manager import AppTokenProvider, TokenLifecycleManager

__all__ = ["AppTokenProvider", "SpotifyCatalogClient", "TokenLifecycleManager"]
