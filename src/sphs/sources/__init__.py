from .base import PlayHistorySource
from .spotify import SpotifyRecentlyPlayedSource

__all__ = [
    "PlayHistorySource",
    "SpotifyRecentlyPlayedSource",
]
