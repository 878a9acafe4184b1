from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from .entities import Credential, MatchCandidate, Page, TargetPlaylist


class SourceCatalog(Protocol):
    """Port for the catalog a playlist is read from.

    Implementations perform their requests through an OAuth session and map
    provider payloads into domain entities.
    """

    def fetch_page(self, collection_ref: str, offset: int, limit: Optional[int] = None) -> Page:
        """Return one page of the collection starting at offset."""

    def get_collection_name(self, collection_ref: str) -> str:
        """Return the display name of the collection."""


class TargetCatalog(Protocol):
    """Port for the catalog a playlist is written to."""

    def search(self, query: str, limit: int = 1) -> List[MatchCandidate]:
        """Return up to limit candidates in the catalog's relevance order."""

    def create_playlist(self, name: str, description: Optional[str] = None,
                        privacy: str = "private") -> TargetPlaylist:
        """Create an empty playlist."""

    def get_playlist(self, playlist_id: str) -> TargetPlaylist:
        """Load an existing playlist including its current member ids."""

    def list_playlist_item_ids(self, playlist_id: str) -> Iterable[str]:
        """Iterate ids of items currently in the playlist."""

    def append_item(self, playlist_id: str, item_id: str) -> None:
        """Append one item to the end of the playlist."""


class Authorizer(Protocol):
    """Interactive authorization flow yielding a fresh credential."""

    def authorize(self, provider) -> Credential:
        """Block until the user has granted access, or raise AuthError."""
