import logging
import re
from typing import Any, Dict, Optional

import requests
import spotipy

from tubesync.domain.entities import Page, TrackDescriptor
from tubesync.domain.errors import (
    ApiError, DataError, InvalidTokenError, NotFoundError, RateLimited, TransientNetworkError
)
from tubesync.infrastructure.http import DEFAULT_TIMEOUT_SEC, parse_retry_after
from tubesync.infrastructure.oauth import OAuthSession

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 100

_PLAYLIST_URI = re.compile(r"^spotify:(?:user:[^:]+:)?playlist:([A-Za-z0-9]+)$")
_PLAYLIST_URL = re.compile(r"open\.spotify\.com/(?:[a-z-]+/)?(?:user/[^/]+/)?playlist/([A-Za-z0-9]+)")
_PLAYLIST_ID = re.compile(r"^[A-Za-z0-9]+$")

_PAGE_FIELDS = 'items(is_local,track(id,uri,name,duration_ms,artists(name),album(name))),total,limit,offset'


def parse_playlist_ref(value: str) -> str:
    """Accept a playlist id, spotify:playlist: URI or open.spotify.com URL and return the id."""
    value = (value or '').strip()
    for pattern in (_PLAYLIST_URI, _PLAYLIST_URL):
        match = pattern.search(value)
        if match:
            return match.group(1)
    if _PLAYLIST_ID.match(value):
        return value
    raise ValueError(f"Not a Spotify playlist reference: {value!r}")


class SpotifySource:
    """Reads playlists from the Spotify Web API through an OAuth session."""

    def __init__(self, session: OAuthSession, page_limit: int = MAX_PAGE_LIMIT,
                 requests_timeout: int = DEFAULT_TIMEOUT_SEC):
        """Initialize Spotify source.

        Args:
            session: Authenticated Spotify OAuth session
            page_limit: Items requested per page (Spotify allows at most 100)
            requests_timeout: HTTP timeout in seconds
        """
        self.session = session
        self.page_limit = max(1, min(page_limit, MAX_PAGE_LIMIT))
        self.requests_timeout = requests_timeout

    def _client(self, access_token: str) -> spotipy.Spotify:
        # Retries are disabled here; RetryPolicy owns them.
        return spotipy.Spotify(
            auth=access_token,
            requests_timeout=self.requests_timeout,
            retries=0,
            status_retries=0,
        )

    def _call(self, operation: str, func):
        """Run func(client) through the session, mapping spotipy failures."""
        def run(access_token: str):
            client = self._client(access_token)
            try:
                return func(client)
            except spotipy.SpotifyException as e:
                raise self._map_error(e, operation) from e
            except (requests.Timeout, requests.ConnectionError) as e:
                raise TransientNetworkError(f"{operation}: {e}") from e

        return self.session.call(run)

    @staticmethod
    def _map_error(error: spotipy.SpotifyException, operation: str) -> Exception:
        status = getattr(error, 'http_status', None)
        message = getattr(error, 'msg', str(error))
        if status == 401:
            return InvalidTokenError(f"{operation}: {message}")
        if status == 429:
            return RateLimited(
                retry_after_ms=parse_retry_after(getattr(error, 'headers', None)),
                message=f"{operation}: rate limited",
            )
        if status is None or status >= 500:
            return TransientNetworkError(f"{operation}: {message}")
        if status == 404:
            return NotFoundError(f"{operation}: {message}")
        return ApiError(f"{operation}: HTTP {status} ({message})", status_code=status)

    def get_collection_name(self, collection_ref: str) -> str:
        playlist_id = parse_playlist_ref(collection_ref)
        data = self._call(
            f"get playlist {playlist_id}",
            lambda client: client.playlist(playlist_id, fields='name'),
        )
        if not isinstance(data, dict) or not data.get('name'):
            raise DataError(f"Playlist {playlist_id} response has no name")
        return data['name']

    def fetch_page(self, collection_ref: str, offset: int, limit: Optional[int] = None) -> Page:
        """Fetch one page of playlist items starting at offset."""
        playlist_id = parse_playlist_ref(collection_ref)
        page_limit = limit or self.page_limit
        data = self._call(
            f"list tracks of {playlist_id} at offset {offset}",
            lambda client: client.playlist_items(
                playlist_id,
                fields=_PAGE_FIELDS,
                limit=page_limit,
                offset=offset,
                additional_types=('track',),
            ),
        )
        return self._to_page(data, playlist_id, offset, page_limit)

    def _to_page(self, data: Any, playlist_id: str, offset: int, page_limit: int) -> Page:
        if not isinstance(data, dict) or not isinstance(data.get('items'), list):
            raise DataError(f"Malformed page for playlist {playlist_id} at offset {offset}")
        try:
            total = int(data.get('total', 0))
            limit = int(data.get('limit') or page_limit)
        except (TypeError, ValueError) as e:
            raise DataError(f"Malformed paging fields for playlist {playlist_id}: {e}") from e

        descriptors = []
        for position, item in enumerate(data['items']):
            descriptor = self._to_descriptor(item)
            if descriptor is None:
                logger.info(f"Skipping undescribable item at position {offset + position} of {playlist_id}")
                continue
            descriptors.append(descriptor)

        return Page(
            items=descriptors,
            total=total,
            limit=limit,
            offset=int(data.get('offset', offset) or 0),
            received=len(data['items']),
        )

    @staticmethod
    def _to_descriptor(item: Dict[str, Any]) -> Optional[TrackDescriptor]:
        """Convert a playlist item into a TrackDescriptor.

        Returns None for removed tracks. Local files have no id; their URI is
        stable within the playlist and is used instead.
        """
        if not isinstance(item, dict):
            return None
        track = item.get('track')
        if not isinstance(track, dict):
            return None

        item_id = track.get('id') or track.get('uri')
        title = track.get('name') or ''
        if not item_id or not title:
            return None

        artists = [a.get('name') for a in track.get('artists') or [] if isinstance(a, dict) and a.get('name')]
        album = track.get('album') or {}
        duration = track.get('duration_ms')
        return TrackDescriptor(
            source_item_id=item_id,
            title=title,
            artist_names=artists,
            duration_hint_ms=int(duration) if isinstance(duration, (int, float)) else None,
            album=album.get('name') if isinstance(album, dict) else None,
        )
