import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from tubesync.domain.entities import MatchCandidate, TargetPlaylist
from tubesync.domain.errors import DataError, NotFoundError
from tubesync.infrastructure.http import DEFAULT_TIMEOUT_SEC, send
from tubesync.infrastructure.oauth import OAuthSession

logger = logging.getLogger(__name__)

YOUTUBE_API_URL = 'https://www.googleapis.com/youtube/v3'
MAX_SEARCH_RESULTS = 50
PLAYLIST_ITEMS_PAGE_SIZE = 50
PRIVACY_STATUSES = ('private', 'unlisted', 'public')


class YouTubeTarget:
    """Searches videos and writes playlists through the YouTube Data API v3."""

    def __init__(self, session: OAuthSession, http: Optional[requests.Session] = None,
                 base_url: str = YOUTUBE_API_URL, timeout: float = DEFAULT_TIMEOUT_SEC):
        self.session = session
        self._http = http or requests.Session()
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _request(self, method: str, resource: str, operation: str,
                 params: Optional[Dict[str, Any]] = None,
                 body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{resource}"

        def run(access_token: str) -> Dict[str, Any]:
            return send(
                self._http, method, url, operation,
                timeout=self.timeout,
                params=params,
                json=body,
                headers={
                    'Authorization': f'Bearer {access_token}',
                    'Accept': 'application/json',
                },
            )

        return self.session.call(run)

    def search(self, query: str, limit: int = 1) -> List[MatchCandidate]:
        """Search videos and return candidates in YouTube's relevance order."""
        max_results = max(1, min(limit, MAX_SEARCH_RESULTS))
        logger.debug(f"Searching YouTube for '{query}' (maxResults={max_results})")
        data = self._request('GET', 'search', f"search '{query}'", params={
            'part': 'snippet',
            'q': query,
            'type': 'video',
            'maxResults': max_results,
        })

        items = data.get('items', [])
        if not isinstance(items, list):
            raise DataError(f"search '{query}': 'items' is not a list")

        candidates = []
        for rank, item in enumerate(items):
            candidate = self._to_candidate(item, rank)
            if candidate is None:
                raise DataError(f"search '{query}': result {rank} has no video id")
            candidates.append(candidate)
        return candidates[:max_results]

    @staticmethod
    def _to_candidate(item: Any, rank: int) -> Optional[MatchCandidate]:
        if not isinstance(item, dict):
            return None
        item_id = item.get('id')
        video_id = item_id.get('videoId') if isinstance(item_id, dict) else None
        if not video_id:
            return None
        snippet = item.get('snippet') or {}
        if not isinstance(snippet, dict):
            raise DataError(f"search result {rank} ({video_id}) has a malformed snippet")
        return MatchCandidate(
            target_item_id=video_id,
            title=snippet.get('title', ''),
            score=1.0,
            channel_title=snippet.get('channelTitle'),
            rank=rank,
        )

    def create_playlist(self, name: str, description: Optional[str] = None,
                        privacy: str = 'private') -> TargetPlaylist:
        """Create an empty playlist owned by the authenticated channel."""
        if privacy not in PRIVACY_STATUSES:
            raise ValueError(f"privacy must be one of {PRIVACY_STATUSES}, got {privacy!r}")

        snippet = {'title': name}
        if description:
            snippet['description'] = description
        data = self._request('POST', 'playlists', f"create playlist '{name}'",
                             params={'part': 'snippet,status'},
                             body={'snippet': snippet, 'status': {'privacyStatus': privacy}})

        playlist_id = data.get('id')
        if not playlist_id:
            raise DataError(f"create playlist '{name}': response has no id")
        logger.info(f"Created YouTube playlist '{name}' ({playlist_id}, {privacy})")
        return TargetPlaylist(target_playlist_id=playlist_id, name=name)

    def list_playlist_item_ids(self, playlist_id: str) -> Iterator[str]:
        """Iterate video ids of the playlist, following page tokens."""
        page_token = None
        while True:
            params = {
                'part': 'contentDetails',
                'playlistId': playlist_id,
                'maxResults': PLAYLIST_ITEMS_PAGE_SIZE,
            }
            if page_token:
                params['pageToken'] = page_token
            data = self._request('GET', 'playlistItems', f"list items of playlist {playlist_id}", params=params)

            for item in data.get('items', []):
                details = item.get('contentDetails') if isinstance(item, dict) else None
                video_id = details.get('videoId') if isinstance(details, dict) else None
                if video_id:
                    yield video_id

            page_token = data.get('nextPageToken')
            if not page_token:
                break

    def get_playlist(self, playlist_id: str) -> TargetPlaylist:
        """Load an existing playlist with its current members."""
        data = self._request('GET', 'playlists', f"get playlist {playlist_id}",
                             params={'part': 'snippet', 'id': playlist_id})
        items = data.get('items') or []
        if not isinstance(items, list):
            raise DataError(f"get playlist {playlist_id}: 'items' is not a list")
        if not items:
            raise NotFoundError(f"YouTube playlist {playlist_id} does not exist or is not accessible")
        snippet = items[0].get('snippet') if isinstance(items[0], dict) else None
        if not isinstance(snippet, dict):
            raise DataError(f"get playlist {playlist_id}: response has no snippet")
        name = snippet.get('title', '')
        return TargetPlaylist(
            target_playlist_id=playlist_id,
            name=name,
            member_item_ids=set(self.list_playlist_item_ids(playlist_id)),
        )

    def append_item(self, playlist_id: str, item_id: str) -> None:
        """Append a video to the end of the playlist."""
        self._request('POST', 'playlistItems', f"append {item_id} to playlist {playlist_id}",
                      params={'part': 'snippet'},
                      body={'snippet': {
                          'playlistId': playlist_id,
                          'resourceId': {'kind': 'youtube#video', 'videoId': item_id},
                      }})
        logger.debug(f"Appended {item_id} to playlist {playlist_id}")
