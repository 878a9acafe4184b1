import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from tubesync.application.retry import RetryPolicy
from tubesync.domain.entities import Page, TrackDescriptor
from tubesync.domain.errors import AuthError, DataError, FetchError, SyncError
from tubesync.domain.ports import SourceCatalog

logger = logging.getLogger(__name__)


class PaginatedFetcher:
    """Reads a whole source collection, page by page.

    Page 0 tells the total size and page size; the remaining pages are fetched
    with a small thread pool and reassembled in page order.
    """

    def __init__(self, source: SourceCatalog, retry_policy: Optional[RetryPolicy] = None,
                 max_workers: int = 4):
        self.source = source
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max(1, max_workers)

    def _fetch_page(self, collection_ref: str, offset: int, limit: Optional[int]) -> Page:
        return self.retry_policy.run(
            lambda: self.source.fetch_page(collection_ref, offset, limit),
            description=f"fetch page at offset {offset}",
        )

    def fetch_all(self, collection_ref: str) -> List[TrackDescriptor]:
        """Return every track of the collection in source order.

        Raises:
            FetchError: if any page cannot be fetched; nothing partial is returned
            AuthError: if the source session cannot authenticate
        """
        try:
            return self._fetch_all(collection_ref)
        except AuthError:
            raise
        except SyncError as e:
            raise FetchError(f"Failed to fetch collection {collection_ref}: {e}") from e

    def _fetch_all(self, collection_ref: str) -> List[TrackDescriptor]:
        first = self._fetch_page(collection_ref, 0, None)
        if first.total <= 0:
            logger.info(f"Collection {collection_ref} is empty")
            return []
        if first.limit <= 0:
            raise DataError(f"Collection {collection_ref} reported a page limit of {first.limit}")

        limit = first.limit
        pages = math.ceil(first.total / limit)
        logger.info(f"Fetching {first.total} items of {collection_ref} in {pages} pages of {limit}")

        results: List[Page] = [first]
        if pages > 1:
            offsets = [index * limit for index in range(1, pages)]
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(offsets))) as pool:
                # map() yields in submission order regardless of completion order
                results.extend(pool.map(lambda offset: self._fetch_page(collection_ref, offset, limit), offsets))

        tracks: List[TrackDescriptor] = []
        for index, page in enumerate(results):
            is_final = index == pages - 1
            if not is_final and page.received < limit:
                logger.warning(f"Page {index} of {collection_ref} returned {page.received} items, "
                               f"expected {limit}; continuing")
            tracks.extend(page.items)

        logger.info(f"Fetched {len(tracks)} tracks from {collection_ref}")
        return tracks
