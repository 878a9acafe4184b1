import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from tubesync.application.retry import RetryPolicy
from tubesync.domain.entities import LedgerStatus, MatchCandidate, TrackDescriptor
from tubesync.domain.errors import AuthError, SyncError
from tubesync.domain.normalization import artist_overlap, build_search_query, title_similarity
from tubesync.domain.ports import TargetCatalog

logger = logging.getLogger(__name__)

STRATEGY_FIRST = "first"
STRATEGY_SCORED = "scored"
STRATEGIES = (STRATEGY_FIRST, STRATEGY_SCORED)

# Weights of the scored strategy
TITLE_WEIGHT = 0.7
ARTIST_WEIGHT = 0.3


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one track against the target catalog."""

    status: LedgerStatus
    query: str
    candidate: Optional[MatchCandidate] = None
    reason: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.status == LedgerStatus.MATCHED


def score_candidate(track: TrackDescriptor, candidate: MatchCandidate) -> float:
    """Score a video against a track: title similarity plus artist overlap.

    Artists are looked up in both the video title and the channel name, since
    official uploads usually carry the artist in one of them.
    """
    title_score = title_similarity(track.title, candidate.title)
    if not track.artist_names:
        return title_score
    artist_score = artist_overlap(track.artist_names, candidate.title, candidate.channel_title or "")
    return TITLE_WEIGHT * title_score + ARTIST_WEIGHT * artist_score


class MatchResolver:
    """Resolves a track descriptor to at most one target catalog item.

    Strategy 'first' takes the top search result verbatim, with no scoring
    against duration or title. Strategy 'scored' fetches several results and
    keeps the best scoring one above min_score.
    """

    def __init__(self,
                 target: TargetCatalog,
                 retry_policy: Optional[RetryPolicy] = None,
                 strategy: str = STRATEGY_FIRST,
                 candidates: int = 5,
                 min_score: float = 0.6):
        """Initialize the resolver.

        Args:
            target: Target catalog adapter
            retry_policy: Retry policy for search requests
            strategy: 'first' or 'scored'
            candidates: Number of results requested by the scored strategy
            min_score: Minimum score accepted by the scored strategy
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown match strategy {strategy!r}; expected one of {STRATEGIES}")
        self.target = target
        self.retry_policy = retry_policy or RetryPolicy()
        self.strategy = strategy
        self.candidates = max(1, candidates)
        self.min_score = min_score

    @property
    def search_limit(self) -> int:
        return 1 if self.strategy == STRATEGY_FIRST else self.candidates

    def resolve(self, track: TrackDescriptor) -> Resolution:
        """Search the target catalog for the track.

        Errors that survive retries become a FAILED resolution so that a later
        run retries the track; an empty search is NOT_FOUND. AuthError is not
        caught: without credentials no later item can succeed either.
        """
        query = build_search_query(track)
        try:
            results = self.retry_policy.run(
                lambda: self.target.search(query, limit=self.search_limit),
                description=f"search '{query}'",
            )
        except AuthError:
            raise
        except SyncError as e:
            logger.warning(f"Search failed for {track.source_item_id} ('{query}'): {e}")
            return Resolution(status=LedgerStatus.FAILED, query=query, reason=f"{type(e).__name__}: {e}")

        if not results:
            logger.info(f"No results for '{query}'")
            return Resolution(status=LedgerStatus.NOT_FOUND, query=query, reason="no_results")

        if self.strategy == STRATEGY_FIRST:
            return Resolution(status=LedgerStatus.MATCHED, query=query, candidate=results[0])
        return self._select_scored(track, query, results)

    def _select_scored(self, track: TrackDescriptor, query: str,
                       results: List[MatchCandidate]) -> Resolution:
        scored = [replace(c, score=round(score_candidate(track, c), 4)) for c in results]
        # Highest score wins; ties go to the earlier search rank
        best = sorted(enumerate(scored), key=lambda pair: (-pair[1].score, pair[0]))[0][1]
        if best.score < self.min_score:
            logger.info(f"Best result for '{query}' scored {best.score:.2f} < {self.min_score:.2f}")
            return Resolution(status=LedgerStatus.NOT_FOUND, query=query, reason="below_min_score")
        return Resolution(status=LedgerStatus.MATCHED, query=query, candidate=best)
