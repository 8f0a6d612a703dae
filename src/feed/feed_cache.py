"""
Durable per-user feed cache with cursor pagination.

Table ``feed_cache`` holds at most one live row per user: the ranked post ids
and their scores as parallel arrays, plus computed/expiry timestamps and the
experiment tags the ranking was produced under.

Writes are delete-then-insert. Two concurrent writers for one user can leave
zero or one row (or briefly two; reads take the newest), and readers treat a
missing, expired or empty row as a miss.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from supabase import Client

from config.database import rows
from core.logging import LoggerMixin
from core.utils import utc_now
from feed.constants import FEED_CACHE_TTL_HOURS, FEED_CACHE_VERSION, FEED_PAGE_SIZE
from feed.models import CachedFeedPage, FeedCacheEntry, ScoredPost
from feed.outcomes import StageOutcome

STAGE = "feed_cache"


def paginate(
    post_ids: Sequence[str],
    scores: Sequence[float],
    cursor: Optional[str] = None,
    page_size: int = FEED_PAGE_SIZE,
) -> Tuple[List[str], List[float], bool]:
    """
    Slice one page after ``cursor`` (the last id the client saw).

    An absent or unknown cursor starts from the top.

    Example:
        >>> paginate(["a", "b", "c", "d"], [4, 3, 2, 1], cursor="b", page_size=2)
        (['c', 'd'], [2, 1], False)
    """
    start = 0
    if cursor:
        try:
            start = list(post_ids).index(cursor) + 1
        except ValueError:
            start = 0
    end = start + page_size
    return list(post_ids[start:end]), list(scores[start:end]), end < len(post_ids)


class FeedCache(LoggerMixin):
    """TTL-bound ranked list per user."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        ttl_hours: float = FEED_CACHE_TTL_HOURS,
        page_size: int = FEED_PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._ttl = timedelta(hours=ttl_hours)
        self._page_size = page_size
        self._clock = clock

    @property
    def page_size(self) -> int:
        return self._page_size

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, user_id: str, cursor: Optional[str] = None) -> Optional[CachedFeedPage]:
        """The requested page of the live entry, or None on a miss."""
        return self.get_outcome(user_id, cursor).value

    def get_outcome(
        self, user_id: str, cursor: Optional[str] = None
    ) -> StageOutcome[Optional[CachedFeedPage]]:
        try:
            entry = self._read_live_entry(user_id)
        except Exception as e:
            self.logger.warning("Feed cache read failed", user_id=user_id, error=str(e))
            return StageOutcome.fallback(STAGE, None, f"cache read failed: {e}")

        if entry is None:
            return StageOutcome.success(STAGE, None)

        page_ids, page_scores, has_more = paginate(
            entry.post_ids, entry.scores, cursor, self._page_size
        )
        return StageOutcome.success(STAGE, CachedFeedPage(
            entry=entry,
            post_ids=page_ids,
            scores=page_scores,
            has_more=has_more,
        ))

    def _read_live_entry(self, user_id: str) -> Optional[FeedCacheEntry]:
        now = self._clock()
        result = self._supabase.table("feed_cache") \
            .select("*") \
            .eq("user_id", user_id) \
            .gt("expires_at", now.isoformat()) \
            .order("computed_at", desc=True) \
            .limit(1) \
            .execute()
        data = rows(result)
        if not data:
            return None
        try:
            entry = FeedCacheEntry.model_validate(data[0])
        except ValidationError as e:
            self.logger.warning("Malformed feed cache row treated as miss", user_id=user_id, error=str(e))
            return None
        if entry.is_empty or entry.is_expired(now):
            return None
        if len(entry.scores) != len(entry.post_ids):
            # Pad/truncate so page slices stay parallel
            scores = (list(entry.scores) + [0.0] * len(entry.post_ids))[:len(entry.post_ids)]
            entry = entry.model_copy(update={"scores": scores})
        return entry

    def latest_post_ids(self, user_id: str) -> List[str]:
        """Ids of the newest cached ranking, expired or not (empty on error)."""
        try:
            result = self._supabase.table("feed_cache") \
                .select("post_ids") \
                .eq("user_id", user_id) \
                .order("computed_at", desc=True) \
                .limit(1) \
                .execute()
            data = rows(result)
            return list(data[0].get("post_ids") or []) if data else []
        except Exception as e:
            self.logger.warning("Feed cache id lookup failed", user_id=user_id, error=str(e))
            return []

    # =========================================================================
    # Writes
    # =========================================================================

    def write(
        self,
        user_id: str,
        ranked: Sequence[ScoredPost],
        experiment_id: Optional[str] = None,
        variant: Optional[str] = None,
    ) -> StageOutcome[Optional[FeedCacheEntry]]:
        """Replace the user's entry with ``ranked``. Never raises."""
        now = self._clock()
        entry = FeedCacheEntry(
            user_id=user_id,
            post_ids=[p.post_id for p in ranked],
            scores=[p.score for p in ranked],
            computed_at=now,
            expires_at=now + self._ttl,
            version=FEED_CACHE_VERSION,
            experiment_id=experiment_id,
            variant=variant,
        )
        try:
            self._supabase.table("feed_cache").delete().eq("user_id", user_id).execute()
            self._supabase.table("feed_cache").insert(entry.model_dump(mode="json")).execute()
        except Exception as e:
            self.logger.warning("Feed cache write failed", user_id=user_id, error=str(e))
            return StageOutcome.fallback(STAGE, None, f"cache write failed: {e}")

        self.logger.info("Cached ranked feed", user_id=user_id, count=len(entry.post_ids))
        return StageOutcome.success(STAGE, entry)

    def invalidate(self, user_id: str) -> bool:
        """Delete every entry for the user. Returns False if the delete failed."""
        try:
            self._supabase.table("feed_cache").delete().eq("user_id", user_id).execute()
            return True
        except Exception as e:
            self.logger.warning("Feed cache invalidation failed", user_id=user_id, error=str(e))
            return False
