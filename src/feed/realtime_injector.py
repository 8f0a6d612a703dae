"""
Realtime injection of posts created after a cached ranking was computed.

Runs on cache hits for the first page only. New posts are quick-scored
(features + Tier-1, no LLM or diversity pass) and the best few are spliced
into the cached order at fixed slots, so the cache itself never has to be
invalidated for fresh content.
"""

from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError
from supabase import Client

from config.database import rows
from core.logging import get_logger
from feed.candidate_generator import POST_SELECT, CandidateGenerator, candidate_from_post_row
from feed.constants import REALTIME_BATCH_SIZE, REALTIME_INJECTION_POSITIONS
from feed.feature_extractor import FeatureExtractor
from feed.interest_profile import InterestProfileProvider
from feed.models import Candidate, FeedCacheEntry, VariantConfig
from feed.outcomes import StageOutcome
from feed.scorer import quick_score

logger = get_logger(__name__)

STAGE = "realtime"

RankedIds = Tuple[List[str], List[float]]


def splice(
    post_ids: Sequence[str],
    scores: Sequence[float],
    injected: Sequence[Tuple[str, float]],
    positions: Sequence[int] = REALTIME_INJECTION_POSITIONS,
) -> RankedIds:
    """
    Insert ``injected`` (id, score) pairs at ``positions`` in order.

    Each position is clamped to the current list length, so a short list
    gets its injected posts appended.
    """
    out_ids = list(post_ids)
    out_scores = list(scores)
    for (post_id, score), position in zip(injected, positions):
        at = min(position, len(out_ids))
        out_ids.insert(at, post_id)
        out_scores.insert(at, score)
    return out_ids, out_scores


class RealtimeInjector:
    """Merges brand-new posts into a cached ranking without recomputing it."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        candidate_generator: Optional[CandidateGenerator] = None,
        feature_extractor: Optional[FeatureExtractor] = None,
        profile_provider: Optional[InterestProfileProvider] = None,
        batch_size: int = REALTIME_BATCH_SIZE,
        positions: Sequence[int] = REALTIME_INJECTION_POSITIONS,
    ):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._candidates = candidate_generator or CandidateGenerator(supabase)
        self._features = feature_extractor or FeatureExtractor(supabase)
        self._profiles = profile_provider or InterestProfileProvider(supabase)
        self._batch_size = batch_size
        self._positions = list(positions)

    def inject(
        self,
        user_id: str,
        entry: FeedCacheEntry,
        overrides: Optional[VariantConfig] = None,
    ) -> StageOutcome[RankedIds]:
        """
        Return the cached (ids, scores) with new posts spliced in.

        Never raises: on any failure the cached arrays come back unchanged
        as a degraded outcome.
        """
        original = (list(entry.post_ids), list(entry.scores))
        try:
            candidates = self._new_candidates(user_id, entry)
            if not candidates:
                return StageOutcome.success(STAGE, original)

            profile = self._profiles.get(user_id)
            features = self._features.extract(candidates, user_id, profile).value
            scored = quick_score(features, overrides)
            picks = [(p.post_id, p.score) for p in scored[:len(self._positions)]]

            ids, scores = splice(entry.post_ids, entry.scores, picks, self._positions)
            logger.info("Injected realtime posts", user_id=user_id, injected=len(picks))
            return StageOutcome.success(STAGE, (ids, scores))

        except Exception as e:
            logger.warning("Realtime injection failed, serving cached page", user_id=user_id, error=str(e))
            return StageOutcome.fallback(STAGE, original, f"injection failed: {e}")

    def _new_candidates(self, user_id: str, entry: FeedCacheEntry) -> List[Candidate]:
        result = self._supabase.table("posts") \
            .select(POST_SELECT) \
            .eq("deleted", False) \
            .is_("parent_post_id", "null") \
            .gt("created_at", entry.computed_at.isoformat()) \
            .neq("author_id", user_id) \
            .order("created_at", desc=True) \
            .limit(self._batch_size) \
            .execute()

        cached = set(entry.post_ids)
        posts = [p for p in rows(result) if p.get("id") and p["id"] not in cached]
        if not posts:
            return []

        following = self._candidates.following_ids(
            user_id, among=(p.get("author_id") for p in posts if p.get("author_id"))
        )
        candidates = []
        for post in posts:
            try:
                candidates.append(candidate_from_post_row(post, following))
            except (KeyError, ValidationError) as e:
                logger.debug("Skipping malformed realtime post", post_id=post.get("id"), error=str(e))
        return candidates
