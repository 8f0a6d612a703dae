"""
Feed pipeline orchestrator.

    generate_feed(user_id, cursor=None, force_refresh=False) -> FeedResponse

Flow:
1. Resolve the viewer's experiment (optional; failure means default weights)
2. Unless forced, serve from the feed cache; the first page of a cache hit
   gets realtime injection of posts created since the ranking was computed
3. On a miss: candidates -> interest profile -> features -> Tier-1 score
   -> LLM rerank -> diversity rules
4. Cache the ranked list and return its first page

Every stage returns a StageOutcome; degraded stages are listed in the
response's ``degraded_stages``. ``generate_feed`` never raises: when nothing
can be ranked it returns ``source=fallback`` with no posts, which tells the
caller to substitute its own listing.
"""

import threading
import time
from typing import List, Optional, Sequence

from supabase import Client

from config.settings import Settings, get_settings
from core.logging import get_logger
from core.utils import utc_now
from feed.candidate_generator import CandidateGenerator
from feed.diversity import DiversityReranker
from feed.experiments import ExperimentAssignor
from feed.feature_extractor import FeatureExtractor
from feed.feed_cache import FeedCache
from feed.interest_profile import InterestProfileProvider, ProfileCache
from feed.llm_reranker import LLMReranker, get_llm_reranker
from feed.models import (
    CachedFeedPage,
    ExperimentContext,
    FeedResponse,
    FeedSource,
    ScoredPost,
    VariantConfig,
)
from feed.outcomes import StageOutcome
from feed.realtime_injector import RealtimeInjector
from feed.scorer import score_posts

logger = get_logger(__name__)


class FeedPipeline:
    """Composes the ranking stages into one total entry point."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        settings: Optional[Settings] = None,
        candidate_generator: Optional[CandidateGenerator] = None,
        profile_provider: Optional[InterestProfileProvider] = None,
        feature_extractor: Optional[FeatureExtractor] = None,
        llm_reranker: Optional[LLMReranker] = None,
        diversity_reranker: Optional[DiversityReranker] = None,
        feed_cache: Optional[FeedCache] = None,
        realtime_injector: Optional[RealtimeInjector] = None,
        experiment_assignor: Optional[ExperimentAssignor] = None,
    ):
        self.settings = settings or get_settings()
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        s = self.settings

        self.candidates = candidate_generator or CandidateGenerator(supabase)
        self.profiles = profile_provider or InterestProfileProvider(
            supabase,
            cache=ProfileCache(
                ttl_seconds=s.interest_profile_stale_hours * 3600,
                max_entries=s.interest_profile_cache_max_entries,
            ),
            stale_hours=s.interest_profile_stale_hours,
        )
        self.features = feature_extractor or FeatureExtractor(
            supabase, half_life_hours=s.freshness_half_life_hours
        )
        self.llm = llm_reranker or get_llm_reranker()
        self.diversity = diversity_reranker or DiversityReranker()
        self.cache = feed_cache or FeedCache(
            supabase, ttl_hours=s.feed_cache_ttl_hours, page_size=s.feed_page_size
        )
        self.realtime = realtime_injector or RealtimeInjector(
            supabase,
            candidate_generator=self.candidates,
            feature_extractor=self.features,
            profile_provider=self.profiles,
            batch_size=s.realtime_batch_size,
        )
        self.experiments = experiment_assignor or ExperimentAssignor(
            supabase, bucket_count=s.experiment_bucket_count
        )

    @property
    def page_size(self) -> int:
        return self.cache.page_size

    # =========================================================================
    # Entry points
    # =========================================================================

    def generate_feed(
        self,
        user_id: str,
        cursor: Optional[str] = None,
        force_refresh: bool = False,
    ) -> FeedResponse:
        """Return one page of the viewer's feed. Never raises."""
        try:
            return self._generate(user_id, cursor, force_refresh)
        except Exception as e:
            logger.error("Feed pipeline failed, returning fallback", user_id=user_id, error=str(e), exc_info=True)
            return FeedResponse(source=FeedSource.FALLBACK, degraded_stages=["pipeline"])

    def refresh(self, user_id: str) -> FeedResponse:
        """Drop both caches for the viewer and recompute the feed."""
        self.cache.invalidate(user_id)
        self.profiles.invalidate(user_id)
        return self.generate_feed(user_id, force_refresh=True)

    # =========================================================================
    # Flow
    # =========================================================================

    def _generate(self, user_id: str, cursor: Optional[str], force_refresh: bool) -> FeedResponse:
        degraded: List[str] = []
        t_start = time.time()

        experiment = self._track(self.experiments.get_assignment(user_id), degraded, user_id)

        if not force_refresh:
            page = self._track(self.cache.get_outcome(user_id, cursor), degraded, user_id)
            if page is not None:
                response = self._serve_cached(user_id, cursor, page, experiment, degraded)
                logger.info(
                    "Served feed from cache",
                    user_id=user_id,
                    count=len(response.posts),
                    has_more=response.has_more,
                    latency_ms=int((time.time() - t_start) * 1000),
                )
                return response

        ranked = self._rank(user_id, experiment, degraded)
        if not ranked:
            logger.info("No rankable posts, returning fallback", user_id=user_id, degraded_stages=degraded)
            return FeedResponse(source=FeedSource.FALLBACK, degraded_stages=degraded)

        self._track(
            self.cache.write(
                user_id,
                ranked,
                experiment.experiment_id if experiment else None,
                experiment.variant if experiment else None,
            ),
            degraded,
            user_id,
        )

        page = ranked[:self.page_size]
        logger.info(
            "Served feed from pipeline",
            user_id=user_id,
            ranked=len(ranked),
            count=len(page),
            degraded_stages=degraded,
            latency_ms=int((time.time() - t_start) * 1000),
        )
        return FeedResponse(
            posts=page,
            cursor=page[-1].post_id,
            has_more=len(ranked) > self.page_size,
            source=FeedSource.PIPELINE,
            experiment_id=experiment.experiment_id if experiment else None,
            variant=experiment.variant if experiment else None,
            computed_at=utc_now(),
            degraded_stages=degraded,
        )

    def _rank(
        self,
        user_id: str,
        experiment: Optional[ExperimentContext],
        degraded: List[str],
    ) -> List[ScoredPost]:
        candidates = self._track(
            self.candidates.generate(
                user_id,
                limit=self.settings.candidate_pool_size,
                max_age_hours=self.settings.candidate_max_age_hours,
            ),
            degraded,
            user_id,
        )
        if not candidates:
            return []

        profile = self._track(self.profiles.get_outcome(user_id), degraded, user_id)
        features = self._track(self.features.extract(candidates, user_id, profile), degraded, user_id)

        overrides = experiment.config if experiment else None
        tier1 = score_posts(features, overrides)

        summaries = {c.id: c.content or "" for c in candidates}
        tier2 = self._track(self.llm.rerank(tier1, profile, summaries), degraded, user_id)

        try:
            return self.diversity.rerank(tier2, overrides)
        except Exception as e:
            logger.warning("Diversity rules failed, keeping reranked order", user_id=user_id, error=str(e))
            degraded.append("diversity")
            return tier2

    def _serve_cached(
        self,
        user_id: str,
        cursor: Optional[str],
        page: CachedFeedPage,
        experiment: Optional[ExperimentContext],
        degraded: List[str],
    ) -> FeedResponse:
        entry = page.entry
        ids, scores, has_more = page.post_ids, page.scores, page.has_more

        if cursor is None:
            overrides = self._cached_overrides(entry.experiment_id, entry.variant, experiment)
            all_ids, all_scores = self._track(self.realtime.inject(user_id, entry, overrides), degraded, user_id)
            ids = all_ids[:self.page_size]
            scores = all_scores[:self.page_size]
            has_more = len(all_ids) > self.page_size

        posts = [ScoredPost(post_id=i, score=s, tier1_score=s) for i, s in zip(ids, scores)]
        return FeedResponse(
            posts=posts,
            cursor=self._page_cursor(ids, entry.post_ids),
            has_more=has_more,
            source=FeedSource.CACHE,
            experiment_id=entry.experiment_id,
            variant=entry.variant,
            computed_at=entry.computed_at,
            degraded_stages=degraded,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _track(outcome: StageOutcome, degraded: List[str], user_id: str):
        if outcome.is_degraded:
            degraded.append(outcome.stage)
            logger.warning("Stage degraded", user_id=user_id, stage=outcome.stage, reason=outcome.reason)
        return outcome.value

    @staticmethod
    def _cached_overrides(
        experiment_id: Optional[str],
        variant: Optional[str],
        experiment: Optional[ExperimentContext],
    ) -> Optional[VariantConfig]:
        """Weights the cached ranking was produced with, if still known."""
        if experiment is None or experiment_id is None:
            return None
        if experiment.experiment_id == experiment_id and experiment.variant == variant:
            return experiment.config
        return None

    @staticmethod
    def _page_cursor(page_ids: Sequence[str], cached_ids: Sequence[str]) -> Optional[str]:
        """
        Last served id that is part of the cached ranking.

        Injected posts are not in the cached list, so a cursor pointing at
        one would restart pagination from the top.
        """
        cached = set(cached_ids)
        for post_id in reversed(page_ids):
            if post_id in cached:
                return post_id
        return page_ids[-1] if page_ids else None


# =============================================================================
# Singleton
# =============================================================================

_pipeline: Optional[FeedPipeline] = None
_pipeline_lock = threading.Lock()


def get_feed_pipeline() -> FeedPipeline:
    """Get or create the FeedPipeline singleton (thread-safe)."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = FeedPipeline()
    return _pipeline


def peek_feed_pipeline() -> Optional[FeedPipeline]:
    """The singleton if a request has already built it, else None."""
    return _pipeline
