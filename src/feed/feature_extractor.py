"""
Feature extraction: candidates + precomputed signals -> PostFeatureVector.

Three independent batch lookups feed the join and run in parallel:
- post_features          (engagement score, virality, content quality)
- content_embeddings     (topics, keywords)
- user_interaction_graph (viewer -> author affinity)

A failed lookup leaves its map empty, which degrades the affected features to
their neutral defaults instead of failing the request.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from supabase import Client

from config.database import rows
from core.logging import get_logger
from core.utils import chunk_list, clamp, hours_between, pool_max, utc_now
from feed.constants import (
    CREATOR_AFFINITY_DIVISOR,
    FRESHNESS_HALF_LIFE_HOURS,
    KEYWORD_MATCH_TOP_TOPICS,
    NEUTRAL_CONTENT_QUALITY,
    NEUTRAL_CONTENT_TYPE_PREFERENCE,
    TOPIC_OVERLAP_DIVISOR,
    VIRALITY_DIVISOR,
)
from feed.models import Candidate, PostFeatureVector, UserInterestProfile
from feed.outcomes import StageOutcome

logger = get_logger(__name__)

STAGE = "features"

IN_FILTER_BATCH = 200


@dataclass
class PrecomputedSignals:
    """The three lookup maps, keyed by post id (or author id for affinity)."""
    post_features: Dict[str, dict] = field(default_factory=dict)
    embeddings: Dict[str, Tuple[List[str], List[str]]] = field(default_factory=dict)
    affinities: Dict[str, float] = field(default_factory=dict)


# =============================================================================
# Pure feature math
# =============================================================================

def freshness_score(age_hours: float, half_life_hours: float = FRESHNESS_HALF_LIFE_HOURS) -> float:
    """exp(-age / half_life); 1.0 for a post created now."""
    return math.exp(-max(0.0, age_hours) / half_life_hours)


def topic_overlap(topics: Sequence[str], profile: Optional[UserInterestProfile]) -> float:
    """Sum of the viewer's weights over the post's topic list (repeats count), /10, clamped."""
    if not topics or profile is None or not profile.topic_scores:
        return 0.0
    total = sum(profile.topic_scores.get(t, 0.0) for t in topics)
    return clamp(total / TOPIC_OVERLAP_DIVISOR)


def keyword_match(keywords: Sequence[str], profile: Optional[UserInterestProfile]) -> float:
    """
    Fraction of the post's keywords that substring-match one of the viewer's
    top topic keys (either direction, case-insensitive).
    """
    if not keywords or profile is None or not profile.topic_scores:
        return 0.0
    topic_keys = [t.lower() for t, _ in profile.top_topics(KEYWORD_MATCH_TOP_TOPICS) if t]
    matches = 0
    for kw in keywords:
        k = (kw or "").lower()
        if k and any(k in t or t in k for t in topic_keys):
            matches += 1
    return clamp(matches / len(keywords))


def build_feature_vectors(
    candidates: Sequence[Candidate],
    signals: PrecomputedSignals,
    profile: Optional[UserInterestProfile],
    now: datetime,
    half_life_hours: float = FRESHNESS_HALF_LIFE_HOURS,
) -> List[PostFeatureVector]:
    """Join candidates with precomputed signals. Order follows ``candidates``."""
    if not candidates:
        return []

    max_likes = pool_max(c.likes_count for c in candidates)
    max_replies = pool_max(c.replies_count for c in candidates)
    max_followers = pool_max(c.author_follower_count for c in candidates)
    max_affinity = pool_max(signals.affinities.values())

    content_prefs = profile.content_type_preferences if profile else {}
    creator_affinities = profile.creator_affinities if profile else {}

    vectors: List[PostFeatureVector] = []
    for c in candidates:
        pf = signals.post_features.get(c.id) or {}
        topics, keywords = signals.embeddings.get(c.id, ([], []))
        age_hours = max(0.0, hours_between(c.created_at, now))

        content_pref = content_prefs.get(c.post_type)
        if content_pref is None:
            content_pref = NEUTRAL_CONTENT_TYPE_PREFERENCE

        quality = pf.get("content_quality")
        if quality is None:
            quality = NEUTRAL_CONTENT_QUALITY

        vectors.append(PostFeatureVector(
            post_id=c.id,
            author_id=c.author_id,
            engagement_score=pf.get("engagement_score") or 0.0,
            virality_velocity=(pf.get("virality_velocity") or 0.0) / VIRALITY_DIVISOR,
            likes_normalized=c.likes_count / max_likes,
            replies_normalized=c.replies_count / max_replies,
            is_following=c.is_following,
            is_fof=c.is_fof,
            interaction_affinity=signals.affinities.get(c.author_id, 0.0) / max_affinity,
            creator_affinity=creator_affinities.get(c.author_id, 0.0) / CREATOR_AFFINITY_DIVISOR,
            topic_overlap_score=topic_overlap(topics, profile),
            content_type_preference=content_pref,
            keyword_match=keyword_match(keywords, profile),
            freshness=freshness_score(age_hours, half_life_hours),
            age_hours=age_hours,
            is_verified=c.author_is_verified,
            follower_count_normalized=c.author_follower_count / max_followers,
            has_media=c.has_media,
            has_poll=c.has_poll,
            content_quality=quality,
        ))
    return vectors


# =============================================================================
# Extractor
# =============================================================================

class FeatureExtractor:
    """Loads precomputed signals and builds feature vectors."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        half_life_hours: float = FRESHNESS_HALF_LIFE_HOURS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._half_life = half_life_hours
        self._clock = clock

    def extract(
        self,
        candidates: Sequence[Candidate],
        user_id: str,
        profile: Optional[UserInterestProfile] = None,
    ) -> StageOutcome[List[PostFeatureVector]]:
        if not candidates:
            return StageOutcome.success(STAGE, [])

        post_ids = [c.id for c in candidates]
        author_ids = list(dict.fromkeys(c.author_id for c in candidates))

        signals, failed = self.load_signals(post_ids, user_id, author_ids)
        vectors = build_feature_vectors(candidates, signals, profile, self._clock(), self._half_life)

        if failed:
            return StageOutcome.fallback(
                STAGE, vectors, f"lookups failed: {', '.join(sorted(failed))}"
            )
        return StageOutcome.success(STAGE, vectors)

    def load_signals(
        self,
        post_ids: List[str],
        user_id: str,
        author_ids: List[str],
    ) -> Tuple[PrecomputedSignals, List[str]]:
        """Run the three lookups concurrently; return the maps and failed lookup names."""
        signals = PrecomputedSignals()
        failed: List[str] = []

        with ThreadPoolExecutor(max_workers=3) as executor:
            futures = {
                "post_features": executor.submit(self._fetch_post_features, post_ids),
                "content_embeddings": executor.submit(self._fetch_embeddings, post_ids),
                "interaction_graph": executor.submit(self._fetch_affinities, user_id, author_ids),
            }

            for name, future in futures.items():
                try:
                    value = future.result()
                except Exception as e:
                    logger.warning("Feature lookup failed", lookup=name, user_id=user_id, error=str(e))
                    failed.append(name)
                    continue
                if name == "post_features":
                    signals.post_features = value
                elif name == "content_embeddings":
                    signals.embeddings = value
                else:
                    signals.affinities = value

        return signals, failed

    def _fetch_post_features(self, post_ids: List[str]) -> Dict[str, dict]:
        out: Dict[str, dict] = {}
        for batch in chunk_list(post_ids, IN_FILTER_BATCH):
            result = self._supabase.table("post_features") \
                .select("post_id, engagement_score, virality_velocity, content_quality") \
                .in_("post_id", batch) \
                .execute()
            for row in rows(result):
                out[row["post_id"]] = row
        return out

    def _fetch_embeddings(self, post_ids: List[str]) -> Dict[str, Tuple[List[str], List[str]]]:
        out: Dict[str, Tuple[List[str], List[str]]] = {}
        for batch in chunk_list(post_ids, IN_FILTER_BATCH):
            result = self._supabase.table("content_embeddings") \
                .select("post_id, topics, keywords") \
                .in_("post_id", batch) \
                .execute()
            for row in rows(result):
                out[row["post_id"]] = (row.get("topics") or [], row.get("keywords") or [])
        return out

    def _fetch_affinities(self, user_id: str, author_ids: List[str]) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for batch in chunk_list(author_ids, IN_FILTER_BATCH):
            result = self._supabase.table("user_interaction_graph") \
                .select("target_user_id, affinity_score") \
                .eq("user_id", user_id) \
                .in_("target_user_id", batch) \
                .execute()
            for row in rows(result):
                out[row["target_user_id"]] = float(row.get("affinity_score") or 0.0)
        return out
