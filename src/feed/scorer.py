"""
Tier-1 deterministic scoring.

    score = sum(weight_i * feature_i)

over the RankingWeights table; an experiment's VariantConfig may override any
subset of weights. Output is sorted by score descending with post id
ascending as the tie-break, so equal scores always produce the same order.
"""

from typing import List, Optional, Sequence

from feed.models import PostFeatureVector, RankingWeights, ScoredPost, VariantConfig

DEFAULT_WEIGHTS = RankingWeights()


def tier1_score(f: PostFeatureVector, weights: RankingWeights = DEFAULT_WEIGHTS) -> float:
    return (
        f.engagement_score * weights.engagement
        + f.virality_velocity * weights.virality
        + (1.0 if f.is_following else 0.0) * weights.following
        + (1.0 if f.is_fof else 0.0) * weights.fof
        + f.interaction_affinity * weights.interaction_affinity
        + f.creator_affinity * weights.creator_affinity
        + f.topic_overlap_score * weights.topic_overlap
        + f.freshness * weights.freshness
        + f.content_type_preference * weights.content_type
        + (1.0 if f.has_media else 0.0) * weights.media
    )


def ranking_key(post: ScoredPost):
    """Sort key: score descending, then post id ascending."""
    return (-post.score, post.post_id)


def score_posts(
    features: Sequence[PostFeatureVector],
    overrides: Optional[VariantConfig] = None,
    base_weights: RankingWeights = DEFAULT_WEIGHTS,
) -> List[ScoredPost]:
    """Score and sort feature vectors. Pure: same input, same output."""
    weights = base_weights.merged(overrides)
    scored = []
    for f in features:
        s = tier1_score(f, weights)
        scored.append(ScoredPost(
            post_id=f.post_id,
            author_id=f.author_id,
            score=s,
            tier1_score=s,
            features=f,
        ))
    scored.sort(key=ranking_key)
    return scored


def quick_score(
    features: Sequence[PostFeatureVector],
    overrides: Optional[VariantConfig] = None,
) -> List[ScoredPost]:
    """Tier-1 only scoring for the small realtime injection batch."""
    return score_posts(features, overrides)
