"""
Feed ranking constants.

Defaults for every tunable in the pipeline. Deployment-level knobs (pool size,
page size, TTLs) are mirrored in ``config.settings`` and read from there at
runtime; the values here are the fallbacks used by pure functions and tests.
"""

from typing import Dict, List

# =============================================================================
# Candidate generation
# =============================================================================

CANDIDATE_POOL_SIZE = 10_000
CANDIDATE_MAX_AGE_HOURS = 72

# =============================================================================
# Tier-1 weights (sum to 1.0)
# =============================================================================

RANKING_WEIGHTS: Dict[str, float] = {
    "engagement": 0.15,
    "virality": 0.10,
    "following": 0.20,
    "fof": 0.05,
    "interaction_affinity": 0.15,
    "creator_affinity": 0.10,
    "topic_overlap": 0.10,
    "freshness": 0.10,
    "content_type": 0.03,
    "media": 0.02,
}

# =============================================================================
# Feature normalization
# =============================================================================

FRESHNESS_HALF_LIFE_HOURS = 24.0
TOPIC_OVERLAP_DIVISOR = 10.0
CREATOR_AFFINITY_DIVISOR = 10.0
VIRALITY_DIVISOR = 10.0
KEYWORD_MATCH_TOP_TOPICS = 10
NEUTRAL_CONTENT_TYPE_PREFERENCE = 0.5
NEUTRAL_CONTENT_QUALITY = 0.5

# =============================================================================
# Tier-2 (LLM)
# =============================================================================

LLM_RERANK_TOP_N = 50
LLM_SHORT_ID_LENGTH = 8
LLM_SNIPPET_LENGTH = 100
LLM_PROFILE_TOPICS = 5

# =============================================================================
# Diversity
# =============================================================================

AUTHOR_CAP_WINDOW = 20
MAX_SAME_AUTHOR_IN_WINDOW = 2
MAX_CONSECUTIVE_SAME_TYPE = 3
FRESHNESS_WINDOW = 10
MIN_FRESH_RATIO = 0.3
FRESH_POST_MAX_AGE_HOURS = 6.0
NEW_CREATOR_BOOST = 1.2
NEW_CREATOR_FOLLOWER_THRESHOLD = 0.01

# =============================================================================
# Cache / pagination / realtime
# =============================================================================

FEED_PAGE_SIZE = 20
FEED_CACHE_TTL_HOURS = 2.0
FEED_CACHE_VERSION = 1
INTEREST_PROFILE_STALE_HOURS = 1.0
REALTIME_BATCH_SIZE = 10
REALTIME_INJECTION_POSITIONS: List[int] = [0, 4, 9]

# =============================================================================
# Experiments
# =============================================================================

EXPERIMENT_BUCKET_COUNT = 10_000
SIGNIFICANCE_LEVEL = 0.05

# =============================================================================
# Events
# =============================================================================

EVENT_BATCH_MAX_SIZE = 20
EVENT_FLUSH_INTERVAL_SECONDS = 10.0
EVENT_REQUEUE_MULTIPLIER = 3

EVENT_WEIGHTS: Dict[str, float] = {
    "reply": 5.0,
    "share": 4.0,
    "like": 3.0,
    "bookmark": 3.0,
    "poll_vote": 2.5,
    "click": 2.0,
    "profile_click": 1.5,
    "expand_content": 1.0,
    "dwell": 0.5,
    "impression": 0.1,
    "scroll_past": 0.0,
    "unlike": -1.0,
}

# Events that update the viewer -> author interaction graph
INTERACTION_GRAPH_EVENTS = frozenset({
    "like", "reply", "share", "bookmark", "click", "profile_click",
})

# Events counted as engagement in experiment analysis
ENGAGEMENT_EVENTS = frozenset({"click", "like", "reply", "share"})
