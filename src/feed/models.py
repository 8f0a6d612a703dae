"""
Pydantic models for the feed ranking pipeline.

Models cover:
- Candidates and per-(post, viewer) feature vectors
- User interest profiles
- Scored posts, cache entries and the feed response
- Experiments, variants (typed/bounded configs) and assignments
- Feed telemetry events
- Experiment analysis results
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils import clamp, parse_timestamp, utc_now
from feed.constants import (
    FEED_CACHE_VERSION,
    RANKING_WEIGHTS,
)


MAX_CREATOR_AFFINITIES = 50


# =============================================================================
# Enums
# =============================================================================

class FeedSource(str, Enum):
    """Where a served feed page came from."""
    CACHE = "cache"
    PIPELINE = "pipeline"
    FALLBACK = "fallback"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class FeedEventType(str, Enum):
    """Client-side feed interactions."""
    IMPRESSION = "impression"
    DWELL = "dwell"
    SCROLL_PAST = "scroll_past"
    CLICK = "click"
    LIKE = "like"
    UNLIKE = "unlike"
    REPLY = "reply"
    SHARE = "share"
    BOOKMARK = "bookmark"
    POLL_VOTE = "poll_vote"
    PROFILE_CLICK = "profile_click"
    EXPAND_CONTENT = "expand_content"


def _coerce_datetime(value: Any) -> Any:
    parsed = parse_timestamp(value)
    return parsed if parsed is not None else value


# =============================================================================
# Candidates & Features
# =============================================================================

class Candidate(BaseModel):
    """
    One eligible post for a viewer, as returned by the candidate RPC (or
    rebuilt by the fallback query). Lives only for one pipeline run.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    author_id: str
    environment_id: Optional[str] = None
    content: Optional[str] = None
    post_type: str = "text"
    created_at: datetime
    likes_count: int = 0
    replies_count: int = 0
    has_media: bool = False
    has_poll: bool = False

    # Denormalized author fields
    author_username: str = ""
    author_full_name: str = ""
    author_avatar_url: Optional[str] = None
    author_is_verified: bool = False
    author_follower_count: int = 0

    # Viewer-relative social flags
    is_following: bool = False
    is_fof: bool = False

    @field_validator("created_at", mode="before")
    @classmethod
    def parse_created_at(cls, v):
        return _coerce_datetime(v)

    @field_validator(
        "likes_count", "replies_count", "author_follower_count", mode="before"
    )
    @classmethod
    def null_counts_to_zero(cls, v):
        return 0 if v is None else v

    @field_validator(
        "has_media", "has_poll", "author_is_verified", "is_following", "is_fof",
        mode="before",
    )
    @classmethod
    def null_flags_to_false(cls, v):
        return bool(v)

    @field_validator("author_username", "author_full_name", "post_type", mode="before")
    @classmethod
    def null_strings(cls, v):
        return v or ""


# Fields of PostFeatureVector that must lie in [0, 1]
NORMALIZED_FEATURES: Tuple[str, ...] = (
    "engagement_score",
    "virality_velocity",
    "likes_normalized",
    "replies_normalized",
    "interaction_affinity",
    "creator_affinity",
    "topic_overlap_score",
    "content_type_preference",
    "keyword_match",
    "freshness",
    "follower_count_normalized",
    "content_quality",
)


class PostFeatureVector(BaseModel):
    """
    Numeric features of one candidate for one viewer.

    Every field in NORMALIZED_FEATURES is clamped to [0, 1] on construction;
    ``age_hours`` and the boolean flags are raw.
    """
    post_id: str
    author_id: str

    # Engagement
    engagement_score: float = 0.0
    virality_velocity: float = 0.0
    likes_normalized: float = 0.0
    replies_normalized: float = 0.0

    # Social
    is_following: bool = False
    is_fof: bool = False
    interaction_affinity: float = 0.0
    creator_affinity: float = 0.0

    # Content
    topic_overlap_score: float = 0.0
    content_type_preference: float = 0.5
    keyword_match: float = 0.0

    # Freshness
    freshness: float = 0.0
    age_hours: float = 0.0

    # Author
    is_verified: bool = False
    follower_count_normalized: float = 0.0

    # Richness
    has_media: bool = False
    has_poll: bool = False
    content_quality: float = 0.5

    @field_validator(*NORMALIZED_FEATURES, mode="before")
    @classmethod
    def clamp_unit_interval(cls, v):
        if v is None:
            return 0.0
        return clamp(float(v))

    @property
    def coarse_type(self) -> str:
        """poll / media / text, used by the type-variety rule."""
        if self.has_poll:
            return "poll"
        if self.has_media:
            return "media"
        return "text"


# =============================================================================
# Interest Profile
# =============================================================================

class InteractionPatterns(BaseModel):
    model_config = ConfigDict(extra="ignore")

    avg_dwell_ms: float = 0.0
    avg_session_depth: float = 0.0
    peak_hours: List[int] = Field(default_factory=list)
    preferred_post_types: List[str] = Field(default_factory=list)


class UserInterestProfile(BaseModel):
    """
    Per-user aggregate preferences, produced by the profile aggregation job.

    Instances are treated as immutable snapshots: a refresh replaces the whole
    profile.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    user_id: str
    topic_scores: Dict[str, float] = Field(default_factory=dict)
    content_type_preferences: Dict[str, float] = Field(default_factory=dict)
    creator_affinities: Dict[str, float] = Field(default_factory=dict)
    interaction_patterns: InteractionPatterns = Field(default_factory=InteractionPatterns)
    computed_at: datetime

    @field_validator("computed_at", mode="before")
    @classmethod
    def parse_computed_at(cls, v):
        return _coerce_datetime(v)

    @field_validator(
        "topic_scores", "content_type_preferences", "creator_affinities", mode="before"
    )
    @classmethod
    def null_maps(cls, v):
        return v or {}

    @field_validator("interaction_patterns", mode="before")
    @classmethod
    def null_patterns(cls, v):
        return v or {}

    @field_validator("creator_affinities")
    @classmethod
    def bound_creator_affinities(cls, v: Dict[str, float]) -> Dict[str, float]:
        if len(v) <= MAX_CREATOR_AFFINITIES:
            return v
        top = sorted(v.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_CREATOR_AFFINITIES]
        return dict(top)

    def top_topics(self, n: int = 5) -> List[Tuple[str, float]]:
        """Highest-weighted topics, ties broken by topic name."""
        ranked = sorted(self.topic_scores.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:n]


# =============================================================================
# Scoring
# =============================================================================

class RankingWeights(BaseModel):
    """Tier-1 weight table. Defaults are the production weights."""
    model_config = ConfigDict(frozen=True)

    engagement: float = RANKING_WEIGHTS["engagement"]
    virality: float = RANKING_WEIGHTS["virality"]
    following: float = RANKING_WEIGHTS["following"]
    fof: float = RANKING_WEIGHTS["fof"]
    interaction_affinity: float = RANKING_WEIGHTS["interaction_affinity"]
    creator_affinity: float = RANKING_WEIGHTS["creator_affinity"]
    topic_overlap: float = RANKING_WEIGHTS["topic_overlap"]
    freshness: float = RANKING_WEIGHTS["freshness"]
    content_type: float = RANKING_WEIGHTS["content_type"]
    media: float = RANKING_WEIGHTS["media"]

    def merged(self, overrides: Optional["VariantConfig"]) -> "RankingWeights":
        """Return a copy with the override's weight fields applied on top."""
        if overrides is None:
            return self
        updates = overrides.weight_overrides()
        if not updates:
            return self
        return self.model_copy(update=updates)


class ScoredPost(BaseModel):
    """Pipeline output unit. ``features`` is absent for cache-hydrated posts."""
    post_id: str
    author_id: str = ""
    score: float
    tier1_score: float
    tier2_score: Optional[float] = None
    features: Optional[PostFeatureVector] = None

    @property
    def coarse_type(self) -> str:
        return self.features.coarse_type if self.features else "text"

    @property
    def age_hours(self) -> float:
        return self.features.age_hours if self.features else float("inf")


# =============================================================================
# Experiments
# =============================================================================

class VariantConfig(BaseModel):
    """
    Typed overrides an experiment variant applies to ranking.

    Weight fields replace the matching Tier-1 weight (merge over defaults).
    ``diversity_weight`` multiplies every post score before the diversity
    rules; ``freshness_weight`` tilts scores toward (positive) or away from
    (negative) fresh posts. Unknown keys are rejected.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    engagement: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    virality: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    following: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    fof: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    interaction_affinity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    creator_affinity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    topic_overlap: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    freshness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    content_type: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    media: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    diversity_weight: Optional[float] = Field(default=None, gt=0.0, le=3.0)
    freshness_weight: Optional[float] = Field(default=None, ge=-2.0, le=2.0)

    def weight_overrides(self) -> Dict[str, float]:
        return {
            name: value
            for name, value in self.model_dump(exclude_none=True).items()
            if name in RankingWeights.model_fields
        }

    @property
    def has_score_adjustments(self) -> bool:
        return self.diversity_weight is not None or self.freshness_weight is not None


def _check_variant_set(variants: List["ExperimentVariant"]) -> None:
    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        raise ValueError("variant ids must be unique")
    if variants and sum(v.weight for v in variants) <= 0:
        raise ValueError("variant weights must sum to a positive value")


class ExperimentVariant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str
    weight: float = Field(..., ge=0.0)
    config: VariantConfig = Field(default_factory=VariantConfig)

    @field_validator("config", mode="before")
    @classmethod
    def null_config(cls, v):
        return v or {}


class FeedExperiment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[ExperimentVariant] = Field(default_factory=list)
    targeting_rules: Dict[str, Any] = Field(default_factory=dict)
    metrics: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @field_validator("description", mode="before")
    @classmethod
    def null_description(cls, v):
        return v or ""

    @field_validator("targeting_rules", mode="before")
    @classmethod
    def null_rules(cls, v):
        return v or {}

    @field_validator("metrics", "variants", mode="before")
    @classmethod
    def null_lists(cls, v):
        return v or []

    @model_validator(mode="after")
    def check_variants(self) -> "FeedExperiment":
        _check_variant_set(self.variants)
        return self

    def variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None


class FeedExperimentAssignment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    experiment_id: str
    user_id: str
    variant_id: str
    assigned_at: Optional[datetime] = None


class ExperimentContext(BaseModel):
    """The experiment a viewer is currently enrolled in, if any."""
    model_config = ConfigDict(frozen=True)

    experiment_id: str
    variant: str
    config: VariantConfig = Field(default_factory=VariantConfig)


class ExperimentCreate(BaseModel):
    """Body for creating an experiment."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[ExperimentVariant] = Field(..., min_length=1)
    targeting_rules: Dict[str, Any] = Field(default_factory=dict)
    metrics: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_variants(self) -> "ExperimentCreate":
        _check_variant_set(self.variants)
        return self


class ExperimentUpdate(BaseModel):
    """Partial update: status transitions and definition edits."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[ExperimentStatus] = None
    variants: Optional[List[ExperimentVariant]] = Field(default=None, min_length=1)
    metrics: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_variants(self) -> "ExperimentUpdate":
        if self.variants is not None:
            _check_variant_set(self.variants)
        return self


# =============================================================================
# Cache
# =============================================================================

class FeedCacheEntry(BaseModel):
    """One persisted ranked list. Parallel ``post_ids``/``scores`` arrays."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    post_ids: List[str] = Field(default_factory=list)
    scores: List[float] = Field(default_factory=list)
    computed_at: datetime
    expires_at: datetime
    version: int = FEED_CACHE_VERSION
    experiment_id: Optional[str] = None
    variant: Optional[str] = None

    @field_validator("computed_at", "expires_at", mode="before")
    @classmethod
    def parse_times(cls, v):
        return _coerce_datetime(v)

    @field_validator("post_ids", "scores", mode="before")
    @classmethod
    def null_arrays(cls, v):
        return v or []

    @property
    def is_empty(self) -> bool:
        return len(self.post_ids) == 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


class CachedFeedPage(BaseModel):
    """One page sliced out of a cache entry."""
    entry: FeedCacheEntry
    post_ids: List[str]
    scores: List[float]
    has_more: bool


class FeedResponse(BaseModel):
    posts: List[ScoredPost] = Field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False
    source: FeedSource
    experiment_id: Optional[str] = None
    variant: Optional[str] = None
    computed_at: datetime = Field(default_factory=utc_now)
    degraded_stages: List[str] = Field(default_factory=list)


# =============================================================================
# Content
# =============================================================================

class ContentEmbedding(BaseModel):
    """Topics/keywords extracted from a post's text."""
    post_id: str
    topics: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    sentiment: float = 0.0
    language: str = "en"
    computed_at: datetime = Field(default_factory=utc_now)

    @field_validator("sentiment", mode="before")
    @classmethod
    def clamp_sentiment(cls, v):
        try:
            return clamp(float(v), -1.0, 1.0)
        except (TypeError, ValueError):
            return 0.0


# =============================================================================
# Telemetry
# =============================================================================

class FeedEvent(BaseModel):
    """Append-only feed interaction record."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str
    session_id: str
    post_id: str
    author_id: str
    event_type: FeedEventType
    metadata: Optional[Dict[str, Any]] = None
    position_in_feed: Optional[int] = Field(default=None, ge=0)
    experiment_id: Optional[str] = None
    variant: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class FeedEventBatch(BaseModel):
    events: List[FeedEvent] = Field(default_factory=list)


class SessionAction(BaseModel):
    """Session lifecycle message sent by the client alongside telemetry."""
    id: str
    user_id: str
    action: Literal["start", "heartbeat", "end"]
    device_type: Optional[str] = None


class FeedEventsRequest(BaseModel):
    """Body of the ingestion endpoint: an event batch or a session action."""
    events: Optional[List[FeedEvent]] = None
    session: Optional[SessionAction] = None

    @model_validator(mode="after")
    def require_payload(self) -> "FeedEventsRequest":
        if self.events is None and self.session is None:
            raise ValueError("either 'events' or 'session' is required")
        return self


# =============================================================================
# Experiment analysis
# =============================================================================

class MetricResult(BaseModel):
    value: float
    ci_lower: float
    ci_upper: float
    relative_change: Optional[float] = None
    p_value: Optional[float] = None
    is_significant: bool = False


class VariantResult(BaseModel):
    variant_id: str
    variant_name: str
    sample_size: int
    metrics: Dict[str, MetricResult]


class ExperimentResults(BaseModel):
    experiment: FeedExperiment
    variants: List[VariantResult]
    is_significant: bool
    confidence_level: float = 0.95
    winner: Optional[str] = None
