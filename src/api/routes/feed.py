"""
Feed endpoints.

- GET  /api/feed                 ranked page (cursor) or chronological page (offset)
- POST /api/feed/refresh         drop caches and recompute
- POST /api/feed/events          telemetry batch or session lifecycle
- POST /api/feed/extract-topics  topics/keywords for one post

The ranked feed never errors for pipeline reasons: an empty or fallback
pipeline result switches to the chronological listing. Once a client has
paged past the ranked list it continues with ``offset`` and no cursor.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from core.auth import SupabaseUser, require_auth
from core.logging import get_logger
from feed.chronological import ChronologicalFeed, PostHydrator
from feed.event_ingest import EventIngestError, EventIngestor, SessionOwnershipError
from feed.models import FeedEventsRequest
from feed.pipeline import FeedPipeline, get_feed_pipeline
from feed.topic_extractor import TopicExtractor

logger = get_logger(__name__)

router = APIRouter(prefix="/api/feed", tags=["Feed"])


# =============================================================================
# Dependencies
# =============================================================================

def get_pipeline() -> FeedPipeline:
    return get_feed_pipeline()


def get_post_hydrator() -> PostHydrator:
    return PostHydrator()


def get_chronological_feed() -> ChronologicalFeed:
    return ChronologicalFeed()


def get_event_ingestor() -> EventIngestor:
    return EventIngestor()


def get_topic_extractor() -> TopicExtractor:
    return TopicExtractor()


# =============================================================================
# Schemas
# =============================================================================

class FeedPageResponse(BaseModel):
    posts: List[Dict[str, Any]] = Field(default_factory=list)
    cursor: Optional[str] = None
    offset: int = 0
    has_more: bool = False
    source: str
    experiment_id: Optional[str] = None
    variant: Optional[str] = None
    degraded_stages: List[str] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    ok: bool = True
    source: str
    post_count: int


class EventsResponse(BaseModel):
    ok: bool = True
    inserted: Optional[int] = None


class ExtractTopicsRequest(BaseModel):
    post_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    post_type: str = "text"


class ExtractTopicsResponse(BaseModel):
    ok: bool = True
    topics: List[str]
    keywords: List[str]


# =============================================================================
# Routes
# =============================================================================

def _chronological(feed: ChronologicalFeed, user_id: str, offset: int) -> FeedPageResponse:
    page = feed.page(user_id, offset)
    return FeedPageResponse(
        posts=page.posts,
        offset=page.offset,
        has_more=page.has_more,
        source=page.source,
    )


@router.get("", response_model=FeedPageResponse, summary="Get the personalized feed")
def get_feed(
    cursor: Optional[str] = Query(None, description="Last post id of the previous ranked page"),
    offset: int = Query(0, ge=0, description="Chronological offset once ranked posts are exhausted"),
    user: SupabaseUser = Depends(require_auth),
    pipeline: FeedPipeline = Depends(get_pipeline),
    hydrator: PostHydrator = Depends(get_post_hydrator),
    chronological: ChronologicalFeed = Depends(get_chronological_feed),
) -> FeedPageResponse:
    if offset > 0 and not cursor:
        return _chronological(chronological, user.id, offset)

    feed = pipeline.generate_feed(user.id, cursor)
    if not feed.posts:
        logger.info("Pipeline returned no posts, serving chronological", user_id=user.id, source=feed.source.value)
        return _chronological(chronological, user.id, offset)

    scores = {p.post_id: p.score for p in feed.posts}
    try:
        posts = hydrator.hydrate([p.post_id for p in feed.posts])
    except Exception as e:
        logger.error("Post hydration failed", user_id=user.id, error=str(e))
        return FeedPageResponse(source="fallback")

    for post in posts:
        post["feed_score"] = scores.get(post["id"])

    # Keep signalling more: after the ranked list the client falls through to chronological
    return FeedPageResponse(
        posts=posts,
        cursor=feed.cursor,
        offset=0,
        has_more=feed.has_more or len(posts) > 0,
        source=feed.source.value,
        experiment_id=feed.experiment_id,
        variant=feed.variant,
        degraded_stages=feed.degraded_stages,
    )


@router.post("/refresh", response_model=RefreshResponse, summary="Recompute the feed")
def refresh_feed(
    user: SupabaseUser = Depends(require_auth),
    pipeline: FeedPipeline = Depends(get_pipeline),
) -> RefreshResponse:
    feed = pipeline.refresh(user.id)
    return RefreshResponse(source=feed.source.value, post_count=len(feed.posts))


@router.post("/events", response_model=EventsResponse, summary="Ingest feed telemetry")
def ingest_events(
    body: FeedEventsRequest,
    user: SupabaseUser = Depends(require_auth),
    ingestor: EventIngestor = Depends(get_event_ingestor),
) -> EventsResponse:
    if body.session is not None:
        try:
            ingestor.record_session(body.session, user.id)
        except SessionOwnershipError as exc:
            raise HTTPException(status_code=403, detail="Forbidden") from exc
        except Exception as exc:
            logger.error("Session update failed", user_id=user.id, error=str(exc))
            raise HTTPException(status_code=500, detail="Failed to update session") from exc
        return EventsResponse()

    try:
        inserted = ingestor.ingest(body.events or [], user.id)
    except EventIngestError as exc:
        logger.error("Event ingestion failed", user_id=user.id, error=str(exc))
        raise HTTPException(status_code=500, detail="Failed to insert events") from exc
    return EventsResponse(inserted=inserted)


@router.post("/extract-topics", response_model=ExtractTopicsResponse, summary="Extract post topics")
def extract_topics(
    body: ExtractTopicsRequest,
    user: SupabaseUser = Depends(require_auth),
    extractor: TopicExtractor = Depends(get_topic_extractor),
) -> ExtractTopicsResponse:
    try:
        embedding = extractor.extract_and_store(body.post_id, body.content, body.post_type or "text")
    except Exception as exc:
        logger.error("Storing content embedding failed", post_id=body.post_id, error=str(exc))
        raise HTTPException(status_code=500, detail="Failed to store embedding") from exc
    return ExtractTopicsResponse(topics=embedding.topics, keywords=embedding.keywords)
