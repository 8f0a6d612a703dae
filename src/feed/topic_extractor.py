"""
Post topic/keyword extraction for the content_embeddings table.

Feeds the topic-overlap and keyword-match features. An LLM pass produces
topics, keywords and a sentiment score; short posts, a missing API key and
any LLM failure use a deterministic fallback (stop-word filtered keyword
frequency plus a topic trigger map).
"""

import json
import re
import threading
from collections import Counter
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from supabase import Client

from config.settings import get_settings
from core.logging import get_logger
from core.utils import utc_now
from feed.models import ContentEmbedding

logger = get_logger(__name__)

MIN_LLM_CONTENT_LENGTH = 20
MAX_CONTENT_CHARS = 1000
MAX_TOPICS = 5
MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 4

STOP_WORDS = frozenset("""
the a an is are was were be been being have has had do does did will would could
should may might can shall to of in for on with at by from as into through during
before after above below between out off over under again further then once here
there when where why how all both each few more most other some such no nor not
only own same so than too very just because but and or if while about up it its
this that these those i me my we our you your he him his she her they them their
what which who
""".split())

TOPIC_TRIGGERS: Dict[str, Tuple[str, ...]] = {
    "technology": ("tech", "software", "code", "programming", "developer", "engineering", "build", "app"),
    "ai": ("artificial", "intelligence", "machine", "learning", "model", "neural", "deep", "chatgpt", "llm"),
    "startups": ("startup", "founder", "venture", "seed", "series", "pitch", "launch", "mvp", "scale"),
    "design": ("design", "ux", "ui", "figma", "prototype", "user", "interface", "creative"),
    "career": ("career", "job", "hiring", "interview", "resume", "skills", "work", "role", "position"),
    "funding": ("funding", "investment", "investor", "raise", "round", "capital", "valuation"),
    "product": ("product", "feature", "release", "roadmap", "feedback", "user", "customer"),
    "community": ("community", "team", "collaborate", "together", "network", "connect", "event"),
}

DEFAULT_TOPIC = "general"

_NON_WORD = re.compile(r"[^a-z0-9\s]")


class TopicResponse(BaseModel):
    """Structured output expected from the model."""
    model_config = ConfigDict(extra="ignore")

    topics: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    sentiment: float = 0.0


def extract_fallback(post_id: str, content: Optional[str]) -> ContentEmbedding:
    """
    Keyword frequency + trigger-word topics.

    Example:
        >>> extract_fallback("p1", "Hiring a founder for our startup").topics
        ['startups', 'career']
    """
    text = (content or "").lower()
    words = [
        w for w in _NON_WORD.sub(" ", text).split()
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS
    ]
    # most_common keeps first-seen order among equal counts
    keywords = [w for w, _ in Counter(words).most_common(MAX_KEYWORDS)]

    topics = [topic for topic, triggers in TOPIC_TRIGGERS.items() if any(t in text for t in triggers)]
    if not topics:
        topics = [DEFAULT_TOPIC]

    return ContentEmbedding(
        post_id=post_id,
        topics=topics[:MAX_TOPICS],
        keywords=keywords,
        sentiment=0.0,
    )


def _prompt(content: str, post_type: str) -> str:
    return (
        f"Analyze this {post_type} post and extract:\n"
        '1. 3-5 topic tags (broad categories like "technology", "startups", "ai", "design", '
        '"career", "product", "funding", "engineering")\n'
        "2. 5-10 keywords (specific terms from the content)\n"
        "3. Sentiment score (-1 to 1, where -1 is very negative, 0 is neutral, 1 is very positive)\n\n"
        f'Post content: "{content[:MAX_CONTENT_CHARS]}"\n\n'
        'Respond with JSON: {"topics": [...], "keywords": [...], "sentiment": 0.0}'
    )


class TopicExtractor:
    """Extracts and stores ContentEmbedding rows."""

    def __init__(self, supabase: Optional[Client] = None, client=None, model: Optional[str] = None):
        settings = get_settings()
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._client = client
        self._client_lock = threading.Lock()
        self._api_key = settings.llm_api_key
        self._base_url = settings.llm_base_url
        self._timeout = settings.llm_timeout_seconds
        self._temperature = settings.llm_temperature
        self._model = model or settings.topic_extraction_model
        self._llm_available = client is not None or bool(self._api_key)

    @property
    def client(self):
        """Lazy-load the OpenAI-compatible client."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    from openai import OpenAI
                    self._client = OpenAI(
                        api_key=self._api_key,
                        base_url=self._base_url,
                        timeout=self._timeout,
                        max_retries=1,
                    )
        return self._client

    def extract(self, post_id: str, content: Optional[str], post_type: str = "text") -> ContentEmbedding:
        """LLM extraction when possible, fallback otherwise. Never raises."""
        if self._llm_available and content and len(content) > MIN_LLM_CONTENT_LENGTH:
            try:
                embedding = self._extract_with_llm(post_id, content, post_type)
                if embedding is not None:
                    return embedding
                logger.warning("Topic extraction response failed validation, using fallback", post_id=post_id)
            except Exception as e:
                logger.warning("LLM topic extraction failed, using fallback", post_id=post_id, error=str(e))
        return extract_fallback(post_id, content)

    def _extract_with_llm(self, post_id: str, content: str, post_type: str) -> Optional[ContentEmbedding]:
        response = self.client.chat.completions.create(
            model=self._model,
            messages=[
                {
                    "role": "system",
                    "content": (
                        "You are a content analysis system. Extract topics and keywords from "
                        "social media posts. Respond ONLY with valid JSON."
                    ),
                },
                {"role": "user", "content": _prompt(content, post_type)},
            ],
            temperature=self._temperature,
            max_tokens=256,
            response_format={"type": "json_object"},
        )
        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            return None
        try:
            parsed = TopicResponse.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            return None

        return ContentEmbedding(
            post_id=post_id,
            topics=[str(t) for t in parsed.topics[:MAX_TOPICS]],
            keywords=[str(k) for k in parsed.keywords[:MAX_KEYWORDS]],
            sentiment=parsed.sentiment,
            computed_at=utc_now(),
        )

    def store(self, embedding: ContentEmbedding) -> None:
        """
        Upsert the embedding, then ask the database to (re)compute the
        post's precomputed features.

        The upsert error propagates; the feature RPC is best-effort.
        """
        self._supabase.table("content_embeddings") \
            .upsert(embedding.model_dump(mode="json"), on_conflict="post_id") \
            .execute()

        try:
            self._supabase.rpc("compute_post_features", {"p_post_id": embedding.post_id}).execute()
        except Exception as e:
            logger.warning("compute_post_features failed", post_id=embedding.post_id, error=str(e))

    def extract_and_store(self, post_id: str, content: Optional[str], post_type: str = "text") -> ContentEmbedding:
        embedding = self.extract(post_id, content, post_type)
        self.store(embedding)
        logger.info("Stored content embedding", post_id=post_id, topics=embedding.topics)
        return embedding
