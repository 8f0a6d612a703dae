"""
Tier-2 LLM reranking.

Sends the top-K Tier-1 posts to an OpenAI-compatible chat completion endpoint
(Groq by default) and asks for a new order. The rest of the list passes
through untouched.

Response contract:
- The model is asked for a JSON object ``{"ranking": ["<short id>", ...]}``
  (``response_format=json_object``) and the body is validated with a
  pydantic schema.
- Providers that ignore the response format may answer with a bare array or
  wrap it in prose; the first well-formed JSON array of strings in the text
  is then validated against the same schema.
- Unknown and duplicate ids are dropped; top-K posts the model left out are
  appended after the ranked ones in their Tier-1 order.
- Anything else (timeout, auth error, empty or invalid body) returns the
  Tier-1 ordering unchanged.

Reranked posts get ``tier2_score = (K - rank) / K`` and
``score = (tier1_score + tier2_score) / 2``.
"""

import json
import threading
import time
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from config.settings import get_settings
from core.logging import get_logger
from feed.constants import (
    LLM_PROFILE_TOPICS,
    LLM_RERANK_TOP_N,
    LLM_SHORT_ID_LENGTH,
    LLM_SNIPPET_LENGTH,
)
from feed.models import ScoredPost, UserInterestProfile
from feed.outcomes import StageOutcome

logger = get_logger(__name__)

STAGE = "llm_rerank"


# =============================================================================
# Response Schema
# =============================================================================

class RerankResponse(BaseModel):
    """Structured output expected from the model."""
    model_config = ConfigDict(extra="ignore")

    ranking: List[str]


_ID_LIST = TypeAdapter(List[str])
_DECODER = json.JSONDecoder()


def parse_ranking(text: Optional[str]) -> Optional[List[str]]:
    """
    Extract the ranked id list from a completion body.

    Returns None when no valid ranking can be found.
    """
    if not text:
        return None
    body = text.strip()

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        try:
            return RerankResponse.model_validate(data).ranking
        except ValidationError:
            return None
    if isinstance(data, list):
        try:
            return _ID_LIST.validate_python(data)
        except ValidationError:
            return None

    # Prose-wrapped output: first decodable array of strings wins
    start = body.find("[")
    while start != -1:
        try:
            candidate, _ = _DECODER.raw_decode(body, start)
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, list):
            try:
                return _ID_LIST.validate_python(candidate)
            except ValidationError:
                pass
        start = body.find("[", start + 1)
    return None


def short_ids(post_ids: Sequence[str], length: int = LLM_SHORT_ID_LENGTH) -> Dict[str, str]:
    """
    Map post id -> short code shown to the model.

    Codes are ``length``-char prefixes, lengthened until they are unique
    within ``post_ids``.
    """
    unique_ids = list(dict.fromkeys(post_ids))
    longest = max((len(p) for p in unique_ids), default=length)
    n = length
    while n < longest:
        prefixes = [p[:n] for p in unique_ids]
        if len(set(prefixes)) == len(prefixes):
            break
        n += 1
    return {p: p[:n] for p in unique_ids}


def apply_ranking(
    top: Sequence[ScoredPost],
    ranked_codes: Sequence[str],
    codes: Mapping[str, str],
) -> List[ScoredPost]:
    """Reorder ``top`` by the model's ranking and assign Tier-2 scores."""
    by_code: Dict[str, ScoredPost] = {}
    for post in top:
        by_code.setdefault(codes[post.post_id], post)
        by_code.setdefault(post.post_id, post)

    k = len(top)
    used = set()
    reranked: List[ScoredPost] = []
    for code in ranked_codes:
        post = by_code.get(code.strip()) if isinstance(code, str) else None
        if post is None or post.post_id in used:
            continue
        tier2 = (k - len(reranked)) / k
        reranked.append(post.model_copy(update={
            "tier2_score": tier2,
            "score": (post.tier1_score + tier2) / 2,
        }))
        used.add(post.post_id)

    reranked.extend(p for p in top if p.post_id not in used)
    return reranked


# =============================================================================
# Prompt
# =============================================================================

_SYSTEM_PROMPT = """You are a feed ranking assistant for a professional social network. Re-rank the given posts for a single reader to maximize relevance and satisfaction.

Guidance (advisory, hard limits are enforced downstream):
- Prioritize the reader's interests and posts from people they follow
- Mix fresh posts with proven, well-engaged ones
- Avoid clustering several posts from the same author near the top
- Include some diverse discoveries, not only followed authors

Respond ONLY with a JSON object of the form {"ranking": ["<code>", "<code>", ...]} listing the bracketed post codes in your recommended order."""


def build_prompt(
    top: Sequence[ScoredPost],
    codes: Mapping[str, str],
    profile: Optional[UserInterestProfile],
    summaries: Mapping[str, str],
) -> str:
    lines = []
    for i, post in enumerate(top, start=1):
        f = post.features
        snippet = (summaries.get(post.post_id) or "No content").replace("\n", " ")[:LLM_SNIPPET_LENGTH]
        flags = ""
        if f is not None:
            flags = (
                f" following={str(f.is_following).lower()} media={str(f.has_media).lower()}"
                f" poll={str(f.has_poll).lower()} verified={str(f.is_verified).lower()}"
                f" age_h={f.age_hours:.1f}"
            )
        lines.append(f'{i}. [{codes[post.post_id]}] score={post.tier1_score:.3f}{flags} - "{snippet}"')

    topics = profile.top_topics(LLM_PROFILE_TOPICS) if profile else []
    interests = ", ".join(f"{t} ({w:.2f})" for t, w in topics) if topics else "general"

    return (
        f"Re-rank these {len(top)} posts for a reader interested in: {interests}\n\n"
        f"Posts:\n" + "\n".join(lines) + "\n\n"
        "Return the codes in brackets, in your recommended order."
    )


# =============================================================================
# Reranker
# =============================================================================

class LLMReranker:
    """Optional Tier-2 pass over the top of the Tier-1 list."""

    def __init__(
        self,
        client=None,
        top_n: Optional[int] = None,
        model: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        settings = get_settings()
        self._client = client
        self._client_lock = threading.Lock()
        self._api_key = settings.llm_api_key
        self._base_url = settings.llm_base_url
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens
        self._timeout = settings.llm_timeout_seconds
        self._top_n = top_n or settings.llm_rerank_top_n or LLM_RERANK_TOP_N
        if enabled is None:
            enabled = settings.llm_rerank_enabled and (bool(self._api_key) or client is not None)
        self._enabled = enabled

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

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def top_n(self) -> int:
        return self._top_n

    def rerank(
        self,
        scored: List[ScoredPost],
        profile: Optional[UserInterestProfile] = None,
        summaries: Optional[Mapping[str, str]] = None,
    ) -> StageOutcome[List[ScoredPost]]:
        """Rerank the top-K posts. Never raises."""
        if not self._enabled:
            logger.debug("LLM reranker disabled (no API key or feature flag off)")
            return StageOutcome.success(STAGE, scored)

        top = scored[:self._top_n]
        rest = scored[self._top_n:]
        if not top:
            return StageOutcome.success(STAGE, scored)

        t_start = time.time()
        try:
            codes = short_ids([p.post_id for p in top])
            response = self.client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(top, codes, profile, summaries or {})},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )

            raw = response.choices[0].message.content if response.choices else None
            ranking = parse_ranking(raw)
            if ranking is None:
                logger.warning("LLM rerank response failed validation, keeping Tier-1 order")
                return StageOutcome.fallback(STAGE, scored, "invalid rerank response")

            reranked = apply_ranking(top, ranking, codes)
            latency_ms = int((time.time() - t_start) * 1000)
            logger.info(
                "LLM reranked top posts",
                top_n=len(top),
                returned=len(ranking),
                latency_ms=latency_ms,
            )
            return StageOutcome.success(STAGE, reranked + rest)

        except Exception as e:
            latency_ms = int((time.time() - t_start) * 1000)
            logger.warning(
                "LLM rerank failed, keeping Tier-1 order",
                error=str(e),
                latency_ms=latency_ms,
            )
            return StageOutcome.fallback(STAGE, scored, f"completion failed: {e}")


# =============================================================================
# Singleton
# =============================================================================

_reranker: Optional[LLMReranker] = None
_reranker_lock = threading.Lock()


def get_llm_reranker() -> LLMReranker:
    """Get or create the LLMReranker singleton (thread-safe)."""
    global _reranker
    if _reranker is None:
        with _reranker_lock:
            if _reranker is None:
                _reranker = LLMReranker()
    return _reranker
