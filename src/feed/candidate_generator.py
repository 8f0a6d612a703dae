"""
Candidate generation for the personalized feed.

Primary path is the ``get_feed_candidates`` RPC, which returns pre-joined
candidate rows (post + author + engagement counts + viewer-relative social
flags) for posts younger than ``max_age_hours``.

When the RPC errors or returns nothing, a fallback query rebuilds candidates
from the base tables:
1. the viewer's follow set (user_follows)
2. posts already served to the viewer (feed_seen_posts)
3. recent, non-deleted, top-level posts not written by the viewer
4. like counts for those posts (post_likes)

The fallback has no age cutoff so sparse accounts still get a feed.
"""

from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError
from supabase import Client

from config.database import rows
from core.logging import get_logger
from core.utils import chunk_list
from feed.constants import CANDIDATE_MAX_AGE_HOURS, CANDIDATE_POOL_SIZE
from feed.models import Candidate
from feed.outcomes import StageOutcome

logger = get_logger(__name__)

STAGE = "candidates"

POST_SELECT = (
    "id, author_id, environment_id, content, post_type, created_at, "
    "author:author_id(id, username, full_name, avatar_url, is_verified)"
)

MEDIA_POST_TYPES = frozenset({"image", "video", "media"})

# PostgREST puts ``in.(...)`` filters in the URL; keep batches short
IN_FILTER_BATCH = 200


def candidate_from_post_row(
    row: Dict[str, Any],
    following_ids: Set[str],
    likes_count: int = 0,
) -> Candidate:
    """Build a Candidate from a ``posts`` row joined with its author."""
    author = row.get("author") or {}
    post_type = row.get("post_type") or "text"
    return Candidate(
        id=row["id"],
        author_id=row["author_id"],
        environment_id=row.get("environment_id"),
        content=row.get("content"),
        post_type=post_type,
        created_at=row["created_at"],
        likes_count=likes_count,
        replies_count=0,
        has_media=post_type in MEDIA_POST_TYPES,
        has_poll=post_type == "poll",
        author_username=author.get("username") or "",
        author_full_name=author.get("full_name") or "",
        author_avatar_url=author.get("avatar_url"),
        author_is_verified=bool(author.get("is_verified")),
        author_follower_count=0,
        is_following=row["author_id"] in following_ids,
        is_fof=False,
    )


class CandidateGenerator:
    """Produces the bounded pool of eligible posts for a viewer."""

    def __init__(self, supabase: Optional[Client] = None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase

    def generate(
        self,
        user_id: str,
        limit: int = CANDIDATE_POOL_SIZE,
        max_age_hours: int = CANDIDATE_MAX_AGE_HOURS,
    ) -> StageOutcome[List[Candidate]]:
        """
        Return up to ``limit`` candidates for ``user_id``.

        Never raises. An RPC failure that the fallback recovers from is
        reported as degraded (with the recovered pool as its value); a total
        failure is a degraded empty pool.
        """
        rpc_error: Optional[str] = None
        try:
            result = self._supabase.rpc("get_feed_candidates", {
                "p_user_id": user_id,
                "p_limit": limit,
                "p_max_age_hours": max_age_hours,
            }).execute()
            candidates = self._parse_rows(rows(result))
            if candidates:
                logger.info("Candidate RPC returned pool", user_id=user_id, count=len(candidates))
                return StageOutcome.success(STAGE, candidates[:limit])
            logger.info("Candidate RPC returned 0 rows, using fallback query", user_id=user_id)
        except Exception as e:
            rpc_error = str(e)
            logger.warning("get_feed_candidates RPC failed", user_id=user_id, error=rpc_error)

        try:
            candidates = self._fallback_candidates(user_id, limit)
        except Exception as e:
            logger.warning("Fallback candidate query failed", user_id=user_id, error=str(e))
            return StageOutcome.fallback(STAGE, [], f"candidate generation failed: {e}")

        logger.info("Fallback candidate query returned pool", user_id=user_id, count=len(candidates))
        if rpc_error is not None:
            return StageOutcome.fallback(STAGE, candidates, f"rpc failed: {rpc_error}")
        return StageOutcome.success(STAGE, candidates)

    # =========================================================================
    # Fallback path
    # =========================================================================

    def _fallback_candidates(self, user_id: str, limit: int) -> List[Candidate]:
        following_ids = self.following_ids(user_id)
        seen_ids = self._seen_post_ids(user_id)

        result = self._supabase.table("posts") \
            .select(POST_SELECT) \
            .eq("deleted", False) \
            .is_("parent_post_id", "null") \
            .neq("author_id", user_id) \
            .order("created_at", desc=True) \
            .limit(limit * 2) \
            .execute()
        posts = [p for p in rows(result) if p.get("id") not in seen_ids]
        if not posts:
            return []

        likes = self.like_counts(p["id"] for p in posts)

        candidates: List[Candidate] = []
        for post in posts:
            try:
                candidates.append(candidate_from_post_row(post, following_ids, likes.get(post["id"], 0)))
            except (KeyError, ValidationError) as e:
                logger.debug("Skipping malformed post row", post_id=post.get("id"), error=str(e))
            if len(candidates) >= limit:
                break
        return candidates

    def following_ids(self, user_id: str, among: Optional[Iterable[str]] = None) -> Set[str]:
        """
        Authors the viewer follows, optionally restricted to ``among``.

        A failed lookup yields an empty set: candidates simply lose their
        following signal.
        """
        try:
            query = self._supabase.table("user_follows") \
                .select("followee_id") \
                .eq("follower_id", user_id)
            if among is not None:
                among = list(dict.fromkeys(among))
                if not among:
                    return set()
                query = query.in_("followee_id", among)
            return {r["followee_id"] for r in rows(query.execute()) if r.get("followee_id")}
        except Exception as e:
            logger.warning("Follow lookup failed", user_id=user_id, error=str(e))
            return set()

    def _seen_post_ids(self, user_id: str) -> Set[str]:
        try:
            result = self._supabase.table("feed_seen_posts") \
                .select("post_id") \
                .eq("user_id", user_id) \
                .execute()
            return {r["post_id"] for r in rows(result) if r.get("post_id")}
        except Exception as e:
            logger.warning("Seen-posts lookup failed", user_id=user_id, error=str(e))
            return set()

    def like_counts(self, post_ids: Iterable[str]) -> Dict[str, int]:
        """Like count per post id, batched to keep request URLs short."""
        counts: Counter = Counter()
        ids = list(dict.fromkeys(post_ids))
        try:
            for batch in chunk_list(ids, IN_FILTER_BATCH):
                result = self._supabase.table("post_likes") \
                    .select("post_id") \
                    .in_("post_id", batch) \
                    .execute()
                counts.update(r["post_id"] for r in rows(result) if r.get("post_id"))
        except Exception as e:
            logger.warning("Like count lookup failed", error=str(e), post_count=len(ids))
        return dict(counts)

    @staticmethod
    def _parse_rows(data: List[Dict[str, Any]]) -> List[Candidate]:
        candidates = []
        for row in data:
            try:
                candidates.append(Candidate.model_validate(row))
            except ValidationError as e:
                logger.debug("Skipping malformed candidate row", post_id=row.get("id"), error=str(e))
        return candidates
