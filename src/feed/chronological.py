"""
Post hydration and the reverse-chronological fallback feed.

The ranking pipeline works on post ids. Before a page is returned to the
client, ids are hydrated into full post rows (author, environment, media,
poll, like and reply counts) in ranked order.

When the pipeline has nothing to serve, or the client has paged past the
ranked list, the HTTP layer switches to a reverse-chronological listing of
top-level posts that skips everything already in the viewer's ranked list.
"""

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field
from supabase import Client

from config.database import rows
from core.logging import LoggerMixin
from core.utils import chunk_list
from feed.constants import FEED_PAGE_SIZE
from feed.feed_cache import FeedCache

FULL_POST_SELECT = (
    "*, "
    "author:author_id(id, username, avatar_url, full_name, is_verified), "
    "environment:environment_id(id, name, description, picture), "
    "media:post_media(*), "
    "poll:post_polls(*, options:post_poll_options(*))"
)

IN_FILTER_BATCH = 200

CHRONOLOGICAL_SOURCE = "chronological"


class ChronologicalPage(BaseModel):
    posts: List[Dict[str, Any]] = Field(default_factory=list)
    offset: int = 0
    has_more: bool = False
    source: str = CHRONOLOGICAL_SOURCE


def _normalize_poll(post: Dict[str, Any]) -> Dict[str, Any]:
    # The embedded one-to-one relation comes back as a list
    poll = post.get("poll")
    if isinstance(poll, list):
        post["poll"] = poll[0] if poll else None
    return post


class PostHydrator(LoggerMixin):
    """Loads full post rows plus like and reply counts."""

    def __init__(self, supabase: Optional[Client] = None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase

    def hydrate(self, post_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """
        Full rows for ``post_ids`` in the given order.

        Deleted or missing posts are skipped. Storage errors propagate.
        """
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return []

        by_id: Dict[str, Dict[str, Any]] = {}
        for batch in chunk_list(ids, IN_FILTER_BATCH):
            result = self._supabase.table("posts") \
                .select(FULL_POST_SELECT) \
                .in_("id", batch) \
                .eq("deleted", False) \
                .execute()
            for row in rows(result):
                by_id[row["id"]] = row

        posts = [by_id[i] for i in ids if i in by_id]
        return self.with_counts(posts)

    def with_counts(self, posts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach ``likes`` and ``replies`` counts; a failed count lookup yields 0."""
        ids = [p["id"] for p in posts]
        likes = self._count(ids, "post_likes", "post_id")
        replies = self._count(ids, "posts", "parent_post_id", only_live=True)
        out = []
        for post in posts:
            post = dict(post)
            post["likes"] = likes.get(post["id"], 0)
            post["replies"] = replies.get(post["id"], 0)
            out.append(_normalize_poll(post))
        return out

    def _count(self, ids: List[str], table: str, column: str, only_live: bool = False) -> Dict[str, int]:
        counts: Counter = Counter()
        if not ids:
            return {}
        try:
            for batch in chunk_list(ids, IN_FILTER_BATCH):
                query = self._supabase.table(table).select(column).in_(column, batch)
                if only_live:
                    query = query.eq("deleted", False)
                counts.update(r[column] for r in rows(query.execute()) if r.get(column))
        except Exception as e:
            self.logger.warning("Count lookup failed", table=table, error=str(e))
        return dict(counts)


class ChronologicalFeed(LoggerMixin):
    """Newest-first top-level posts, skipping the viewer's ranked list."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        cache: Optional[FeedCache] = None,
        hydrator: Optional[PostHydrator] = None,
        page_size: int = FEED_PAGE_SIZE,
    ):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._cache = cache or FeedCache(supabase)
        self._hydrator = hydrator or PostHydrator(supabase)
        self._page_size = page_size

    def page(self, user_id: str, offset: int = 0) -> ChronologicalPage:
        """One page starting at ``offset``. Never raises; errors give an empty page."""
        exclude = self._cache.latest_post_ids(user_id)
        try:
            query = self._supabase.table("posts") \
                .select(FULL_POST_SELECT) \
                .eq("deleted", False) \
                .is_("parent_post_id", "null")
            if exclude:
                query = query.not_.in_("id", exclude)
            result = query \
                .order("created_at", desc=True) \
                .range(offset, offset + self._page_size - 1) \
                .execute()
            posts = rows(result)
        except Exception as e:
            self.logger.error("Chronological query failed", user_id=user_id, error=str(e))
            return ChronologicalPage(offset=offset)

        hydrated = self._hydrator.with_counts(posts)
        return ChronologicalPage(
            posts=hydrated,
            offset=offset + len(hydrated),
            has_more=len(posts) == self._page_size,
        )
