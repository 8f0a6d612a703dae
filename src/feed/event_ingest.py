"""
Server side of the telemetry endpoint.

Event batches are filtered to the authenticated viewer, bulk inserted via
the ``batch_insert_feed_events`` RPC (which also maintains feed_seen_posts)
and, for significant interactions, fed into the viewer -> author
interaction graph. When the RPC is unavailable the rows go straight into
feed_events and impressions are marked as seen explicitly.

Session lifecycle messages (start / heartbeat / end) maintain user_sessions.
"""

import json
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from core.logging import get_logger
from core.utils import utc_now
from feed.constants import INTERACTION_GRAPH_EVENTS
from feed.models import FeedEvent, FeedEventType, SessionAction

logger = get_logger(__name__)

GRAPH_UPDATE_WORKERS = 4


class EventIngestError(Exception):
    """Raised when an event batch could not be stored at all."""


class SessionOwnershipError(Exception):
    """Raised when a session message names a different user."""


class EventIngestor:
    """Stores feed telemetry and session lifecycle for one request."""

    def __init__(self, supabase: Optional[Client] = None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase

    # =========================================================================
    # Events
    # =========================================================================

    def ingest(self, events: Sequence[FeedEvent], user_id: str) -> int:
        """
        Store the viewer's events and return how many were accepted.

        Events belonging to other users are silently dropped. Raises
        EventIngestError only if both the RPC and the direct insert fail.
        """
        own = [e for e in events if e.user_id == user_id]
        if not own:
            return 0
        payload = [e.model_dump(mode="json") for e in own]

        try:
            result = self._supabase.rpc("batch_insert_feed_events", {
                "events": json.dumps(payload),
            }).execute()
        except Exception as e:
            logger.warning("batch_insert_feed_events failed, inserting directly", user_id=user_id, error=str(e))
            self._insert_directly(payload, user_id)
            return len(own)

        self._update_interaction_graph(own)
        inserted = getattr(result, "data", None)
        return inserted if isinstance(inserted, int) else len(own)

    def _insert_directly(self, payload: List[Dict[str, Any]], user_id: str) -> None:
        try:
            self._supabase.table("feed_events").insert(payload).execute()
        except Exception as e:
            raise EventIngestError(f"failed to insert feed events: {e}") from e

        seen = [
            {"user_id": row["user_id"], "post_id": row["post_id"]}
            for row in payload
            if row["event_type"] == FeedEventType.IMPRESSION.value
        ]
        if not seen:
            return
        try:
            self._supabase.table("feed_seen_posts") \
                .upsert(seen, on_conflict="user_id,post_id", ignore_duplicates=True) \
                .execute()
        except Exception as e:
            logger.warning("Marking impressions as seen failed", user_id=user_id, error=str(e))

    def _update_interaction_graph(self, events: Sequence[FeedEvent]) -> None:
        significant = [e for e in events if e.event_type in INTERACTION_GRAPH_EVENTS]
        if not significant:
            return

        def update(event: FeedEvent) -> None:
            try:
                self._supabase.rpc("update_interaction_graph", {
                    "p_user_id": event.user_id,
                    "p_target_user_id": event.author_id,
                    "p_event_type": event.event_type,
                }).execute()
            except Exception as e:
                logger.warning(
                    "update_interaction_graph failed",
                    user_id=event.user_id,
                    author_id=event.author_id,
                    error=str(e),
                )

        with ThreadPoolExecutor(max_workers=min(len(significant), GRAPH_UPDATE_WORKERS)) as executor:
            list(executor.map(update, significant))

    # =========================================================================
    # Sessions
    # =========================================================================

    def record_session(self, session: SessionAction, user_id: str) -> None:
        if session.user_id != user_id:
            raise SessionOwnershipError("session belongs to another user")

        now = utc_now().isoformat()
        table = self._supabase.table("user_sessions")
        if session.action == "start":
            table.upsert({
                "id": session.id,
                "user_id": session.user_id,
                "device_type": session.device_type or "unknown",
                "started_at": now,
                "last_active_at": now,
                "events_count": 0,
                "feed_depth": 0,
            }).execute()
        elif session.action == "heartbeat":
            table.update({"last_active_at": now}).eq("id", session.id).execute()
        else:
            table.update({"ended_at": now, "last_active_at": now}).eq("id", session.id).execute()

        logger.debug("Recorded session action", session_id=session.id, action=session.action)
