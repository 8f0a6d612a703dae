"""
User interest profiles with staleness control.

Lookup order for ``InterestProfileProvider.get``:
1. In-process ``ProfileCache`` (fresh within its TTL)
2. Durable ``user_interest_profiles`` row, if computed within the staleness window
3. ``compute_user_interest_profile`` RPC, then re-read the durable row
4. The stale durable row, if one existed
5. None

The cache is an explicit component so each deployment (and each test) picks
its own TTL and size bound instead of sharing module-level state.
"""

import time
from collections import OrderedDict
from datetime import timedelta
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from supabase import Client

from config.database import rows
from core.logging import get_logger
from core.utils import utc_now
from feed.constants import INTEREST_PROFILE_STALE_HOURS
from feed.models import UserInterestProfile
from feed.outcomes import StageOutcome

logger = get_logger(__name__)

STAGE = "interest_profile"


# =============================================================================
# Cache
# =============================================================================

class ProfileCache:
    """
    Thread-safe in-process cache of interest profiles.

    Entries expire ``ttl_seconds`` after they were stored. When more than
    ``max_entries`` users are cached, the least recently used entry is
    evicted. Concurrent writers for the same user simply overwrite each other.
    """

    def __init__(
        self,
        ttl_seconds: float = INTEREST_PROFILE_STALE_HOURS * 3600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[UserInterestProfile, float]]" = OrderedDict()
        self._lock = Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, user_id: str) -> Optional[UserInterestProfile]:
        with self._lock:
            item = self._entries.get(user_id)
            if item is None:
                return None
            profile, stored_at = item
            if self._clock() - stored_at >= self._ttl:
                del self._entries[user_id]
                return None
            self._entries.move_to_end(user_id)
            return profile

    def set(self, user_id: str, profile: UserInterestProfile) -> None:
        with self._lock:
            self._entries[user_id] = (profile, self._clock())
            self._entries.move_to_end(user_id)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, float]:
        with self._lock:
            entries = len(self._entries)
        return {
            "entries": entries,
            "max_entries": self._max_entries,
            "ttl_seconds": self._ttl,
        }


# =============================================================================
# Provider
# =============================================================================

class InterestProfileProvider:
    """Supplies per-user interest profiles to the pipeline."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        cache: Optional[ProfileCache] = None,
        stale_hours: float = INTEREST_PROFILE_STALE_HOURS,
    ):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._cache = cache or ProfileCache(ttl_seconds=stale_hours * 3600)
        self._stale_after = timedelta(hours=stale_hours)

    @property
    def cache(self) -> ProfileCache:
        return self._cache

    def get(self, user_id: str) -> Optional[UserInterestProfile]:
        """The viewer's profile, or None. Never raises."""
        return self.get_outcome(user_id).value

    def invalidate(self, user_id: str) -> None:
        """Evict the in-process entry only; the durable row is untouched."""
        self._cache.invalidate(user_id)

    def get_outcome(self, user_id: str) -> StageOutcome[Optional[UserInterestProfile]]:
        cached = self._cache.get(user_id)
        if cached is not None:
            return StageOutcome.success(STAGE, cached)

        existing: Optional[UserInterestProfile] = None
        try:
            existing = self._read_durable(user_id)
        except Exception as e:
            logger.warning("Interest profile read failed", user_id=user_id, error=str(e))

        if existing is not None and self._is_fresh(existing):
            self._cache.set(user_id, existing)
            return StageOutcome.success(STAGE, existing)

        try:
            self._supabase.rpc("compute_user_interest_profile", {"p_user_id": user_id}).execute()
            fresh = self._read_durable(user_id)
            if fresh is not None:
                self._cache.set(user_id, fresh)
                return StageOutcome.success(STAGE, fresh)
            if existing is None:
                return StageOutcome.success(STAGE, None)
            reason = "recomputation produced no profile"
        except Exception as e:
            reason = f"recomputation failed: {e}"
            logger.warning("Interest profile recomputation failed", user_id=user_id, error=str(e))

        if existing is not None:
            # Serve stale rather than nothing; cached so the RPC is not retried per request
            self._cache.set(user_id, existing)
            return StageOutcome.fallback(STAGE, existing, reason)
        return StageOutcome.fallback(STAGE, None, reason)

    def _read_durable(self, user_id: str) -> Optional[UserInterestProfile]:
        result = self._supabase.table("user_interest_profiles") \
            .select("*") \
            .eq("user_id", user_id) \
            .limit(1) \
            .execute()
        data = rows(result)
        if not data:
            return None
        try:
            return UserInterestProfile.model_validate(data[0])
        except ValidationError as e:
            logger.warning("Malformed interest profile row", user_id=user_id, error=str(e))
            return None

    def _is_fresh(self, profile: UserInterestProfile) -> bool:
        return utc_now() - profile.computed_at < self._stale_after
