"""
Diversity rules applied after Tier-2 reranking.

Steps, in order, each consuming the previous step's output:
1. Experiment adjustments: ``diversity_weight`` multiplier and
   ``freshness_weight`` tilt, then re-sort
2. New-creator boost: score multiplier for authors with a near-zero
   normalized follower count (order unchanged)
3. Author cap: at most ``max_per_author`` posts per author in the top
   ``author_window``; excess posts move to just after the window
4. Type variety: no run of more than ``max_consecutive_type`` posts of the
   same coarse type (poll / media / text)
5. Freshness floor: at least ``min_fresh_ratio`` of the top
   ``freshness_window`` must be at most ``fresh_max_age_hours`` old

Steps 3-5 return their input unchanged when their invariant already holds.
Steps 4 and 5 never move a post into the author window if that would break
the author cap, and step 5 never lengthens a same-type run past the limit;
when both cannot hold, the author cap wins and the freshness floor yields.
"""

import math
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence

from core.logging import get_logger
from feed.constants import (
    AUTHOR_CAP_WINDOW,
    FRESH_POST_MAX_AGE_HOURS,
    FRESHNESS_WINDOW,
    MAX_CONSECUTIVE_SAME_TYPE,
    MAX_SAME_AUTHOR_IN_WINDOW,
    MIN_FRESH_RATIO,
    NEW_CREATOR_BOOST,
    NEW_CREATOR_FOLLOWER_THRESHOLD,
)
from feed.models import ScoredPost, VariantConfig
from feed.scorer import ranking_key

logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class DiversityConfig:
    """Tunable parameters for the diversity rules."""

    # --- New creators ---
    new_creator_boost: float = NEW_CREATOR_BOOST
    new_creator_follower_threshold: float = NEW_CREATOR_FOLLOWER_THRESHOLD

    # --- Author cap ---
    author_window: int = AUTHOR_CAP_WINDOW
    max_per_author: int = MAX_SAME_AUTHOR_IN_WINDOW

    # --- Type variety ---
    max_consecutive_type: int = MAX_CONSECUTIVE_SAME_TYPE

    # --- Freshness floor ---
    freshness_window: int = FRESHNESS_WINDOW
    min_fresh_ratio: float = MIN_FRESH_RATIO
    fresh_max_age_hours: float = FRESH_POST_MAX_AGE_HOURS


DEFAULT_DIVERSITY_CONFIG = DiversityConfig()


# =============================================================================
# Rules
# =============================================================================

def apply_experiment_adjustments(
    posts: Sequence[ScoredPost],
    config: Optional[VariantConfig],
) -> List[ScoredPost]:
    """Scale scores by the variant's diversity/freshness terms and re-sort."""
    if config is None or not config.has_score_adjustments:
        return list(posts)

    adjusted = []
    for p in posts:
        boost = 1.0
        if config.diversity_weight is not None:
            boost *= config.diversity_weight
        if config.freshness_weight is not None:
            freshness = p.features.freshness if p.features else 0.0
            boost *= 1.0 + (freshness - 0.5) * config.freshness_weight
        adjusted.append(p.model_copy(update={"score": p.score * boost}))
    adjusted.sort(key=ranking_key)
    return adjusted


def apply_new_creator_boost(
    posts: Sequence[ScoredPost],
    boost: float = NEW_CREATOR_BOOST,
    follower_threshold: float = NEW_CREATOR_FOLLOWER_THRESHOLD,
) -> List[ScoredPost]:
    out = []
    for p in posts:
        if p.features is not None and p.features.follower_count_normalized < follower_threshold:
            out.append(p.model_copy(update={"score": p.score * boost}))
        else:
            out.append(p)
    return out


def enforce_author_cap(
    posts: Sequence[ScoredPost],
    window: int = AUTHOR_CAP_WINDOW,
    max_per_author: int = MAX_SAME_AUTHOR_IN_WINDOW,
) -> List[ScoredPost]:
    """
    Defer an author's posts beyond the cap within the leading window.

    Deferred posts are reinserted right after the window, keeping their
    relative order.

    Example (cap 2): [P1(A), P2(A), P3(A), P4(B)] -> [P1, P2, P4, P3]
    """
    result: List[ScoredPost] = []
    deferred: List[ScoredPost] = []
    counts: Counter = Counter()

    for post in posts:
        if len(result) < window:
            if counts[post.author_id] >= max_per_author:
                deferred.append(post)
                continue
            counts[post.author_id] += 1
        result.append(post)

    if deferred:
        insert_at = min(window, len(result))
        result[insert_at:insert_at] = deferred
    return result


def _run_length(posts: Sequence[ScoredPost], start: int, step: int, post_type: str) -> int:
    n = 0
    i = start
    while 0 <= i < len(posts) and posts[i].coarse_type == post_type:
        n += 1
        i += step
    return n


def _longest_run(posts: Sequence[ScoredPost]) -> int:
    longest = run = 0
    last = None
    for p in posts:
        run = run + 1 if p.coarse_type == last else 1
        last = p.coarse_type
        longest = max(longest, run)
    return longest


def _top_author_count(posts: Sequence[ScoredPost], window: int) -> int:
    counts = Counter(p.author_id for p in posts[:window])
    return max(counts.values(), default=0)


def _author_room(
    posts: Sequence[ScoredPost],
    author_id: str,
    window: Optional[int],
    max_per_author: Optional[int],
) -> bool:
    """True if one more post by ``author_id`` fits in the leading window."""
    if window is None or max_per_author is None:
        return True
    count = sum(1 for p in posts[:window - 1] if p.author_id == author_id)
    return count < max_per_author


def enforce_type_variety(
    posts: Sequence[ScoredPost],
    max_consecutive: int = MAX_CONSECUTIVE_SAME_TYPE,
    author_window: Optional[int] = None,
    max_per_author: Optional[int] = None,
) -> List[ScoredPost]:
    """
    Pull posts that extend a same-type run past ``max_consecutive`` and
    reinsert each at the first position that creates no new violation,
    else at the end.

    With an author window, pulling a post shifts the posts below it up; a
    post whose author is already at the cap is held back from entering the
    window the same way and reinserted below it.
    """
    if len(posts) <= max_consecutive:
        return list(posts)
    capped = author_window is not None and max_per_author is not None

    result: List[ScoredPost] = []
    skipped: List[ScoredPost] = []
    in_window: Counter = Counter()
    run = 0
    last_type = None

    for post in posts:
        current = post.coarse_type
        if current == last_type and run + 1 > max_consecutive:
            skipped.append(post)
            continue
        if capped and len(result) < author_window:
            if in_window[post.author_id] >= max_per_author:
                skipped.append(post)
                continue
            in_window[post.author_id] += 1
        if current == last_type:
            run += 1
        else:
            run = 1
            last_type = current
        result.append(post)

    for post in skipped:
        post_type = post.coarse_type
        placed = False
        for i in range(1, len(result) + 1):
            left = _run_length(result, i - 1, -1, post_type)
            right = _run_length(result, i, 1, post_type)
            if left + 1 + right > max_consecutive:
                continue
            if capped and i < author_window and not _author_room(
                result, post.author_id, author_window, max_per_author
            ):
                continue
            result.insert(i, post)
            placed = True
            break
        if not placed:
            result.append(post)

    # Unplaceable posts land at the end, which is inside the window for short lists
    if capped:
        result = enforce_author_cap(result, author_window, max_per_author)
    return result


def _required_fresh(window: int, ratio: float) -> int:
    # round() guards against 10 * 0.3 == 3.0000000000000004
    return math.ceil(round(window * ratio, 9))


def enforce_freshness_floor(
    posts: Sequence[ScoredPost],
    window: int = FRESHNESS_WINDOW,
    min_fresh_ratio: float = MIN_FRESH_RATIO,
    max_age_hours: float = FRESH_POST_MAX_AGE_HOURS,
    author_window: Optional[int] = None,
    max_per_author: Optional[int] = None,
    max_consecutive: Optional[int] = None,
) -> List[ScoredPost]:
    """
    Promote fresh posts from below the window until it meets the floor.

    Promoted posts aim for evenly spaced slots across the window; each one
    displaces the lowest stale post in the window to just below it. When the
    aimed slot would lengthen a same-type run past ``max_consecutive`` or put
    an author over the cap, the nearest slot (and then the next stale post
    up) that keeps both is used instead. A fresh post with no such slot is
    not promoted.
    """
    def is_fresh(p: ScoredPost) -> bool:
        return p.age_hours <= max_age_hours

    if len(posts) <= window:
        return list(posts)
    needed = _required_fresh(window, min_fresh_ratio) - sum(1 for p in posts[:window] if is_fresh(p))
    if needed <= 0:
        return list(posts)

    result = list(posts)
    run_limit = max(max_consecutive, _longest_run(result)) if max_consecutive is not None else None
    cap_limit = None
    if author_window is not None and max_per_author is not None:
        cap_limit = max(max_per_author, _top_author_count(result, author_window))

    def acceptable(trial: List[ScoredPost]) -> bool:
        if run_limit is not None and _longest_run(trial) > run_limit:
            return False
        if cap_limit is not None and _top_author_count(trial, author_window) > cap_limit:
            return False
        return True

    def promote(candidate: ScoredPost, target: int) -> Optional[List[ScoredPost]]:
        others = [p for p in result if p.post_id != candidate.post_id]
        for slot in sorted(range(window), key=lambda s: (abs(s - target), s)):
            shifted = others[:slot] + [candidate] + others[slot:]
            for j in range(window, -1, -1):
                if is_fresh(shifted[j]):
                    continue
                trial = shifted[:j] + shifted[j + 1:]
                trial.insert(window, shifted[j])
                if acceptable(trial):
                    return trial
        return None

    interval = max(1, window // (needed + 1))
    # Only the first `window` fresh posts are tried
    candidates = [p for p in posts[window:] if is_fresh(p)][:window]
    promoted = 0
    for candidate in candidates:
        if promoted == needed:
            break
        trial = promote(candidate, min((promoted + 1) * interval, window - 1))
        if trial is None:
            continue
        result = trial
        promoted += 1

    if promoted < needed:
        logger.debug("Freshness floor not fully met", missing=needed - promoted)
    return result


# =============================================================================
# Reranker
# =============================================================================

class DiversityReranker:
    """Applies the diversity rules in their fixed order."""

    def __init__(self, config: Optional[DiversityConfig] = None):
        self.config = config or DEFAULT_DIVERSITY_CONFIG

    def rerank(
        self,
        posts: Sequence[ScoredPost],
        overrides: Optional[VariantConfig] = None,
    ) -> List[ScoredPost]:
        if not posts:
            return []
        cfg = self.config

        result = apply_experiment_adjustments(posts, overrides)
        result = apply_new_creator_boost(
            result, cfg.new_creator_boost, cfg.new_creator_follower_threshold
        )
        result = enforce_author_cap(result, cfg.author_window, cfg.max_per_author)
        result = enforce_type_variety(
            result, cfg.max_consecutive_type, cfg.author_window, cfg.max_per_author
        )
        result = enforce_freshness_floor(
            result,
            cfg.freshness_window,
            cfg.min_fresh_ratio,
            cfg.fresh_max_age_hours,
            cfg.author_window,
            cfg.max_per_author,
            cfg.max_consecutive_type,
        )

        logger.debug("Applied diversity rules", count=len(result))
        return result
