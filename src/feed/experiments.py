"""
Feed A/B experiments: deterministic variant assignment and management.

Assignment for a viewer:
1. Load the single active experiment (none -> no experiment)
2. A persisted assignment for (experiment, viewer) wins
3. Otherwise bucket the viewer deterministically and persist the result

Bucketing hashes ``experiment_id + user_id`` with MD5 into
``[0, bucket_count)`` and walks the variants' cumulative normalized weights,
so a viewer always lands in the same variant of a given experiment and the
split matches the configured weights. Two requests racing to persist the same
assignment insert identical values; the duplicate insert error is ignored.
"""

import hashlib
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from supabase import Client

from config.database import rows
from core.logging import get_logger
from core.utils import utc_now
from feed.constants import EXPERIMENT_BUCKET_COUNT
from feed.models import (
    ExperimentContext,
    ExperimentCreate,
    ExperimentStatus,
    ExperimentUpdate,
    ExperimentVariant,
    FeedExperiment,
)
from feed.outcomes import StageOutcome

logger = get_logger(__name__)

STAGE = "experiments"


class ExperimentStoreError(Exception):
    """Raised when experiment definitions cannot be read or written."""


# =============================================================================
# Bucketing
# =============================================================================

def bucket_for(experiment_id: str, user_id: str, bucket_count: int = EXPERIMENT_BUCKET_COUNT) -> int:
    digest = hashlib.md5(f"{experiment_id}{user_id}".encode("utf-8")).hexdigest()
    return int(digest, 16) % bucket_count


def select_variant(
    experiment: FeedExperiment,
    user_id: str,
    bucket_count: int = EXPERIMENT_BUCKET_COUNT,
) -> Optional[ExperimentVariant]:
    """Pick the viewer's variant by cumulative weight; None if there are no variants."""
    variants = experiment.variants
    if not variants or not experiment.id:
        return None

    total = sum(v.weight for v in variants)
    if total <= 0:
        return None

    bucket = bucket_for(experiment.id, user_id, bucket_count)
    cumulative = 0.0
    for variant in variants:
        cumulative += (variant.weight / total) * bucket_count
        if bucket < cumulative:
            return variant
    return variants[-1]


# =============================================================================
# Assignment
# =============================================================================

class ExperimentAssignor:
    """Resolves the experiment context a viewer's feed is ranked under."""

    def __init__(self, supabase: Optional[Client] = None, bucket_count: int = EXPERIMENT_BUCKET_COUNT):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._bucket_count = bucket_count

    def get_assignment(self, user_id: str) -> StageOutcome[Optional[ExperimentContext]]:
        """
        Experiment id, variant and config for the viewer, or None.

        Never raises; any failure means "no experiment" and is reported as
        a degraded outcome.
        """
        try:
            experiment = self._active_experiment()
            if experiment is None:
                return StageOutcome.success(STAGE, None)

            variant = self._persisted_variant(experiment, user_id)
            if variant is None:
                variant = select_variant(experiment, user_id, self._bucket_count)
                if variant is None:
                    return StageOutcome.success(STAGE, None)
                self._persist(experiment.id, user_id, variant.id)

            return StageOutcome.success(STAGE, ExperimentContext(
                experiment_id=experiment.id,
                variant=variant.id,
                config=variant.config,
            ))

        except Exception as e:
            logger.warning("Experiment assignment failed, using defaults", user_id=user_id, error=str(e))
            return StageOutcome.fallback(STAGE, None, f"assignment failed: {e}")

    def _active_experiment(self) -> Optional[FeedExperiment]:
        result = self._supabase.table("feed_experiments") \
            .select("*") \
            .eq("status", ExperimentStatus.ACTIVE.value) \
            .limit(1) \
            .execute()
        data = rows(result)
        if not data:
            return None
        try:
            experiment = FeedExperiment.model_validate(data[0])
        except ValidationError as e:
            logger.warning("Active experiment has an invalid definition", experiment_id=data[0].get("id"), error=str(e))
            return None
        return experiment if experiment.id else None

    def _persisted_variant(self, experiment: FeedExperiment, user_id: str) -> Optional[ExperimentVariant]:
        result = self._supabase.table("feed_experiment_assignments") \
            .select("variant_id") \
            .eq("experiment_id", experiment.id) \
            .eq("user_id", user_id) \
            .limit(1) \
            .execute()
        data = rows(result)
        if not data:
            return None
        variant = experiment.variant(data[0].get("variant_id") or "")
        if variant is None:
            logger.warning(
                "Persisted assignment names an unknown variant, re-bucketing",
                experiment_id=experiment.id,
                user_id=user_id,
                variant_id=data[0].get("variant_id"),
            )
        return variant

    def _persist(self, experiment_id: str, user_id: str, variant_id: str) -> None:
        try:
            self._supabase.table("feed_experiment_assignments").insert({
                "experiment_id": experiment_id,
                "user_id": user_id,
                "variant_id": variant_id,
            }).execute()
        except Exception as e:
            # Concurrent first requests insert the same deterministic row
            logger.debug("Assignment insert ignored", experiment_id=experiment_id, user_id=user_id, error=str(e))


# =============================================================================
# Management
# =============================================================================

class ExperimentService:
    """CRUD over experiment definitions. Raises ExperimentStoreError on storage failures."""

    def __init__(self, supabase: Optional[Client] = None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase

    def list_experiments(self) -> List[FeedExperiment]:
        try:
            result = self._supabase.table("feed_experiments") \
                .select("*") \
                .order("created_at", desc=True) \
                .execute()
        except Exception as e:
            raise ExperimentStoreError(f"failed to list experiments: {e}") from e

        experiments = []
        for row in rows(result):
            try:
                experiments.append(FeedExperiment.model_validate(row))
            except ValidationError as e:
                logger.warning("Skipping invalid experiment row", experiment_id=row.get("id"), error=str(e))
        return experiments

    def get_experiment(self, experiment_id: str) -> Optional[FeedExperiment]:
        try:
            result = self._supabase.table("feed_experiments") \
                .select("*") \
                .eq("id", experiment_id) \
                .limit(1) \
                .execute()
        except Exception as e:
            raise ExperimentStoreError(f"failed to load experiment: {e}") from e
        data = rows(result)
        return FeedExperiment.model_validate(data[0]) if data else None

    def create_experiment(self, body: ExperimentCreate) -> FeedExperiment:
        payload = body.model_dump(mode="json")
        try:
            result = self._supabase.table("feed_experiments").insert(payload).execute()
        except Exception as e:
            raise ExperimentStoreError(f"failed to create experiment: {e}") from e
        data = rows(result)
        if not data:
            raise ExperimentStoreError("insert returned no row")
        experiment = FeedExperiment.model_validate(data[0])
        logger.info("Created experiment", experiment_id=experiment.id, variants=len(experiment.variants))
        return experiment

    def update_experiment(self, experiment_id: str, body: ExperimentUpdate) -> Optional[FeedExperiment]:
        """Apply a partial update. Returns None if the experiment does not exist."""
        updates: Dict[str, Any] = body.model_dump(mode="json", exclude_none=True)
        if body.status == ExperimentStatus.ACTIVE:
            updates["started_at"] = utc_now().isoformat()
        elif body.status == ExperimentStatus.ENDED:
            updates["ended_at"] = utc_now().isoformat()
        if not updates:
            return self.get_experiment(experiment_id)

        try:
            result = self._supabase.table("feed_experiments") \
                .update(updates) \
                .eq("id", experiment_id) \
                .execute()
        except Exception as e:
            raise ExperimentStoreError(f"failed to update experiment: {e}") from e
        data = rows(result)
        if not data:
            return None
        logger.info("Updated experiment", experiment_id=experiment_id, fields=sorted(updates))
        return FeedExperiment.model_validate(data[0])

    def assignment_counts(self, experiment_id: str) -> Dict[str, int]:
        """Number of assigned viewers per variant id."""
        try:
            result = self._supabase.table("feed_experiment_assignments") \
                .select("variant_id") \
                .eq("experiment_id", experiment_id) \
                .execute()
        except Exception as e:
            raise ExperimentStoreError(f"failed to count assignments: {e}") from e
        counts: Dict[str, int] = {}
        for row in rows(result):
            variant_id = row.get("variant_id")
            if variant_id:
                counts[variant_id] = counts.get(variant_id, 0) + 1
        return counts
