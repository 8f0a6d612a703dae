"""
Per-variant experiment results.

For every variant: impressions, engagement rate (click + like + reply + share
per impression), CTR, mean dwell time, and the number of assigned viewers.
Each treatment is tested against the first variant (control): z-tests for
the two rates, Welch's t-test for dwell. The experiment is significant when
either rate differs at the 95% level, and the winner is then the variant
with the best engagement rate.
"""

from typing import Any, Callable, Dict, List, Optional

import numpy as np
from supabase import Client

from config.database import rows
from core.logging import get_logger
from feed.constants import ENGAGEMENT_EVENTS
from feed.experiments import ExperimentService, ExperimentStoreError
from feed.models import ExperimentResults, ExperimentVariant, FeedExperiment, MetricResult, VariantResult
from feed.statistics import proportion_ci, relative_change, welch_t_test, z_test_proportions

logger = get_logger(__name__)

# PostgREST caps a response at 1000 rows by default
PAGE_ROWS = 1000

CONFIDENCE_LEVEL = 0.95


class NotEnoughVariantsError(ValueError):
    """Results need a control and at least one treatment."""


def _fetch_all(build_query: Callable[[], Any]) -> List[dict]:
    out: List[dict] = []
    start = 0
    while True:
        batch = rows(build_query().range(start, start + PAGE_ROWS - 1).execute())
        out.extend(batch)
        if len(batch) < PAGE_ROWS:
            return out
        start += PAGE_ROWS


def _dwell_values(events: List[dict]) -> List[float]:
    values = []
    for e in events:
        if e.get("event_type") != "dwell":
            continue
        dwell = (e.get("metadata") or {}).get("dwell_ms")
        try:
            dwell = float(dwell)
        except (TypeError, ValueError):
            continue
        if dwell > 0:
            values.append(dwell)
    return values


class _VariantStats:
    """Raw counts behind one variant's metrics."""

    def __init__(self, variant: ExperimentVariant, events: List[dict], sample_size: int):
        self.variant = variant
        self.sample_size = sample_size
        types = [e.get("event_type") for e in events]
        self.impressions = sum(1 for t in types if t == "impression")
        self.clicks = sum(1 for t in types if t == "click")
        self.engagements = sum(1 for t in types if t in ENGAGEMENT_EVENTS)

        dwell = np.asarray(_dwell_values(events), dtype=float)
        self.dwell_n = int(dwell.size)
        self.dwell_mean = float(dwell.mean()) if dwell.size else 0.0
        self.dwell_var = float(dwell.var(ddof=1)) if dwell.size > 1 else 0.0

    def metrics(self) -> Dict[str, MetricResult]:
        er = proportion_ci(self.engagements, self.impressions, CONFIDENCE_LEVEL)
        ctr = proportion_ci(self.clicks, self.impressions, CONFIDENCE_LEVEL)
        dwell_margin = 1.96 * float(np.sqrt(self.dwell_var / max(1, self.dwell_n)))
        return {
            "engagement_rate": MetricResult(value=er.value, ci_lower=er.lower, ci_upper=er.upper),
            "ctr": MetricResult(value=ctr.value, ci_lower=ctr.lower, ci_upper=ctr.upper),
            "avg_dwell_ms": MetricResult(
                value=self.dwell_mean,
                ci_lower=self.dwell_mean - dwell_margin,
                ci_upper=self.dwell_mean + dwell_margin,
            ),
            "impressions": MetricResult(
                value=float(self.impressions),
                ci_lower=float(self.impressions),
                ci_upper=float(self.impressions),
            ),
        }


class ExperimentAnalyzer:
    """Computes ExperimentResults from feed_events and assignments."""

    def __init__(self, supabase: Optional[Client] = None, service: Optional[ExperimentService] = None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase
        self._service = service or ExperimentService(supabase)

    def results(self, experiment_id: str) -> Optional[ExperimentResults]:
        """
        Analyze an experiment.

        Returns None for an unknown experiment and raises
        NotEnoughVariantsError when it has fewer than two variants.
        """
        experiment = self._service.get_experiment(experiment_id)
        if experiment is None:
            return None
        if len(experiment.variants) < 2:
            raise NotEnoughVariantsError("need at least 2 variants for results")

        counts = self._service.assignment_counts(experiment_id)
        stats = [
            _VariantStats(v, self._variant_events(experiment_id, v.id), counts.get(v.id, 0))
            for v in experiment.variants
        ]
        return self.analyze(experiment, stats)

    def _variant_events(self, experiment_id: str, variant_id: str) -> List[dict]:
        try:
            return _fetch_all(
                lambda: self._supabase.table("feed_events")
                .select("event_type, metadata")
                .eq("experiment_id", experiment_id)
                .eq("variant", variant_id)
            )
        except Exception as e:
            raise ExperimentStoreError(f"failed to load events for variant {variant_id}: {e}") from e

    @staticmethod
    def analyze(experiment: FeedExperiment, stats: List["_VariantStats"]) -> ExperimentResults:
        control = stats[0]
        results = [
            VariantResult(
                variant_id=s.variant.id,
                variant_name=s.variant.name,
                sample_size=s.sample_size,
                metrics=s.metrics(),
            )
            for s in stats
        ]

        any_significant = False
        best = results[0]
        for s, result in zip(stats[1:], results[1:]):
            m = result.metrics
            base = results[0].metrics

            er = z_test_proportions(s.engagements, s.impressions, control.engagements, control.impressions)
            ctr = z_test_proportions(s.clicks, s.impressions, control.clicks, control.impressions)
            dwell = welch_t_test(
                s.dwell_mean, s.dwell_var, s.dwell_n,
                control.dwell_mean, control.dwell_var, control.dwell_n,
            )

            for name, test in (("engagement_rate", er), ("ctr", ctr), ("avg_dwell_ms", dwell)):
                m[name] = m[name].model_copy(update={
                    "p_value": test.p_value,
                    "is_significant": test.is_significant,
                    "relative_change": relative_change(base[name].value, m[name].value),
                })

            if er.is_significant or ctr.is_significant:
                any_significant = True
            if m["engagement_rate"].value > best.metrics["engagement_rate"].value:
                best = result

        logger.info(
            "Computed experiment results",
            experiment_id=experiment.id,
            variants=len(results),
            significant=any_significant,
        )
        return ExperimentResults(
            experiment=experiment,
            variants=results,
            is_significant=any_significant,
            confidence_level=CONFIDENCE_LEVEL,
            winner=best.variant_id if any_significant else None,
        )
