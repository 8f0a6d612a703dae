"""
Unit tests for per-variant experiment results.
"""

from unittest.mock import MagicMock

import pytest

from feed.experiment_analysis import ExperimentAnalyzer, NotEnoughVariantsError
from feed.experiments import ExperimentStoreError


def _events(impressions, clicks=0, likes=0, dwell=()):
    events = [{"event_type": "impression", "metadata": None}] * impressions
    events += [{"event_type": "click", "metadata": None}] * clicks
    events += [{"event_type": "like", "metadata": None}] * likes
    events += [{"event_type": "dwell", "metadata": {"dwell_ms": d}} for d in dwell]
    return events


EXPERIMENT = {
    "id": "exp-1",
    "name": "Freshness test",
    "status": "active",
    "variants": [
        {"id": "control", "name": "Control", "weight": 0.5},
        {"id": "treatment", "name": "Treatment", "weight": 0.5},
    ],
}


def _analyzer(make_supabase, control_events, treatment_events, experiment=EXPERIMENT):
    fake = make_supabase(tables={
        "feed_experiments": [experiment] if experiment else [],
        "feed_experiment_assignments": [{"variant_id": "control"}] * 3 + [{"variant_id": "treatment"}] * 2,
    })
    events = fake.set_table("feed_events", [])
    events.execute.side_effect = [MagicMock(data=control_events), MagicMock(data=treatment_events)]
    return ExperimentAnalyzer(fake), fake


class TestExperimentAnalyzer:

    def test_significant_winner(self, make_supabase):
        analyzer, _ = _analyzer(
            make_supabase,
            _events(1000, clicks=50),
            _events(1000, clicks=120),
        )

        results = analyzer.results("exp-1")

        assert results.is_significant is True
        assert results.winner == "treatment"
        control, treatment = results.variants
        assert control.sample_size == 3
        assert treatment.sample_size == 2
        assert control.metrics["engagement_rate"].value == pytest.approx(0.05)
        assert treatment.metrics["ctr"].value == pytest.approx(0.12)
        assert treatment.metrics["engagement_rate"].relative_change == pytest.approx(1.4)
        assert treatment.metrics["engagement_rate"].is_significant is True
        assert control.metrics["engagement_rate"].p_value is None

    def test_no_difference_no_winner(self, make_supabase):
        analyzer, _ = _analyzer(
            make_supabase,
            _events(1000, clicks=50),
            _events(1000, clicks=52),
        )

        results = analyzer.results("exp-1")

        assert results.is_significant is False
        assert results.winner is None
        assert results.confidence_level == 0.95

    def test_engagement_counts_likes(self, make_supabase):
        analyzer, _ = _analyzer(
            make_supabase,
            _events(100, clicks=5, likes=5),
            _events(100),
        )

        control = analyzer.results("exp-1").variants[0]

        assert control.metrics["engagement_rate"].value == pytest.approx(0.10)
        assert control.metrics["ctr"].value == pytest.approx(0.05)
        assert control.metrics["impressions"].value == 100

    def test_dwell_metric(self, make_supabase):
        analyzer, _ = _analyzer(
            make_supabase,
            _events(10, dwell=[1000, 2000, 3000]),
            _events(10, dwell=[0, "bad"]),
        )

        control, treatment = analyzer.results("exp-1").variants

        assert control.metrics["avg_dwell_ms"].value == pytest.approx(2000.0)
        assert control.metrics["avg_dwell_ms"].ci_lower < 2000.0
        assert treatment.metrics["avg_dwell_ms"].value == 0.0
        # Dwell alone never makes the experiment significant
        assert treatment.metrics["avg_dwell_ms"].p_value == 1.0

    def test_unknown_experiment(self, make_supabase):
        analyzer, _ = _analyzer(make_supabase, [], [], experiment=None)
        assert analyzer.results("nope") is None

    def test_single_variant_rejected(self, make_supabase):
        experiment = dict(EXPERIMENT, variants=[EXPERIMENT["variants"][0]])
        analyzer, _ = _analyzer(make_supabase, [], [], experiment=experiment)
        with pytest.raises(NotEnoughVariantsError):
            analyzer.results("exp-1")

    def test_event_fetch_failure(self, make_supabase):
        analyzer, fake = _analyzer(make_supabase, [], [])
        fake.queries["feed_events"].execute.side_effect = RuntimeError("db down")
        with pytest.raises(ExperimentStoreError):
            analyzer.results("exp-1")

    def test_events_paged(self, make_supabase):
        analyzer, fake = _analyzer(make_supabase, [], [])
        full_page = _events(1000)
        fake.queries["feed_events"].execute.side_effect = [
            MagicMock(data=full_page),
            MagicMock(data=_events(10)),
            MagicMock(data=_events(20)),
        ]

        control, treatment = analyzer.results("exp-1").variants

        assert control.metrics["impressions"].value == 1010
        assert treatment.metrics["impressions"].value == 20
        fake.queries["feed_events"].range.assert_any_call(1000, 1999)
