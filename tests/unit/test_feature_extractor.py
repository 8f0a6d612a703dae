"""
Unit tests for feature extraction: pure feature math and the lookup join.
"""

import math
from datetime import timedelta

import pytest

from feed.feature_extractor import (
    FeatureExtractor,
    PrecomputedSignals,
    build_feature_vectors,
    freshness_score,
    keyword_match,
    topic_overlap,
)
from feed.models import NORMALIZED_FEATURES


class TestFeatureMath:

    def test_freshness_decay(self):
        assert freshness_score(0) == pytest.approx(1.0)
        assert freshness_score(24) == pytest.approx(math.exp(-1))
        assert freshness_score(-5) == pytest.approx(1.0)

    def test_topic_overlap(self, sample_profile):
        # design 4.0 + ai 3.0
        assert topic_overlap(["design", "ai"], sample_profile) == pytest.approx(0.7)
        assert topic_overlap(["design", "design"], sample_profile) == pytest.approx(0.8)
        assert topic_overlap(["cooking"], sample_profile) == 0.0
        assert topic_overlap(["design"], None) == 0.0

    def test_topic_overlap_clamped(self, sample_profile_dict):
        from feed.models import UserInterestProfile
        profile = UserInterestProfile.model_validate(
            dict(sample_profile_dict, topic_scores={"design": 8.0, "ai": 9.0})
        )
        assert topic_overlap(["design", "ai"], profile) == 1.0

    def test_keyword_match_substring_either_direction(self, sample_profile):
        assert keyword_match(["designer", "cooking"], sample_profile) == pytest.approx(0.5)
        assert keyword_match(["AI"], sample_profile) == pytest.approx(1.0)
        assert keyword_match([], sample_profile) == 0.0


class TestBuildFeatureVectors:

    def test_pool_normalization(self, make_candidate, now):
        candidates = [
            make_candidate(id="p1", likes_count=12, replies_count=4, author_id="author-a"),
            make_candidate(id="p2", likes_count=6, replies_count=0, author_id="author-b"),
        ]
        signals = PrecomputedSignals(affinities={"author-a": 2.0, "author-b": 8.0})

        vectors = build_feature_vectors(candidates, signals, None, now)

        assert [v.post_id for v in vectors] == ["p1", "p2"]
        assert vectors[0].likes_normalized == pytest.approx(1.0)
        assert vectors[1].likes_normalized == pytest.approx(0.5)
        assert vectors[0].replies_normalized == pytest.approx(1.0)
        assert vectors[1].interaction_affinity == pytest.approx(1.0)
        assert vectors[0].interaction_affinity == pytest.approx(0.25)

    def test_zero_pool_does_not_divide_by_zero(self, make_candidate, now):
        candidates = [make_candidate(id="p1", likes_count=0, replies_count=0, author_follower_count=0)]
        vectors = build_feature_vectors(candidates, PrecomputedSignals(), None, now)
        assert vectors[0].likes_normalized == 0.0
        assert vectors[0].follower_count_normalized == 0.0

    def test_neutral_defaults_without_signals(self, make_candidate, now):
        candidates = [make_candidate(id="p1", post_type="video")]
        vectors = build_feature_vectors(candidates, PrecomputedSignals(), None, now)
        v = vectors[0]
        assert v.content_type_preference == 0.5
        assert v.content_quality == 0.5
        assert v.engagement_score == 0.0
        assert v.topic_overlap_score == 0.0

    def test_profile_driven_features(self, make_candidate, sample_profile, now):
        candidates = [make_candidate(id="p1", author_id="author-a", post_type="image")]
        signals = PrecomputedSignals(
            post_features={"p1": {"engagement_score": 0.8, "virality_velocity": 5.0, "content_quality": 0.9}},
            embeddings={"p1": (["design"], ["designer"])},
        )

        v = build_feature_vectors(candidates, signals, sample_profile, now)[0]

        assert v.engagement_score == pytest.approx(0.8)
        assert v.virality_velocity == pytest.approx(0.5)
        assert v.creator_affinity == pytest.approx(0.5)
        assert v.content_type_preference == pytest.approx(0.9)
        assert v.topic_overlap_score == pytest.approx(0.4)
        assert v.keyword_match == pytest.approx(1.0)
        assert v.content_quality == pytest.approx(0.9)

    def test_age_and_freshness(self, make_candidate, now):
        c = make_candidate(id="p1", created_at=(now - timedelta(hours=24)).isoformat())
        v = build_feature_vectors([c], PrecomputedSignals(), None, now)[0]
        assert v.age_hours == pytest.approx(24.0)
        assert v.freshness == pytest.approx(math.exp(-1))

    def test_all_normalized_fields_in_unit_interval(self, make_candidate, sample_profile, now):
        candidates = [
            make_candidate(id=f"p{i}", likes_count=i * 7, author_follower_count=i * 100)
            for i in range(5)
        ]
        signals = PrecomputedSignals(
            post_features={f"p{i}": {"engagement_score": i, "virality_velocity": 100.0} for i in range(5)},
        )
        for v in build_feature_vectors(candidates, signals, sample_profile, now):
            for name in NORMALIZED_FEATURES:
                assert 0.0 <= getattr(v, name) <= 1.0, name


class TestFeatureExtractor:

    def test_empty_candidates(self, fake_supabase):
        outcome = FeatureExtractor(fake_supabase).extract([], "viewer-1")
        assert outcome.ok
        assert outcome.value == []

    def test_lookups_joined(self, make_supabase, make_candidate, now):
        fake = make_supabase(tables={
            "post_features": [{"post_id": "post-001", "engagement_score": 0.6,
                               "virality_velocity": 2.0, "content_quality": 0.7}],
            "content_embeddings": [{"post_id": "post-001", "topics": ["ai"], "keywords": ["llm"]}],
            "user_interaction_graph": [{"target_user_id": "author-a", "affinity_score": 3.0}],
        })

        outcome = FeatureExtractor(fake, clock=lambda: now).extract([make_candidate()], "viewer-1")

        assert outcome.ok
        v = outcome.value[0]
        assert v.engagement_score == pytest.approx(0.6)
        assert v.interaction_affinity == pytest.approx(1.0)

    def test_failed_lookup_degrades_to_defaults(self, make_supabase, make_candidate, now):
        fake = make_supabase(tables={"post_features": RuntimeError("timeout")})

        outcome = FeatureExtractor(fake, clock=lambda: now).extract([make_candidate()], "viewer-1")

        assert outcome.is_degraded
        assert "post_features" in outcome.reason
        assert len(outcome.value) == 1
        assert outcome.value[0].engagement_score == 0.0
        assert outcome.value[0].content_quality == 0.5
