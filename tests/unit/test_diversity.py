"""
Unit tests for the diversity rules.

Covers:
1. Experiment score adjustments
2. New-creator boost
3. Author cap (top 20, max 2 per author)
4. Type variety (max 3 consecutive)
5. Freshness floor (30% of the top 10 at most 6h old)
"""

from collections import Counter

import pytest

from feed.diversity import (
    DiversityConfig,
    DiversityReranker,
    apply_experiment_adjustments,
    apply_new_creator_boost,
    enforce_author_cap,
    enforce_freshness_floor,
    enforce_type_variety,
)
from feed.models import VariantConfig


def _ids(posts):
    return [p.post_id for p in posts]


def _max_run(posts):
    longest = run = 0
    last = None
    for p in posts:
        run = run + 1 if p.coarse_type == last else 1
        last = p.coarse_type
        longest = max(longest, run)
    return longest


class TestExperimentAdjustments:

    def test_no_config_is_noop(self, make_scored):
        posts = [make_scored("a", score=0.5), make_scored("b", score=0.4)]
        assert _ids(apply_experiment_adjustments(posts, None)) == ["a", "b"]
        assert _ids(apply_experiment_adjustments(posts, VariantConfig(engagement=0.2))) == ["a", "b"]

    def test_diversity_weight_scales(self, make_scored):
        posts = [make_scored("a", score=0.5)]
        adjusted = apply_experiment_adjustments(posts, VariantConfig(diversity_weight=2.0))
        assert adjusted[0].score == pytest.approx(1.0)

    def test_freshness_weight_reorders(self, make_scored):
        posts = [
            make_scored("stale", score=0.5, freshness=0.0),
            make_scored("fresh", score=0.45, freshness=1.0),
        ]
        adjusted = apply_experiment_adjustments(posts, VariantConfig(freshness_weight=1.0))
        assert _ids(adjusted) == ["fresh", "stale"]
        assert adjusted[0].score == pytest.approx(0.45 * 1.5)


class TestNewCreatorBoost:

    def test_boosts_small_authors_without_reordering(self, make_scored):
        posts = [
            make_scored("big", score=0.5, follower_count_normalized=0.8),
            make_scored("new", score=0.45, follower_count_normalized=0.0),
        ]
        boosted = apply_new_creator_boost(posts)
        assert _ids(boosted) == ["big", "new"]
        assert boosted[0].score == pytest.approx(0.5)
        assert boosted[1].score == pytest.approx(0.45 * 1.2)


class TestAuthorCap:

    def test_documented_example(self, make_scored):
        posts = [
            make_scored("P1", "A"),
            make_scored("P2", "A"),
            make_scored("P3", "A"),
            make_scored("P4", "B"),
        ]
        assert _ids(enforce_author_cap(posts)) == ["P1", "P2", "P4", "P3"]

    def test_deferred_posts_go_right_after_window(self, make_scored):
        posts = [make_scored("a1", "A"), make_scored("a2", "A"), make_scored("a3", "A")]
        posts += [make_scored(f"x{i}", f"X{i}") for i in range(5)]

        result = enforce_author_cap(posts, window=4, max_per_author=2)

        assert _ids(result) == ["a1", "a2", "x0", "x1", "a3", "x2", "x3", "x4"]

    def test_cap_holds_in_window(self, make_scored):
        posts = [make_scored(f"a{i}", "A", score=1 - i / 100) for i in range(10)]
        posts += [make_scored(f"p{i}", f"author-{i}", score=0.5) for i in range(30)]

        result = enforce_author_cap(posts)

        counts = Counter(p.author_id for p in result[:20])
        assert max(counts.values()) <= 2
        assert sorted(_ids(result)) == sorted(_ids(posts))

    def test_already_satisfied_unchanged(self, make_scored):
        posts = [make_scored(f"p{i}", f"author-{i % 5}") for i in range(10)]
        assert _ids(enforce_author_cap(posts)) == _ids(posts)


class TestTypeVariety:

    def test_breaks_long_runs(self, make_scored):
        posts = [make_scored(f"t{i}") for i in range(5)]
        posts += [make_scored("m1", has_media=True), make_scored("m2", has_media=True)]

        result = enforce_type_variety(posts)

        assert _max_run(result) <= 3
        assert sorted(_ids(result)) == sorted(_ids(posts))
        assert _ids(result)[:3] == ["t0", "t1", "t2"]

    def test_unfixable_run_appended(self, make_scored):
        posts = [make_scored(f"t{i}") for i in range(5)]
        result = enforce_type_variety(posts)
        assert _ids(result) == _ids(posts)

    def test_short_list_unchanged(self, make_scored):
        posts = [make_scored("t1"), make_scored("t2")]
        assert _ids(enforce_type_variety(posts)) == ["t1", "t2"]


class TestFreshnessFloor:

    def test_promotes_fresh_posts(self, make_scored):
        posts = [make_scored(f"stale{i}", f"author-{i}", age_hours=30) for i in range(10)]
        posts += [make_scored(f"fresh{i}", f"author-f{i}", age_hours=1) for i in range(3)]

        result = enforce_freshness_floor(posts)

        fresh_in_window = sum(1 for p in result[:10] if p.age_hours <= 6)
        assert fresh_in_window >= 3
        assert len(result) == len(posts)
        assert sorted(_ids(result)) == sorted(_ids(posts))

    def test_already_satisfied_unchanged(self, make_scored):
        posts = [make_scored(f"p{i}", age_hours=1 if i < 4 else 30) for i in range(12)]
        assert _ids(enforce_freshness_floor(posts)) == _ids(posts)

    def test_no_fresh_posts_available(self, make_scored):
        posts = [make_scored(f"p{i}", age_hours=30) for i in range(12)]
        assert _ids(enforce_freshness_floor(posts)) == _ids(posts)

    def test_promotion_keeps_type_runs_short(self, make_scored):
        layout = "TTTMTTTMTTMM"
        posts = [
            make_scored(f"s{i:02d}", f"author-{i}", age_hours=30, has_media=kind == "M")
            for i, kind in enumerate(layout)
        ]
        posts += [make_scored(f"f{i}", f"author-f{i}", age_hours=1) for i in range(3)]

        result = enforce_freshness_floor(posts, max_consecutive=3)

        assert _max_run(result) <= 3
        assert sum(1 for p in result[:10] if p.age_hours <= 6) >= 1
        assert sorted(_ids(result)) == sorted(_ids(posts))

    def test_promotion_respects_author_cap(self, make_scored):
        posts = [make_scored("a1", "A", age_hours=30), make_scored("a2", "A", age_hours=30)]
        posts += [make_scored(f"s{i}", f"author-{i}", age_hours=30) for i in range(8)]
        posts += [make_scored("a3", "A", age_hours=1), make_scored("fresh", "B", age_hours=1)]

        result = enforce_freshness_floor(posts, author_window=10, max_per_author=2)

        assert "fresh" in _ids(result[:10])
        assert Counter(p.author_id for p in result[:10])["A"] <= 2


class TestDiversityReranker:

    def test_empty(self):
        assert DiversityReranker().rerank([]) == []

    def test_invariants_hold_after_all_rules(self, make_scored):
        posts = []
        for i in range(40):
            posts.append(make_scored(
                f"p{i:02d}",
                author_id=f"author-{i % 12}",
                score=1 - i / 100,
                age_hours=1 if i >= 30 else 20,
                has_media=i % 2 == 0,
            ))

        result = DiversityReranker().rerank(posts)

        assert sorted(_ids(result)) == sorted(_ids(posts))
        counts = Counter(p.author_id for p in result[:20])
        assert max(counts.values()) <= 2
        assert sum(1 for p in result[:10] if p.age_hours <= 6) >= 3
        assert _max_run(result) <= 3

    def test_custom_config(self, make_scored):
        posts = [make_scored("P1", "A"), make_scored("P2", "A"), make_scored("P3", "B")]
        reranker = DiversityReranker(DiversityConfig(max_per_author=1))
        assert _ids(reranker.rerank(posts))[:2] == ["P1", "P3"]

    def _capped_author_behind_text_runs(self, make_scored, extra_media=False):
        # A at 0-1, a fourth text in a row at 3, text runs of three split by
        # single media posts, and a third post by A just below the window.
        posts = [make_scored("p00", "A"), make_scored("p01", "A")]
        posts += [make_scored(f"p{i:02d}", f"author-{i}") for i in (2, 3)]
        for i in range(4, 20):
            posts.append(make_scored(f"p{i:02d}", f"author-{i}", has_media=i % 4 == 0))
        posts.append(make_scored("p20", "A", has_media=True))
        if extra_media:
            posts.append(make_scored("p21", "author-21", has_media=True))
        return posts

    def test_type_variety_keeps_capped_author_out_of_window(self, make_scored):
        posts = self._capped_author_behind_text_runs(make_scored)

        result = DiversityReranker().rerank(posts)

        counts = Counter(p.author_id for p in result[:20])
        assert counts["A"] <= 2
        assert sorted(_ids(result)) == sorted(_ids(posts))

    def test_author_cap_and_type_runs_both_hold(self, make_scored):
        posts = self._capped_author_behind_text_runs(make_scored, extra_media=True)

        result = DiversityReranker().rerank(posts)

        assert Counter(p.author_id for p in result[:20])["A"] <= 2
        assert _max_run(result) <= 3
        assert _ids(result)[19:] == ["p21", "p20", "p03"]
