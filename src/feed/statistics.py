"""
Significance tests for experiment analysis.

- Two-proportion z-test (engagement rate, CTR)
- Welch's t-test (mean dwell time)
- Normal-approximation confidence interval for a proportion
- Relative change against a baseline
"""

import math
from dataclasses import dataclass

from scipy import stats

from feed.constants import SIGNIFICANCE_LEVEL

# Two-sided critical values by confidence level; anything else uses 90%
Z_CRITICAL = {0.95: 1.96, 0.99: 2.576}
Z_CRITICAL_DEFAULT = 1.645


@dataclass(frozen=True)
class SignificanceResult:
    statistic: float
    p_value: float
    ci_lower: float
    ci_upper: float
    is_significant: bool


@dataclass(frozen=True)
class ProportionEstimate:
    value: float
    lower: float
    upper: float


_NO_RESULT = SignificanceResult(statistic=0.0, p_value=1.0, ci_lower=0.0, ci_upper=0.0, is_significant=False)


def normal_cdf(x: float) -> float:
    return float(stats.norm.cdf(x))


def _two_sided_p(z: float) -> float:
    return float(2.0 * stats.norm.sf(abs(z)))


def z_test_proportions(successes1: int, total1: int, successes2: int, total2: int) -> SignificanceResult:
    """
    Pooled two-proportion z-test of group 1 against group 2.

    The interval is for ``p1 - p2`` using the unpooled standard error.
    Degenerate inputs (an empty group, zero variance) are not significant.
    """
    if total1 <= 0 or total2 <= 0:
        return _NO_RESULT

    p1 = successes1 / total1
    p2 = successes2 / total2
    pooled = (successes1 + successes2) / (total1 + total2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / total1 + 1 / total2))
    if se == 0:
        return _NO_RESULT

    z = (p1 - p2) / se
    p_value = _two_sided_p(z)
    diff = p1 - p2
    se_diff = math.sqrt(p1 * (1 - p1) / total1 + p2 * (1 - p2) / total2)
    return SignificanceResult(
        statistic=z,
        p_value=p_value,
        ci_lower=diff - 1.96 * se_diff,
        ci_upper=diff + 1.96 * se_diff,
        is_significant=p_value < SIGNIFICANCE_LEVEL,
    )


def welch_t_test(
    mean1: float, var1: float, n1: int,
    mean2: float, var2: float, n2: int,
) -> SignificanceResult:
    """
    Welch's unequal-variance t-test.

    Takes summary statistics (sample variances); the p-value is from the
    Student t distribution with Welch-Satterthwaite degrees of freedom.
    """
    if n1 < 2 or n2 < 2:
        return _NO_RESULT

    a = var1 / n1
    b = var2 / n2
    se = math.sqrt(a + b)
    if se == 0:
        return _NO_RESULT

    test = stats.ttest_ind_from_stats(
        mean1, math.sqrt(var1), n1,
        mean2, math.sqrt(var2), n2,
        equal_var=False,
    )
    t = float(test.statistic)
    p_value = float(test.pvalue)

    diff = mean1 - mean2
    return SignificanceResult(
        statistic=t,
        p_value=p_value,
        ci_lower=diff - 1.96 * se,
        ci_upper=diff + 1.96 * se,
        is_significant=p_value < SIGNIFICANCE_LEVEL,
    )


def proportion_ci(successes: int, total: int, confidence_level: float = 0.95) -> ProportionEstimate:
    """Point estimate and Wald interval, clipped to [0, 1]."""
    if total <= 0:
        return ProportionEstimate(0.0, 0.0, 0.0)
    p = successes / total
    z = Z_CRITICAL.get(confidence_level, Z_CRITICAL_DEFAULT)
    se = math.sqrt(p * (1 - p) / total)
    return ProportionEstimate(value=p, lower=max(0.0, p - z * se), upper=min(1.0, p + z * se))


def relative_change(baseline: float, variant: float) -> float:
    """(variant - baseline) / baseline; 0 when the baseline is 0."""
    if baseline == 0:
        return 0.0
    return (variant - baseline) / baseline
