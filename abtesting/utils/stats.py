"""
Frequentist statistics for experiment evaluation.

Conversion rate + CI, Welch's t-test and two-proportion sample sizing.
Everything here is a pure function of its arguments.

The Welch p-value defaults to a normal-tail approximation of the t CDF
(fine for ship/no-ship decisions, not for publishing exact p-values).
Pass exact=True to use the Student-t tail from scipy instead; expect
slightly larger p-values for small samples when you do.
"""
import math
from dataclasses import dataclass
from typing import Optional

from scipy import stats

Z_95 = 1.96


@dataclass(frozen=True)
class ConversionMetrics:
    rate: float
    standard_error: float
    ci_lower: float
    ci_upper: float


@dataclass(frozen=True)
class SignificanceResult:
    p_value: float
    t_statistic: float
    degrees_of_freedom: Optional[float]
    significant: bool


def conversion_metrics(conversions: int, exposures: int, z: float = Z_95) -> ConversionMetrics:
    """Rate = conversions / exposures with a normal-approximation CI clamped to [0, 1]."""
    if exposures <= 0:
        return ConversionMetrics(rate=0.0, standard_error=0.0, ci_lower=0.0, ci_upper=0.0)

    rate = conversions / exposures
    # rate can exceed 1 when a metric fires more than once per exposure
    standard_error = math.sqrt(max(rate * (1.0 - rate), 0.0) / exposures)
    margin = z * standard_error
    return ConversionMetrics(
        rate=rate,
        standard_error=standard_error,
        ci_lower=max(0.0, rate - margin),
        ci_upper=min(1.0, rate + margin),
    )


def welch_degrees_of_freedom(sd_a: float, n_a: int, sd_b: float, n_b: int) -> Optional[float]:
    """Welch-Satterthwaite df; None when either sample is too small or has no variance."""
    if n_a < 2 or n_b < 2:
        return None
    var_a = sd_a ** 2 / n_a
    var_b = sd_b ** 2 / n_b
    denominator = var_a ** 2 / (n_a - 1) + var_b ** 2 / (n_b - 1)
    if denominator == 0:
        return None
    return (var_a + var_b) ** 2 / denominator


def significance(
    mean_a: float,
    sd_a: float,
    n_a: int,
    mean_b: float,
    sd_b: float,
    n_b: int,
    alpha: float = 0.05,
    exact: bool = False,
) -> SignificanceResult:
    """
    Welch's t-test for B vs A (unequal variances).

    Args:
        mean_a, sd_a, n_a: baseline (control) sample
        mean_b, sd_b, n_b: test sample
        alpha: significance level; significant means p_value < alpha
        exact: use the Student-t tail instead of the normal approximation

    Returns:
        SignificanceResult with a two-sided p-value
    """
    if n_a <= 0 or n_b <= 0:
        return SignificanceResult(p_value=1.0, t_statistic=0.0, degrees_of_freedom=None, significant=False)

    std_error = math.sqrt(sd_a ** 2 / n_a + sd_b ** 2 / n_b)
    df = welch_degrees_of_freedom(sd_a, n_a, sd_b, n_b)

    if std_error == 0:
        # No spread at all: either identical or trivially different
        if mean_a == mean_b:
            return SignificanceResult(p_value=1.0, t_statistic=0.0, degrees_of_freedom=df, significant=False)
        t_stat = math.copysign(math.inf, mean_b - mean_a)
        return SignificanceResult(p_value=0.0, t_statistic=t_stat, degrees_of_freedom=df, significant=True)

    t_stat = (mean_b - mean_a) / std_error

    if exact and df is not None:
        p_value = float(2.0 * stats.t.sf(abs(t_stat), df))
    else:
        # 2 * (1 - Phi(|t|))
        p_value = math.erfc(abs(t_stat) / math.sqrt(2.0))

    p_value = min(max(p_value, 0.0), 1.0)
    return SignificanceResult(
        p_value=p_value,
        t_statistic=t_stat,
        degrees_of_freedom=df,
        significant=p_value < alpha,
    )


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """
    Sample size for a two-proportion test.

    Args:
        baseline_rate: assumed control conversion rate p1
        minimum_detectable_effect: relative lift to detect (0.1 = +10%)
        alpha: two-sided significance level
        power: 1 - type II error rate

    Returns:
        Required sample size, rounded up
    """
    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    if not (0 < p1 < 1) or not (0 < p2 < 1):
        raise ValueError(
            f"Rates must be in (0, 1): baseline={p1}, treatment={p2}"
        )
    if p1 == p2:
        raise ValueError("Minimum detectable effect must be non-zero")

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_beta = stats.norm.ppf(power)
    p_avg = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_avg * (1 - p_avg))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    denominator = (p2 - p1) ** 2
    return int(math.ceil(numerator / denominator))
