
import logging
import math
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from abtesting.config import settings
from abtesting.schemas import (
    Effect,
    Event,
    EventType,
    Experiment,
    ExperimentStatus,
    Guardrail,
    GuardrailOperator,
    MetricResult,
    Participant,
    Recommendation,
    Results,
    StatisticalSummary,
    VariantResult,
    Winner,
    utcnow,
)
from abtesting.store import ExperimentStore
from abtesting.utils.stats import conversion_metrics, significance

logger = logging.getLogger(__name__)

# Decision thresholds (percent)
IMPLEMENT_MIN_IMPROVEMENT = 5.0
NEGLIGIBLE_IMPROVEMENT = 2.0
EXTEND_MIN_CONFIDENCE = 90.0


def get_experiment_results(
    store: ExperimentStore, test_id: str, exact: Optional[bool] = None
) -> Results:
    """
    Live results for draft/running/paused experiments, stored final results
    for completed/archived ones. Live results are memoized per data version.
    """
    experiment, participants, events, version = store.read_consistent(test_id)

    if experiment.results is not None and experiment.status in (
        ExperimentStatus.completed, ExperimentStatus.archived
    ):
        return experiment.results

    # callers get copies; the cached instance stays untouched
    cached = store.results_cache.get_results(test_id, version)
    if cached is not None:
        return cached.model_copy(deep=True)

    results = compute_results(experiment, participants, events, exact=exact)
    store.results_cache.set_results(test_id, version, results)
    return results.model_copy(deep=True)


def compute_results(
    experiment: Experiment,
    participants: List[Participant],
    events: List[Event],
    now: Optional[datetime] = None,
    exact: Optional[bool] = None,
) -> Results:
    """
    Turn participants + events into per-variant metrics, a winner (if any),
    recommendations and a summary decision. Does not mutate its inputs.
    """
    if exact is None:
        exact = settings.exact_p_values
    now = now or utcnow()
    alpha = experiment.statistical_config.significance_level
    control = experiment.control_variant()

    metric_names = experiment.tracked_metrics()
    # guardrail metrics need a value to be checked against
    for guardrail in experiment.metrics.guardrails:
        if guardrail.metric not in metric_names:
            metric_names.append(guardrail.metric)

    sample_sizes = Counter(p.variant_id for p in participants)
    exposures: Dict[str, int] = Counter()
    conversions: Dict[str, Dict[str, int]] = defaultdict(Counter)
    for event in events:
        if event.event_type == EventType.exposure:
            exposures[event.variant_id] += 1
        else:
            conversions[event.variant_id][event.event_name] += 1

    variant_results = []
    for variant in experiment.variants:
        metrics = {}
        for metric_name in metric_names:
            n_exposed = exposures[variant.id]
            n_converted = conversions[variant.id][metric_name]
            cm = conversion_metrics(n_converted, n_exposed)
            metrics[metric_name] = MetricResult(
                value=cm.rate,
                conversions=n_converted,
                exposures=n_exposed,
                standard_error=cm.standard_error,
                ci_lower=cm.ci_lower,
                ci_upper=cm.ci_upper,
            )
        variant_results.append(VariantResult(
            variant_id=variant.id,
            variant_name=variant.name,
            is_control=variant.is_control,
            sample_size=sample_sizes[variant.id],
            metrics=metrics,
        ))

    # Compare every non-control variant against the control baseline
    control_result = next(r for r in variant_results if r.variant_id == control.id)
    for result in variant_results:
        if result.variant_id == control.id:
            continue
        for metric_name, test_metric in result.metrics.items():
            _compare(control_result.metrics[metric_name], test_metric, alpha, exact)

    winner = _pick_winner(experiment, variant_results, control.id)
    summary = _statistical_summary(experiment, variant_results, winner, alpha)
    recommendations = _recommendations(experiment, variant_results, winner, summary)

    return Results(
        test_id=experiment.id,
        status=experiment.status,
        computed_at=now,
        duration=_duration_days(experiment, now),
        participant_count=len(participants),
        minimum_sample_size=experiment.statistical_config.minimum_sample_size,
        variant_results=variant_results,
        winner=winner,
        recommendations=recommendations,
        statistical_summary=summary,
    )


def _rate_sd(rate: float) -> float:
    # standard deviation of a Bernoulli rate; 0 for rates outside [0, 1]
    return math.sqrt(max(rate * (1.0 - rate), 0.0))


def _compare(control: MetricResult, test: MetricResult, alpha: float, exact: bool):
    """Fill the comparison fields of `test` (in place) against `control`."""
    sig = significance(
        control.value, _rate_sd(control.value), control.exposures,
        test.value, _rate_sd(test.value), test.exposures,
        alpha=alpha,
        exact=exact,
    )
    if control.value > 0:
        improvement = (test.value - control.value) / control.value * 100
    else:
        improvement = 0.0

    test.p_value = sig.p_value
    test.confidence = (1 - sig.p_value) * 100
    test.improvement = improvement
    test.significantly_different = sig.significant


def _pick_winner(
    experiment: Experiment, variant_results: List[VariantResult], control_id: str
) -> Optional[Winner]:
    """Significant non-control variant with the largest positive primary lift"""
    primary = experiment.metrics.primary
    candidates = [
        r for r in variant_results
        if r.variant_id != control_id
        and r.metrics[primary].significantly_different
        and r.metrics[primary].improvement > 0
    ]
    if not candidates:
        return None

    best = max(candidates, key=lambda r: r.metrics[primary].improvement)
    return Winner(
        variant_id=best.variant_id,
        confidence=best.metrics[primary].confidence,
        improvement=best.metrics[primary].improvement,
        metric=primary,
    )


def _statistical_summary(
    experiment: Experiment,
    variant_results: List[VariantResult],
    winner: Optional[Winner],
    alpha: float,
) -> StatisticalSummary:
    confident = winner is not None and winner.confidence > (1 - alpha) * 100

    if winner is None or winner.improvement == 0:
        effect = Effect.neutral
    elif winner.improvement > 0:
        effect = Effect.positive
    else:
        effect = Effect.negative

    total_sample_size = sum(r.sample_size for r in variant_results)
    minimum = experiment.statistical_config.minimum_sample_size or 0

    if confident and winner.improvement > IMPLEMENT_MIN_IMPROVEMENT:
        recommendation = Recommendation.implement_winner
    elif confident and abs(winner.improvement) < NEGLIGIBLE_IMPROVEMENT:
        recommendation = Recommendation.inconclusive
    elif winner is None and (total_sample_size == 0 or total_sample_size < minimum):
        # drafts have no planned minimum yet, but zero data still means keep going
        recommendation = Recommendation.continue_test
    else:
        recommendation = Recommendation.inconclusive

    return StatisticalSummary(
        is_statistically_significant=confident,
        confidence_level=winner.confidence if winner else 0.0,
        effect=effect,
        recommendation=recommendation,
    )


def _recommendations(
    experiment: Experiment,
    variant_results: List[VariantResult],
    winner: Optional[Winner],
    summary: StatisticalSummary,
) -> List[str]:
    recommendations = []

    if summary.recommendation == Recommendation.implement_winner:
        recommendations.append(
            f"Implement variant {winner.variant_id} - shows {winner.improvement:.1f}% "
            f"improvement with {winner.confidence:.1f}% confidence"
        )
    elif winner is not None and winner.confidence > EXTEND_MIN_CONFIDENCE:
        recommendations.append("Consider extending test duration to reach higher confidence levels")
    elif summary.recommendation == Recommendation.continue_test:
        total = sum(r.sample_size for r in variant_results)
        minimum = experiment.statistical_config.minimum_sample_size
        if minimum:
            recommendations.append(
                f"Continue test - {total} of {minimum} planned participants so far"
            )
        else:
            recommendations.append("Continue test - no participants yet")
    else:
        recommendations.append(
            "Results are inconclusive - consider running test longer or increasing sample size"
        )

    # Guardrail warnings are always added, winner or not
    for guardrail in experiment.metrics.guardrails:
        for result in variant_results:
            metric = result.metrics.get(guardrail.metric)
            if metric is None:
                continue
            if violates_guardrail(guardrail, metric.value):
                recommendations.append(
                    f"Warning: variant {result.variant_id} violates guardrail metric "
                    f"{guardrail.metric} (value {metric.value:.4f}, required "
                    f"{guardrail.operator.value} {guardrail.threshold})"
                )

    return recommendations


def violates_guardrail(guardrail: Guardrail, value: float) -> bool:
    """A guardrail states what must hold; gt means the value must stay above the threshold"""
    if guardrail.operator == GuardrailOperator.gt:
        return value <= guardrail.threshold
    if guardrail.operator == GuardrailOperator.lt:
        return value >= guardrail.threshold
    return not math.isclose(value, guardrail.threshold, rel_tol=1e-9, abs_tol=1e-9)


def _duration_days(experiment: Experiment, now: datetime) -> int:
    if experiment.start_date is None:
        return 0
    end = experiment.end_date or now
    seconds = (end - experiment.start_date).total_seconds()
    return max(0, math.ceil(seconds / 86400))
