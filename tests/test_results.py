"""Tests for results calculation.

End-to-end scenarios through the services, plus the decision rules on
hand-built inputs.
"""
import pytest
from datetime import timedelta
from abtesting.schemas import (
    Effect,
    ExperimentStatus,
    Guardrail,
    GuardrailOperator,
    MetricResult,
    Recommendation,
    VariantResult,
    Winner,
)
from abtesting.services.assignment_service import assign
from abtesting.services.event_service import track_event
from abtesting.services.experiment_service import create_experiment, start_experiment, stop_experiment
from abtesting.services.results_service import (
    _recommendations,
    _statistical_summary,
    compute_results,
    get_experiment_results,
    violates_guardrail,
)
from abtesting.store import ExperimentStore


@pytest.fixture
def store():
    """Results tests push thousands of events; nothing here needs a backend"""
    return ExperimentStore()


def _simulate(store, test_id, n_users, rates, metric="signup"):
    """
    Assign n_users, give each an exposure, then convert the first
    round(rate * n) users of every variant on `metric`.
    """
    by_variant = {}
    for i in range(n_users):
        user_id = f"user_{i}"
        variant_id = assign(store, user_id, test_id)
        track_event(store, user_id, test_id, "exposure")
        by_variant.setdefault(variant_id, []).append(user_id)

    for variant_id, users in by_variant.items():
        for user_id in users[:round(rates[variant_id] * len(users))]:
            track_event(store, user_id, test_id, metric)
    return by_variant


def _variant(results, variant_id):
    return next(r for r in results.variant_results if r.variant_id == variant_id)


def test_zero_data(store, running_experiment):
    """No participants: zero counts, no winner, keep the test going"""
    results = get_experiment_results(store, running_experiment)

    assert results.participant_count == 0
    assert results.winner is None
    assert results.statistical_summary.recommendation == Recommendation.continue_test
    assert results.statistical_summary.effect == Effect.neutral
    for variant in results.variant_results:
        assert variant.sample_size == 0
        assert variant.metrics["signup"].value == 0
        assert variant.metrics["signup"].exposures == 0


def test_zero_data_draft(store, sample_experiment):
    results = get_experiment_results(store, sample_experiment)
    assert results.duration == 0
    assert results.minimum_sample_size is None
    assert results.statistical_summary.recommendation == Recommendation.continue_test


def test_end_to_end_clear_winner(store, running_experiment):
    """2000 users, 55% vs 70% signup: treatment wins by ~27%"""
    by_variant = _simulate(store, running_experiment, 2000, {"control": 0.55, "treatment": 0.70})
    results = stop_experiment(store, running_experiment)

    assert results.participant_count == 2000
    assert sum(len(users) for users in by_variant.values()) == 2000

    control = _variant(results, "control").metrics["signup"]
    treatment = _variant(results, "treatment").metrics["signup"]
    assert control.value == pytest.approx(0.55, abs=0.001)
    assert treatment.value == pytest.approx(0.70, abs=0.001)
    assert control.p_value is None
    assert treatment.improvement == pytest.approx(27.27, abs=1)
    assert treatment.significantly_different
    assert treatment.ci_lower < treatment.value < treatment.ci_upper

    assert results.winner is not None
    assert results.winner.variant_id == "treatment"
    assert results.winner.metric == "signup"
    summary = results.statistical_summary
    assert summary.is_statistically_significant
    assert summary.effect == Effect.positive
    assert summary.recommendation == Recommendation.implement_winner
    assert results.recommendations[0].startswith("Implement variant treatment")


def test_secondary_metric_in_table(store, running_experiment):
    _simulate(store, running_experiment, 200, {"control": 0.1, "treatment": 0.1}, metric="newsletter")
    results = get_experiment_results(store, running_experiment)

    for variant in results.variant_results:
        assert set(variant.metrics) == {"signup", "newsletter"}
        assert variant.metrics["newsletter"].conversions > 0
        assert variant.metrics["signup"].conversions == 0


def test_guardrail_violation_surfaces_with_winner(store, make_definition):
    definition = make_definition(metrics={
        "primary": "signup",
        "secondary": [],
        "guardrails": [{"metric": "bounce", "operator": "lt", "threshold": 0.3}],
    })
    test_id = create_experiment(store, definition)
    start_experiment(store, test_id)
    by_variant = _simulate(store, test_id, 2000, {"control": 0.55, "treatment": 0.70})

    # treatment bounces 40% of the time, control 10%
    for variant_id, share in (("control", 0.1), ("treatment", 0.4)):
        users = by_variant[variant_id]
        for user_id in users[:round(share * len(users))]:
            track_event(store, user_id, test_id, "bounce")

    results = get_experiment_results(store, test_id)

    assert results.winner.variant_id == "treatment"
    assert _variant(results, "treatment").metrics["bounce"].value == pytest.approx(0.4, abs=0.001)
    warnings = [r for r in results.recommendations if r.startswith("Warning")]
    assert len(warnings) == 1
    assert "treatment" in warnings[0]
    assert "bounce" in warnings[0]


@pytest.mark.parametrize("operator,threshold,value,violated", [
    ("gt", 0.5, 0.6, False),
    ("gt", 0.5, 0.5, True),
    ("gt", 0.5, 0.4, True),
    ("lt", 0.3, 0.2, False),
    ("lt", 0.3, 0.3, True),
    ("lt", 0.3, 0.4, True),
    ("eq", 0.25, 0.25, False),
    ("eq", 0.25, 0.26, True),
])
def test_violates_guardrail(operator, threshold, value, violated):
    guardrail = Guardrail(metric="m", operator=GuardrailOperator(operator), threshold=threshold)
    assert violates_guardrail(guardrail, value) is violated


def test_stopped_experiment_returns_stored_results(store, running_experiment):
    assign(store, "user_1", running_experiment)
    final = stop_experiment(store, running_experiment)

    results = get_experiment_results(store, running_experiment)
    assert results == final
    assert results.status == ExperimentStatus.completed


def test_results_are_memoized_per_data_version(store, running_experiment):
    assign(store, "user_1", running_experiment)
    first = get_experiment_results(store, running_experiment)
    second = get_experiment_results(store, running_experiment)
    # same cached computation, handed out as separate copies
    assert second == first
    assert second is not first

    track_event(store, "user_1", running_experiment, "exposure")
    third = get_experiment_results(store, running_experiment)
    assert sum(v.metrics["signup"].exposures for v in third.variant_results) == 1


def test_cached_results_cannot_be_mutated_by_callers(store, running_experiment):
    assign(store, "user_1", running_experiment)
    results = get_experiment_results(store, running_experiment)
    results.recommendations.append("tampered")
    results.variant_results[0].sample_size = 999

    again = get_experiment_results(store, running_experiment)
    assert "tampered" not in again.recommendations
    assert sum(v.sample_size for v in again.variant_results) == 1


def test_duration_rounds_up_days(store, running_experiment):
    experiment, participants, events, _ = store.read_consistent(running_experiment)
    results = compute_results(
        experiment, participants, events, now=experiment.start_date + timedelta(hours=36)
    )
    assert results.duration == 2


def test_no_significant_difference_is_inconclusive(store, running_experiment):
    _simulate(store, running_experiment, 400, {"control": 0.50, "treatment": 0.51})
    experiment, participants, events, _ = store.read_consistent(running_experiment)
    # pretend the planned sample has been reached
    experiment.statistical_config.minimum_sample_size = 100

    results = compute_results(experiment, participants, events)
    assert results.winner is None
    assert results.statistical_summary.recommendation == Recommendation.inconclusive
    assert results.recommendations[0].startswith("Results are inconclusive")


def test_significantly_worse_treatment_is_not_a_winner(store, running_experiment):
    _simulate(store, running_experiment, 2000, {"control": 0.70, "treatment": 0.55})
    experiment, participants, events, _ = store.read_consistent(running_experiment)
    experiment.statistical_config.minimum_sample_size = 100

    results = compute_results(experiment, participants, events)
    treatment = _variant(results, "treatment").metrics["signup"]
    assert treatment.significantly_different
    assert treatment.improvement < 0
    assert results.winner is None
    assert results.statistical_summary.recommendation == Recommendation.inconclusive


def test_compute_results_exact_p_values(store, running_experiment):
    _simulate(store, running_experiment, 400, {"control": 0.50, "treatment": 0.58})
    experiment, participants, events, _ = store.read_consistent(running_experiment)

    approx = compute_results(experiment, participants, events, exact=False)
    exact = compute_results(experiment, participants, events, exact=True)
    p_approx = _variant(approx, "treatment").metrics["signup"].p_value
    p_exact = _variant(exact, "treatment").metrics["signup"].p_value
    assert p_exact >= p_approx


def _summary_inputs(store, test_id, improvement, confidence):
    experiment, _, _, _ = store.read_consistent(test_id)
    variant_results = [
        VariantResult(variant_id="control", variant_name="A", is_control=True,
                      sample_size=5000, metrics={"signup": MetricResult()}),
        VariantResult(variant_id="treatment", variant_name="B", is_control=False,
                      sample_size=5000, metrics={"signup": MetricResult()}),
    ]
    winner = Winner(variant_id="treatment", confidence=confidence, improvement=improvement, metric="signup")
    return experiment, variant_results, winner


def test_confident_negligible_lift_is_inconclusive(store, running_experiment):
    experiment, variant_results, winner = _summary_inputs(store, running_experiment, 1.0, 99.0)
    summary = _statistical_summary(experiment, variant_results, winner, 0.05)
    assert summary.is_statistically_significant
    assert summary.recommendation == Recommendation.inconclusive


def test_moderate_lift_suggests_extending(store, running_experiment):
    experiment, variant_results, winner = _summary_inputs(store, running_experiment, 3.0, 97.0)
    summary = _statistical_summary(experiment, variant_results, winner, 0.05)
    recommendations = _recommendations(experiment, variant_results, winner, summary)

    assert summary.recommendation == Recommendation.inconclusive
    assert recommendations == ["Consider extending test duration to reach higher confidence levels"]


def test_confidence_threshold_follows_alpha(store, running_experiment):
    experiment, variant_results, winner = _summary_inputs(store, running_experiment, 10.0, 97.0)
    assert _statistical_summary(experiment, variant_results, winner, 0.05).recommendation == \
        Recommendation.implement_winner
    assert not _statistical_summary(experiment, variant_results, winner, 0.01).is_statistically_significant


def test_results_endpoint(client, auth_headers, store, running_experiment):
    assign(store, "user_1", running_experiment)
    track_event(store, "user_1", running_experiment, "exposure")

    response = client.get(f"/experiments/{running_experiment}/results", headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["participant_count"] == 1
    assert body["status"] == "running"
    assert {v["variant_id"] for v in body["variant_results"]} == {"control", "treatment"}


def test_results_endpoint_not_found(client, auth_headers):
    response = client.get("/experiments/missing/results", headers=auth_headers)
    assert response.status_code == 404
