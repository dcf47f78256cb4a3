"""Service for experiment management (definition + lifecycle)"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from abtesting.config import settings
from abtesting.errors import InvalidStateError, ValidationError
from abtesting.schemas import (
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    Results,
    ensure_utc,
    utcnow,
)
from abtesting.services.results_service import compute_results
from abtesting.store import ExperimentStore
from abtesting.utils.stats import required_sample_size

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 0.01


def validate_definition(definition: ExperimentCreate, baseline_rate: float):
    """
    Check the invariants an experiment must satisfy before it is stored.
    Raises ValidationError with the first problem found.
    """
    variants = definition.variants
    if len(variants) < 2:
        raise ValidationError(f"Experiment must have at least 2 variants (got {len(variants)})")

    # Allow small floating point differences (e.g., 99.995 or 100.005)
    total_weight = sum(v.weight for v in variants)
    if abs(total_weight - 100.0) > WEIGHT_TOLERANCE:
        raise ValidationError(f"Variant weights must sum to 100 (got {total_weight})")

    control_count = sum(1 for v in variants if v.is_control)
    if control_count != 1:
        raise ValidationError(
            f"Experiment must have exactly one control variant (got {control_count})"
        )

    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        raise ValidationError("Variant ids must be unique")

    if not definition.metrics.primary.strip():
        raise ValidationError("Experiment must have a primary metric")

    # Sample size planning at start needs a treatment rate inside (0, 1)
    config = definition.statistical_config
    if baseline_rate * (1 + config.minimum_detectable_effect) >= 1:
        raise ValidationError(
            f"Minimum detectable effect {config.minimum_detectable_effect} is too large "
            f"for a baseline rate of {baseline_rate}"
        )


def create_experiment(
    store: ExperimentStore,
    definition: Union[ExperimentCreate, Dict[str, Any]],
    baseline_rate: Optional[float] = None,
) -> str:
    """
    Validate and store a new experiment in draft status.
    Returns the experiment id (generated unless the definition has one).
    """
    if baseline_rate is None:
        baseline_rate = settings.baseline_conversion_rate

    if not isinstance(definition, ExperimentCreate):
        try:
            definition = ExperimentCreate.model_validate(definition)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid experiment definition: {exc}") from exc

    validate_definition(definition, baseline_rate)

    data = definition.model_dump()
    data["id"] = definition.id or f"test_{uuid.uuid4().hex[:12]}"
    data["start_date"] = ensure_utc(definition.start_date)
    data["end_date"] = ensure_utc(definition.end_date)
    data["status"] = ExperimentStatus.draft
    # derived at start
    data["statistical_config"]["minimum_sample_size"] = None
    experiment = Experiment.model_validate(data)

    store.add_experiment(experiment)
    store.flush()

    logger.info(f"Experiment created: {experiment.name} (ID: {experiment.id})")
    return experiment.id


def get_experiment(store: ExperimentStore, test_id: str) -> Experiment:
    """Get a copy of an experiment by id (NotFoundError if unknown)"""
    with store.lock(test_id):
        return store.experiment(test_id).model_copy(deep=True)


def list_running(store: ExperimentStore) -> List[Experiment]:
    return store.list_experiments(ExperimentStatus.running)


def list_experiments(
    store: ExperimentStore, status: Optional[ExperimentStatus] = None
) -> List[Experiment]:
    return store.list_experiments(status)


def start_experiment(
    store: ExperimentStore, test_id: str, baseline_rate: Optional[float] = None
) -> Experiment:
    """
    Move a draft experiment to running.

    Computes the minimum sample size from the baseline conversion rate
    assumption; this is a planning number only, nothing is gated on it.
    """
    if baseline_rate is None:
        baseline_rate = settings.baseline_conversion_rate

    with store.lock(test_id):
        experiment = store.experiment(test_id)
        if experiment.status != ExperimentStatus.draft:
            raise InvalidStateError(test_id, experiment.status.value, "start")

        config = experiment.statistical_config
        try:
            config.minimum_sample_size = required_sample_size(
                baseline_rate,
                config.minimum_detectable_effect,
                alpha=config.significance_level,
                power=config.power,
            )
        except ValueError as exc:
            # experiment stays in draft
            raise ValidationError(f"Cannot plan sample size for {test_id}: {exc}") from exc
        experiment.status = ExperimentStatus.running
        experiment.start_date = utcnow()
        experiment.end_date = None
        store.touch(test_id)
        started = experiment.model_copy(deep=True)

    store.flush()
    logger.info(
        f"Experiment started: {started.name} "
        f"(minimum sample size {started.statistical_config.minimum_sample_size})"
    )
    return started


def stop_experiment(
    store: ExperimentStore,
    test_id: str,
    reason: Optional[str] = None,
    exact: Optional[bool] = None,
) -> Results:
    """
    Complete a running experiment and store its final results.
    Stopping twice raises InvalidStateError the second time.
    """
    with store.lock(test_id):
        experiment = store.experiment(test_id)
        if experiment.status != ExperimentStatus.running:
            raise InvalidStateError(test_id, experiment.status.value, "stop")

        experiment.status = ExperimentStatus.completed
        experiment.end_date = utcnow()
        experiment.stop_reason = reason

        # Still under the lock: no event can slip in between the status
        # change and the final aggregation
        _, participants, events, _ = store.read_consistent(test_id)
        results = compute_results(
            experiment, participants, events, now=experiment.end_date, exact=exact
        )
        experiment.results = results
        store.touch(test_id)

    store.results_cache.clear_experiment(test_id)
    store.flush()
    logger.info(
        f"Experiment stopped: {experiment.name} (reason: {reason or 'n/a'}, "
        f"recommendation: {results.statistical_summary.recommendation.value})"
    )
    return results


def pause_experiment(store: ExperimentStore, test_id: str) -> Experiment:
    """Temporarily stop assigning and tracking (running -> paused)"""
    return _transition(store, test_id, ExperimentStatus.running, ExperimentStatus.paused, "pause")


def resume_experiment(store: ExperimentStore, test_id: str) -> Experiment:
    return _transition(store, test_id, ExperimentStatus.paused, ExperimentStatus.running, "resume")


def _transition(
    store: ExperimentStore,
    test_id: str,
    expected: ExperimentStatus,
    target: ExperimentStatus,
    action: str,
) -> Experiment:
    with store.lock(test_id):
        experiment = store.experiment(test_id)
        if experiment.status != expected:
            raise InvalidStateError(test_id, experiment.status.value, action)
        experiment.status = target
        store.touch(test_id)
        updated = experiment.model_copy(deep=True)

    store.flush()
    logger.info(f"Experiment {test_id}: {expected.value} -> {target.value}")
    return updated
