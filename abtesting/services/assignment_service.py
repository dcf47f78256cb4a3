"""Service for handling user assignments - ensures idempotency"""
import logging
from typing import Any, Dict, Iterable, Optional

from abtesting.schemas import Experiment, ExperimentStatus, Participant, TargetAudience, utcnow
from abtesting.store import ExperimentStore
from abtesting.utils.assignment import INCLUDE_SALT, VARIANT_SALT, assign_variant, bucket

logger = logging.getLogger(__name__)


def assign(
    store: ExperimentStore,
    user_id: str,
    test_id: str,
    segments: Optional[Iterable[str]] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Get existing assignment or create a new one.

    Returns the variant id, or None when the user is not in the test
    (experiment not running, outside the traffic percentage, or filtered
    out by segments/attributes). Exclusions create no participant.
    Raises NotFoundError for unknown experiments.
    """
    with store.lock(test_id):
        # Already assigned: same answer every time, whatever the status now
        existing = store.get_participant(test_id, user_id)
        if existing is not None:
            return existing.variant_id

        experiment = store.experiment(test_id)
        if experiment.status != ExperimentStatus.running:
            return None

        if not should_include_user(user_id, experiment, segments, attributes):
            return None

        variant_id = select_variant(user_id, experiment)

        metadata: Dict[str, Any] = {}
        if segments is not None:
            metadata["segments"] = sorted(set(segments))
        if attributes:
            metadata["attributes"] = dict(attributes)

        candidate = Participant(
            user_id=user_id,
            test_id=test_id,
            variant_id=variant_id,
            assigned_at=utcnow(),
            metadata=metadata,
        )
        participant = store.add_participant(candidate)

    if participant is candidate:
        store.record_write()
    logger.debug(f"User {user_id} assigned to {participant.variant_id} in {test_id}")
    return participant.variant_id


def get_participant(store: ExperimentStore, user_id: str, test_id: str) -> Optional[Participant]:
    """Copy of the user's participant record, if they were assigned"""
    with store.lock(test_id):
        participant = store.get_participant(test_id, user_id)
        return participant.model_copy(deep=True) if participant else None


def should_include_user(
    user_id: str,
    experiment: Experiment,
    segments: Optional[Iterable[str]] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> bool:
    audience = experiment.target_audience
    if bucket(user_id, experiment.id, INCLUDE_SALT) >= audience.percentage:
        return False
    return matches_audience(audience, segments, attributes)


def matches_audience(
    audience: TargetAudience,
    segments: Optional[Iterable[str]] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Segment/filter targeting. Only checked against what the caller supplied:
    without segments (or attributes) every user matches.
    """
    if segments is not None:
        user_segments = set(segments)
        if user_segments & set(audience.exclude_segments):
            return False
        if audience.segments and not (user_segments & set(audience.segments)):
            return False

    if attributes is not None:
        for key, expected in audience.filters.items():
            if attributes.get(key) != expected:
                return False

    return True


def select_variant(user_id: str, experiment: Experiment) -> str:
    # Build list of (variant_id, weight) for assignment logic, declared order
    variant_weights = [(v.id, v.weight) for v in experiment.variants]
    hash_value = bucket(user_id, experiment.id, VARIANT_SALT)
    return assign_variant(hash_value, variant_weights, fallback=experiment.control_variant().id)
