"""Service for event recording"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from abtesting.config import settings
from abtesting.schemas import (
    Conversion,
    Event,
    EventCreate,
    EventType,
    Experiment,
    ExperimentStatus,
    ensure_utc,
    utcnow,
)
from abtesting.store import ExperimentStore

logger = logging.getLogger(__name__)


def classify_event(
    event_name: str,
    experiment: Experiment,
    exposure_events: Optional[Iterable[str]] = None,
) -> EventType:
    """
    exposure: one of the exposure event names ("exposure", "page_view" by default)
    conversion: the primary metric or a secondary metric
    custom: anything else
    """
    if exposure_events is None:
        exposure_events = settings.exposure_events
    if event_name in set(exposure_events):
        return EventType.exposure
    if event_name in experiment.tracked_metrics():
        return EventType.conversion
    return EventType.custom


def track_event(
    store: ExperimentStore,
    user_id: str,
    test_id: str,
    event_name: str,
    value: float = 1.0,
    properties: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> Optional[Event]:
    """
    Record an event for an assigned user.

    Silently returns None when the experiment is not running or the user
    has no assignment in it - those users just don't produce events.
    Raises NotFoundError for unknown experiments.
    """
    with store.lock(test_id):
        experiment = store.experiment(test_id)
        if experiment.status != ExperimentStatus.running:
            return None

        participant = store.get_participant(test_id, user_id)
        if participant is None:
            return None

        event = Event(
            id=f"event_{uuid.uuid4().hex}",
            test_id=test_id,
            variant_id=participant.variant_id,
            user_id=user_id,
            event_type=classify_event(event_name, experiment),
            event_name=event_name,
            value=value,
            timestamp=ensure_utc(timestamp) or utcnow(),
            properties=dict(properties or {}),
        )
        store.append_event(event)

        # Update participant record
        if event.event_type == EventType.exposure and participant.first_exposure is None:
            participant.first_exposure = event.timestamp
        elif event.event_type == EventType.conversion:
            participant.conversions.append(Conversion(
                metric=event_name,
                value=value,
                timestamp=event.timestamp,
            ))

    store.record_write()
    logger.debug(f"Tracked {event.event_type.value} '{event_name}' for {user_id} in {test_id}")
    return event


def track_events_batch(store: ExperimentStore, events_data: List[EventCreate]) -> List[Optional[Event]]:
    """Track multiple events - useful for bulk imports. Results line up with the input."""
    tracked = []
    for event_data in events_data:
        tracked.append(track_event(
            store,
            user_id=event_data.user_id,
            test_id=event_data.experiment_id,
            event_name=event_data.event_name,
            value=event_data.value,
            properties=event_data.properties,
            timestamp=event_data.timestamp,
        ))
    return tracked
