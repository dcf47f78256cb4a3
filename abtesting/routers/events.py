"""Event recording endpoints.

Lets clients send tracking events. Supports single event or batch list.
"""
from fastapi import APIRouter, Depends
from typing import List, Optional, Union
from abtesting.store import ExperimentStore, get_store
from abtesting.auth import verify_token
from abtesting.schemas import Event, EventCreate, TrackResponse
from abtesting.services.event_service import track_event, track_events_batch

router = APIRouter(prefix="/events", tags=["events"])


def _to_response(event: Optional[Event]) -> TrackResponse:
    # None means the event was ignored (user not in a running test)
    if event is None:
        return TrackResponse(recorded=False)
    return TrackResponse(
        recorded=True,
        event_id=event.id,
        event_type=event.event_type,
        variant_id=event.variant_id,
    )


@router.post("", response_model=Union[TrackResponse, List[TrackResponse]], status_code=201)
def create_event_endpoint(
    event_data: Union[EventCreate, List[EventCreate]],
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    # If input is list, treat as batch
    if isinstance(event_data, list):
        return [_to_response(e) for e in track_events_batch(store, event_data)]

    event = track_event(
        store,
        user_id=event_data.user_id,
        test_id=event_data.experiment_id,
        event_name=event_data.event_name,
        value=event_data.value,
        properties=event_data.properties,
        timestamp=event_data.timestamp,
    )
    return _to_response(event)
