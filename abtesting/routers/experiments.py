"""Experiment endpoints (create, read, lifecycle)."""
from typing import List, Optional
from fastapi import APIRouter, Depends
from abtesting.store import ExperimentStore, get_store
from abtesting.auth import verify_token
from abtesting.schemas import Experiment, ExperimentCreate, Results, StopRequest
from abtesting.services.experiment_service import (
    create_experiment,
    get_experiment,
    list_running,
    pause_experiment,
    resume_experiment,
    start_experiment,
    stop_experiment,
)

# NOTE: prefix means all routes in here start with /experiments
router = APIRouter(prefix="/experiments", tags=["experiments"])


@router.post("", response_model=Experiment, status_code=201)
def create_experiment_endpoint(
    experiment_data: ExperimentCreate,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    """
    Create a new experiment (draft).

    The service layer does validation like making sure weights total 100
    and there is exactly one control.
    """
    test_id = create_experiment(store, experiment_data)
    return get_experiment(store, test_id)


# declared before /{experiment_id} so "running" isn't taken for an id
@router.get("/running", response_model=List[Experiment])
def list_running_endpoint(
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    return list_running(store)


@router.get("/{experiment_id}", response_model=Experiment)
def get_experiment_endpoint(
    experiment_id: str,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    """Get experiment by id."""
    return get_experiment(store, experiment_id)


@router.post("/{experiment_id}/start", response_model=Experiment)
def start_experiment_endpoint(
    experiment_id: str,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    return start_experiment(store, experiment_id)


@router.post("/{experiment_id}/stop", response_model=Results)
def stop_experiment_endpoint(
    experiment_id: str,
    body: Optional[StopRequest] = None,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    """Stop a running experiment and return its final results."""
    reason = body.reason if body else None
    return stop_experiment(store, experiment_id, reason=reason)


@router.post("/{experiment_id}/pause", response_model=Experiment)
def pause_experiment_endpoint(
    experiment_id: str,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    return pause_experiment(store, experiment_id)


@router.post("/{experiment_id}/resume", response_model=Experiment)
def resume_experiment_endpoint(
    experiment_id: str,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    return resume_experiment(store, experiment_id)
