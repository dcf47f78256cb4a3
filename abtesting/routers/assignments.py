"""Assignment endpoints.

This is the endpoint that returns which variant a user gets.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from abtesting.store import ExperimentStore, get_store
from abtesting.auth import verify_token
from abtesting.schemas import AssignmentResponse
from abtesting.services.assignment_service import assign
from abtesting.services.experiment_service import get_experiment

router = APIRouter(prefix="/experiments", tags=["assignments"])


@router.get("/{experiment_id}/assignment/{user_id}", response_model=AssignmentResponse)
def get_assignment_endpoint(
    experiment_id: str,
    user_id: str,
    segment: Optional[List[str]] = Query(None, description="User segments (repeatable)"),
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    """
    Get or create user assignment for an experiment.
    This endpoint is idempotent - calling it multiple times with the same
    user_id and experiment_id will always return the same assignment.
    A null variant_id means the user is not in the test.
    """
    variant_id = assign(store, user_id, experiment_id, segments=segment)

    if variant_id is None:
        return AssignmentResponse(
            experiment_id=experiment_id,
            user_id=user_id,
            in_test=False,
        )

    variant = get_experiment(store, experiment_id).get_variant(variant_id)
    return AssignmentResponse(
        experiment_id=experiment_id,
        user_id=user_id,
        variant_id=variant_id,
        variant_name=variant.name,
        config=variant.config,
        in_test=True,
    )
