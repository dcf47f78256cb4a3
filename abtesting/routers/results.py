"""Results/analytics endpoints.

Returns aggregated stats for an experiment.
"""
from fastapi import APIRouter, Depends
from abtesting.store import ExperimentStore, get_store
from abtesting.auth import verify_token
from abtesting.schemas import Results
from abtesting.services.results_service import get_experiment_results

router = APIRouter(prefix="/experiments", tags=["results"])


@router.get("/{experiment_id}/results", response_model=Results)
def get_results_endpoint(
    experiment_id: str,
    store: ExperimentStore = Depends(get_store),
    token: str = Depends(verify_token)
):
    """
    Get experiment results.

    Live numbers while the experiment runs, the stored final results once
    it has been stopped. Includes per-variant conversion rates with 95% CIs,
    significance vs control, the winner (if any), guardrail warnings and a
    recommendation.
    """
    return get_experiment_results(store, experiment_id)
