"""Feed experiment management and results endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from core.auth import SupabaseUser, require_admin, require_auth
from core.logging import get_logger
from feed.experiment_analysis import ExperimentAnalyzer, NotEnoughVariantsError
from feed.experiments import ExperimentService, ExperimentStoreError
from feed.models import ExperimentCreate, ExperimentResults, ExperimentUpdate, FeedExperiment

logger = get_logger(__name__)

router = APIRouter(prefix="/api/feed/experiments", tags=["Experiments"])


def get_experiment_service() -> ExperimentService:
    return ExperimentService()


def get_experiment_analyzer() -> ExperimentAnalyzer:
    return ExperimentAnalyzer()


class ExperimentListResponse(BaseModel):
    experiments: List[FeedExperiment]


class ExperimentResponse(BaseModel):
    experiment: FeedExperiment


class ExperimentDetailResponse(BaseModel):
    experiment: FeedExperiment
    variant_counts: Dict[str, int]


def _store_failure(action: str, exc: ExperimentStoreError) -> HTTPException:
    logger.error("Experiment store failure", action=action, error=str(exc))
    return HTTPException(status_code=500, detail=f"Failed to {action} experiment")


@router.get("", response_model=ExperimentListResponse, summary="List experiments")
def list_experiments(
    user: SupabaseUser = Depends(require_auth),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentListResponse:
    try:
        return ExperimentListResponse(experiments=service.list_experiments())
    except ExperimentStoreError as exc:
        raise _store_failure("list", exc) from exc


@router.post("", response_model=ExperimentResponse, summary="Create an experiment")
def create_experiment(
    body: ExperimentCreate,
    user: SupabaseUser = Depends(require_admin),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentResponse:
    try:
        experiment = service.create_experiment(body)
    except ExperimentStoreError as exc:
        raise _store_failure("create", exc) from exc
    logger.info("Experiment created via API", experiment_id=experiment.id, user_id=user.id)
    return ExperimentResponse(experiment=experiment)


@router.get("/{experiment_id}", response_model=ExperimentDetailResponse, summary="Get an experiment")
def get_experiment(
    experiment_id: str,
    user: SupabaseUser = Depends(require_auth),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentDetailResponse:
    try:
        experiment = service.get_experiment(experiment_id)
        if experiment is None:
            raise HTTPException(status_code=404, detail="Experiment not found")
        counts = service.assignment_counts(experiment_id)
    except ExperimentStoreError as exc:
        raise _store_failure("load", exc) from exc
    return ExperimentDetailResponse(experiment=experiment, variant_counts=counts)


@router.patch("/{experiment_id}", response_model=ExperimentResponse, summary="Update an experiment")
def update_experiment(
    experiment_id: str,
    body: ExperimentUpdate,
    user: SupabaseUser = Depends(require_admin),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentResponse:
    try:
        experiment = service.update_experiment(experiment_id, body)
    except ExperimentStoreError as exc:
        raise _store_failure("update", exc) from exc
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return ExperimentResponse(experiment=experiment)


@router.get("/{experiment_id}/results", response_model=ExperimentResults, summary="Experiment results")
def experiment_results(
    experiment_id: str,
    user: SupabaseUser = Depends(require_auth),
    analyzer: ExperimentAnalyzer = Depends(get_experiment_analyzer),
) -> ExperimentResults:
    try:
        results = analyzer.results(experiment_id)
    except NotEnoughVariantsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ExperimentStoreError as exc:
        raise _store_failure("analyze", exc) from exc
    if results is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return results
