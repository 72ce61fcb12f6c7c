"""Model training and status endpoints."""

import logging
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from dinerec.api.dependencies import get_service
from dinerec.api.metrics import metrics_service
from dinerec.recommender.factorization import MatrixFactorizationConfig
from dinerec.recommender.neural import NeuralConfig
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.training import TrainingConfig

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/models",
    tags=["models"],
)


class TrainRequest(BaseModel):
    """Optional overrides for a training run."""

    train_neural: Optional[bool] = None
    mf_iterations: Optional[int] = Field(None, ge=1, le=1000)
    mf_rank: Optional[int] = Field(None, ge=1, le=256)
    iteration_mode: Optional[Literal["sampled", "dense"]] = None
    neural_epochs: Optional[int] = Field(None, ge=1, le=500)

    def to_config(self, service: RecommendationService) -> TrainingConfig:
        mf_overrides = {}
        if self.mf_iterations is not None:
            mf_overrides["iterations"] = self.mf_iterations
        if self.mf_rank is not None:
            mf_overrides["rank"] = self.mf_rank
        if self.iteration_mode is not None:
            mf_overrides["iteration_mode"] = self.iteration_mode

        neural_overrides = {}
        if self.neural_epochs is not None:
            neural_overrides["epochs"] = self.neural_epochs

        overrides = {}
        if self.train_neural is not None:
            overrides["train_neural"] = self.train_neural

        return TrainingConfig.from_settings(
            service.settings,
            matrix_factorization=MatrixFactorizationConfig(**mf_overrides),
            neural=NeuralConfig(**neural_overrides),
            **overrides,
        )


@router.post("/train", status_code=status.HTTP_202_ACCEPTED)
def train_models(
    request: Optional[TrainRequest] = None,
    service: RecommendationService = Depends(get_service),
) -> Dict:
    """Start a background training run.

    Responds 409 while another run is active and 422 when there is not
    enough interaction data.
    """
    request = request or TrainRequest()
    handle = service.train_models(request.to_config(service))
    metrics_service.record_training_started()
    logger.info("Training requested", extra={"job_id": handle.job_id})
    return handle.status()


@router.get("/status")
def get_model_status(service: RecommendationService = Depends(get_service)) -> Dict:
    """Whether models are trained, on how much data, and the last metrics."""
    return service.get_model_status()


@router.get("/training")
def get_training_status(service: RecommendationService = Depends(get_service)) -> Dict:
    """Progress of the current or most recent training run."""
    return service.get_training_status()


@router.post("/training/cancel")
def cancel_training(service: RecommendationService = Depends(get_service)) -> Dict:
    """Request cancellation of the active training run."""
    cancelled = service.cancel_training()
    return {"cancelled": cancelled, **service.get_training_status()}
