"""Recommendation endpoints for the DineRec API.

This module provides endpoints for personalized and popularity rankings and
for writing user feedback back to the data source.
"""

import logging
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from dinerec.api.dependencies import get_service
from dinerec.api.metrics import metrics_service
from dinerec.recommender.hybrid import ALGORITHM_POPULARITY, DispatchResult
from dinerec.recommender.service import RecommendationService

# Configure module logger
logger = logging.getLogger(__name__)

# Create API router
router = APIRouter(
    prefix="/recommend",
    tags=["recommendations"],
)


class RecommendationItem(BaseModel):
    """One recommended restaurant."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Restaurant ID")
    name: str
    cuisine: List[str] = Field(default_factory=list)
    rating: float
    delivery_time: int = Field(..., alias="deliveryTime", description="Delivery time in minutes")
    price_range: str = Field(..., alias="priceRange")
    match_percentage: int = Field(..., alias="matchPercentage", ge=0, le=100)
    score: float = Field(..., ge=0.0, le=1.0)
    sub_scores: Dict[str, float] = Field(default_factory=dict, alias="subScores")
    explanations: List[str] = Field(default_factory=list, max_length=3)
    algorithm_tag: str = Field(..., alias="algorithmTag")


class RecommendationResponse(BaseModel):
    """Response model for recommendation requests.

    Attributes:
        user_id: The user the ranking was generated for.
        algorithm: Strategy that produced the ranking.
        fallback: Whether the popularity fallback had to answer.
        recommendations: Ranked restaurants, best first.
    """

    user_id: str
    algorithm: str
    fallback: bool = False
    recommendations: List[RecommendationItem]


class FeedbackRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, description="ordered, favorited, clicked, ...")
    rank: Optional[int] = Field(None, ge=1, description="Position the item was shown at")


class FeedbackResponse(BaseModel):
    status: str = "recorded"
    weight: float


def _to_response(user_id: str, result: DispatchResult) -> RecommendationResponse:
    return RecommendationResponse(
        user_id=user_id,
        algorithm=result.strategy,
        fallback=result.fallback,
        recommendations=[
            RecommendationItem.model_validate(rec.to_dict()) for rec in result.recommendations
        ],
    )


@router.get("/popular", response_model=RecommendationResponse)
def get_popular(
    count: Optional[int] = Query(None, ge=1, description="Number of restaurants"),
    service: RecommendationService = Depends(get_service),
) -> RecommendationResponse:
    """Restaurants ranked by recent orders, rating and delivery fee."""
    start_time = time.time()
    result = service.recommend("guest", count, ALGORITHM_POPULARITY)
    metrics_service.record_recommendation(
        (time.time() - start_time) * 1000, result.strategy, result.fallback
    )
    return _to_response("guest", result)


@router.post("/feedback", response_model=FeedbackResponse)
def post_feedback(
    feedback: FeedbackRequest,
    service: RecommendationService = Depends(get_service),
) -> FeedbackResponse:
    """Record how a user reacted to a recommendation."""
    weight = service.record_feedback(
        feedback.user_id, feedback.item_id, feedback.action, feedback.rank
    )
    return FeedbackResponse(weight=weight)


@router.get("/{user_id}", response_model=RecommendationResponse)
def get_recommendations(
    user_id: str,
    count: Optional[int] = Query(None, ge=1, description="Number of restaurants"),
    algorithm: Optional[str] = Query(
        None, description="hybrid, matrix, neural, multi_factor or popularity"
    ),
    service: RecommendationService = Depends(get_service),
) -> RecommendationResponse:
    """Get restaurant recommendations for a user.

    Unknown users and users without history get a cold-start ranking; the
    endpoint never fails because of missing history or untrained models.

    Example:
        GET /recommend/u42?count=5&algorithm=hybrid
    """
    logger.info(f"Generating recommendations for user {user_id}, count={count}")

    start_time = time.time()
    result = service.recommend(user_id, count, algorithm)
    metrics_service.record_recommendation(
        (time.time() - start_time) * 1000, result.strategy, result.fallback
    )
    return _to_response(user_id, result)
