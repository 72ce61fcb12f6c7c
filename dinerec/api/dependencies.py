"""FastAPI dependencies shared by the route modules."""

from fastapi import Request

from dinerec.recommender.service import RecommendationService


def get_service(request: Request) -> RecommendationService:
    """Return the service instance attached to the running application."""
    return request.app.state.service
