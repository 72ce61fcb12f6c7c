"""Tests for error handling in the DineRec service and API.

Covers the exception taxonomy, the JSON error shape and graceful
degradation when the data source or a model misbehaves.
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient

from conftest import make_catalog, make_orders
from dinerec.api.logging_config import JSONFormatter
from dinerec.api.main import create_app
from dinerec.config import Settings
from dinerec.exceptions import (
    DataInsufficientError,
    DineRecException,
    ModelUnavailableError,
    ScoringFaultError,
    TrainingCancelledError,
    TrainingInProgressError,
)
from dinerec.recommender.data import InMemoryDataSource
from dinerec.recommender.scoring import ScoringConfig
from dinerec.recommender.service import RecommendationService


class FlakyHistorySource(InMemoryDataSource):
    """Catalog works, order history lookups fail."""

    def get_order_history(self, user_id, limit=50):
        raise ConnectionError("orders database unreachable")


@pytest.mark.parametrize(
    "error, status_code",
    [
        (DataInsufficientError("2 users (need 5)"), 422),
        (ModelUnavailableError("neural"), 503),
        (ModelUnavailableError("matrix_factorization", "u9"), 503),
        (ScoringFaultError("r1", KeyError("rating")), 500),
        (TrainingInProgressError("job-1"), 409),
        (TrainingCancelledError("neural", 3), 499),
    ],
)
def test_exception_status_codes(error, status_code):
    assert isinstance(error, DineRecException)
    assert error.status_code == status_code
    assert error.message
    assert isinstance(error.details, dict)


def test_model_unavailable_details():
    error = ModelUnavailableError("matrix_factorization", "u9")
    assert error.model_name == "matrix_factorization"
    assert error.user_id == "u9"
    assert "u9" in error.message


def test_scoring_fault_details():
    error = ScoringFaultError("r1", KeyError("rating"))
    assert error.details["item_id"] == "r1"
    assert error.details["error_type"] == "KeyError"


def test_history_failure_degrades_to_cold_start():
    source = FlakyHistorySource(restaurants=make_catalog(), interactions=make_orders())
    service = RecommendationService(source, Settings(), scoring_config=ScoringConfig(random_state=2))

    result = service.recommend("u1", count=5)

    assert len(result.recommendations) == 5
    ratings = [r.rating for r in result.recommendations]
    assert ratings == sorted(ratings, reverse=True)


def test_history_failure_over_http():
    source = FlakyHistorySource(restaurants=make_catalog(), interactions=make_orders())
    client = TestClient(create_app(service=RecommendationService(source, Settings())))

    response = client.get("/recommend/u1?count=2")

    assert response.status_code == 200
    assert len(response.json()["recommendations"]) == 2


def test_error_response_structure(service):
    """Service errors render as {error, message, details}."""
    client = TestClient(create_app(service=service))

    def fail(*args, **kwargs):
        raise ModelUnavailableError("neural")

    service.get_model_status = fail
    response = client.get("/models/status")

    assert response.status_code == 503
    data = response.json()
    assert set(data) == {"error", "message", "details"}
    assert data["error"] == "ModelUnavailableError"
    assert data["details"]["model"] == "neural"


def test_health_check_not_affected_by_model_errors(service):
    client = TestClient(create_app(service=service))
    assert client.get("/ping").status_code == 200


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("dinerec.test", logging.WARNING, __file__, 10, "Scoring fault", None, None)
    record.item_id = "r3"
    record.error_type = "ScoringFault"

    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "Scoring fault"
    assert payload["level"] == "WARNING"
    assert payload["item_id"] == "r3"
    assert payload["error_type"] == "ScoringFault"


def test_scoring_fault_is_logged(service, caplog, monkeypatch):
    def broken(restaurant, context):
        raise ValueError("bad cuisine data")

    monkeypatch.setattr(service.scorer, "personal_score", broken)

    with caplog.at_level(logging.WARNING, logger="dinerec.recommender.scoring"):
        result = service.recommend("u2", count=3, algorithm="multi_factor")

    assert len(result.recommendations) == 3
    faults = [r for r in caplog.records if getattr(r, "error_type", None) == "ScoringFault"]
    assert faults
    assert faults[0].item_id
