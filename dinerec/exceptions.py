"""Custom exceptions for DineRec.

Defines the error taxonomy shared by the recommendation engines, the
training task and the HTTP API.
"""

from typing import Any, Dict, Optional


class DineRecException(Exception):
    """Base exception for DineRec errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code for API responses
            details: Additional error details for debugging
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class DataInsufficientError(DineRecException):
    """Raised when there is not enough interaction data to train."""

    def __init__(
        self,
        reason: str,
        counts: Optional[Dict[str, int]] = None,
        minimums: Optional[Dict[str, int]] = None,
    ):
        message = f"Insufficient data for training: {reason}"
        super().__init__(
            message=message,
            status_code=422,
            details={"counts": counts or {}, "minimums": minimums or {}},
        )


class ModelUnavailableError(DineRecException):
    """Raised when a model cannot score a request.

    Either no model has been trained yet, or the user was not seen during
    training. The hybrid dispatcher treats this as a signal to fall back.
    """

    def __init__(self, model_name: str, user_id: Optional[str] = None):
        if user_id is None:
            message = f"Model '{model_name}' has not been trained yet."
        else:
            message = f"Model '{model_name}' has no embedding for user {user_id}."
        super().__init__(
            message=message,
            status_code=503,
            details={"model": model_name, "user_id": user_id},
        )
        self.model_name = model_name
        self.user_id = user_id


class ScoringFaultError(DineRecException):
    """Raised when scoring a single candidate fails."""

    def __init__(self, item_id: str, error: Exception):
        message = f"Failed to score restaurant {item_id}: {str(error)}"
        super().__init__(
            message=message,
            status_code=500,
            details={
                "item_id": item_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


class TrainingInProgressError(DineRecException):
    """Raised when a training run is requested while another is active."""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Training job {job_id} is already running.",
            status_code=409,
            details={"job_id": job_id},
        )


class TrainingCancelledError(DineRecException):
    """Raised inside a training loop when cancellation was requested."""

    def __init__(self, model_name: str, epoch: int):
        super().__init__(
            message=f"Training of '{model_name}' cancelled after epoch {epoch}.",
            status_code=499,
            details={"model": model_name, "epoch": epoch},
        )
