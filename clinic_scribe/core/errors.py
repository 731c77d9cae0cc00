"""
Error taxonomy for the capture and transcription pipeline.

Every pipeline error carries a machine readable ``error`` code and the HTTP
status it maps to; the API layer turns them into ``ErrorResponse`` bodies.
"""

from typing import Any, Dict, Optional
from fastapi import status


class ScribeError(Exception):
    """Base class for all pipeline errors."""

    error_code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(ScribeError):
    """Draft or session does not exist or is not owned by the caller."""

    error_code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class QuotaExceededError(ScribeError):
    """Monthly transcription minutes would exceed the cap."""

    error_code = "quota_exceeded"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, used_minutes: float, requested_minutes: float, cap_minutes: float):
        super().__init__(
            f"Usage limit exceeded. You have used {used_minutes:.1f} minutes this month, "
            f"exceeding the {cap_minutes:g}-minute limit.",
            details={
                "used_minutes": round(used_minutes, 2),
                "requested_minutes": round(requested_minutes, 2),
                "cap_minutes": cap_minutes,
            },
        )
        self.used_minutes = used_minutes
        self.requested_minutes = requested_minutes
        self.cap_minutes = cap_minutes


class ProviderFailure(ScribeError):
    """The speech-to-text provider call failed."""

    error_code = "transcription_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class AnalysisFailure(ScribeError):
    """The summary / diagnosis call failed. The transcript is kept."""

    error_code = "analysis_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class StorageFailure(ScribeError):
    """A blob or repository write failed."""

    error_code = "storage_failed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ValidationFailure(ScribeError):
    """Required clinical fields are missing or input is malformed."""

    error_code = "validation_failed"
    status_code = 422


class DraftConflictError(ScribeError):
    """A transition was attempted from a state that no longer holds."""

    error_code = "draft_conflict"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, draft_id: str, current_state: str, action: str):
        super().__init__(
            f"Draft {draft_id} is in state {current_state}; cannot {action}.",
            details={"draft_id": draft_id, "state": current_state, "action": action},
        )
        self.current_state = current_state
