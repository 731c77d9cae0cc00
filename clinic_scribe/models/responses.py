"""
Pydantic Models for API Responses
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, Field

from clinic_scribe.models.domain import Draft, FinalizedSession


class DiagnosisSuggestion(BaseModel):
    """Structured output requested from the LLM"""
    diagnosis: str = Field(
        default="No diagnosis suggestion available",
        description="Most likely diagnosis or differential"
    )
    prescription: str = Field(
        default="No prescription suggestion available",
        description="Suggested prescription or management"
    )


class AnalysisResult(BaseModel):
    """LLM analysis result"""
    summary: str = Field(description="Consultation summary")
    suggested_diagnosis: str = Field(description="Suggested diagnosis")
    suggested_prescription: str = Field(description="Suggested prescription")


class TranscribeResponse(BaseModel):
    """Result of the review step"""
    draft: Draft = Field(description="Draft after the step (state finalizing)")
    transcript: str = Field(description="Speaker segmented transcript")
    analysis: AnalysisResult = Field(description="Summary and suggestions")
    minutes_charged: float = Field(description="Minutes committed to the usage ledger")


class DraftListResponse(BaseModel):
    drafts: List[Draft]


class SessionListResponse(BaseModel):
    sessions: List[FinalizedSession]


class FinalizeResponse(BaseModel):
    """Response after a session was created"""
    session_id: str = Field(description="New session identifier")
    document_url: str = Field(description="Rendered document URL")
    media_count: int = Field(description="Number of media references in the document")


class CleanupResponse(BaseModel):
    deleted_count: int
    deleted_ids: List[str]


class MediaUploadResponse(BaseModel):
    url: str


class PromptSettingsResponse(BaseModel):
    clinic_prompt: str
    summary_prompt: str
    updated_at: Optional[datetime] = None


class UsageEntry(BaseModel):
    year: int
    month: int
    minutes_used: float


class UsageResponse(BaseModel):
    """Display-only view of the usage ledger"""
    usage: List[UsageEntry]
    cap_minutes: float


class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str = Field(description="Service status (healthy/unhealthy)")
    timestamp: datetime = Field(description="Check time")
    version: str = Field(description="Service version")
    uptime_seconds: int = Field(description="Uptime in seconds")


class ErrorResponse(BaseModel):
    """Standardised error response"""
    error: str = Field(description="Error type")
    message: str = Field(description="Error description")
    retryable: bool = Field(default=False, description="Whether repeating the action may succeed")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error details")
    request_id: Optional[str] = Field(default=None, description="Request ID for debugging")
    timestamp: datetime = Field(description="Error time")


class RateLimitResponse(BaseModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str = Field(description="Rate limit error message")
    retry_after: int = Field(description="Seconds until the next attempt")
    limit: int = Field(description="Request limit")
    window: int = Field(description="Window in seconds")
    timestamp: datetime = Field(description="Error time")
