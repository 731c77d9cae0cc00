"""
Pydantic Models for API Requests
"""

from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from clinic_scribe.models.domain import MediaUpload


class RenameDraftRequest(BaseModel):
    """Request Model for draft title edits"""
    title: Optional[str] = Field(default=None, max_length=200, description="New draft title")


class CleanupRequest(BaseModel):
    """Request Model for the age-based draft sweep"""
    older_than_hours: Optional[int] = Field(
        default=None,
        ge=0,
        description="Delete drafts created before now minus this many hours (defaults to settings)"
    )


class AnalysisPrompts(BaseModel):
    """Prompts sent to the analysis service"""
    clinic_prompt: Optional[str] = Field(default=None, description="System prompt for diagnosis/prescription")
    summary_prompt: Optional[str] = Field(default=None, description="System prompt for the summary")


class PromptSettingsUpdate(AnalysisPrompts):
    """Request Model for saving prompt settings; omitted prompts keep their saved value"""


class TranscribeRequest(AnalysisPrompts):
    """Request Model for the review step"""
    language: Optional[str] = Field(
        default=None,
        description="Majority language of the recording; null or 'auto' lets the provider detect it"
    )


class FinalizeForm(BaseModel):
    """Clinician entered fields submitted when a draft is finalized"""
    patient_name: str = Field(default="", description="Patient name")
    patient_age: str = Field(default="", description="Patient age")
    summary: Optional[str] = Field(default=None, description="Overrides the AI summary when given")
    examination_results: str = Field(default="")
    final_diagnosis: str = Field(default="")
    final_prescription: str = Field(default="")
    treatment_plan: str = Field(default="")
    doctor_notes: str = Field(default="")


class ManualSessionForm(FinalizeForm):
    """Session created without going through a draft"""
    transcript: str = Field(default="")
    suggested_diagnosis: str = Field(default="")
    suggested_prescription: str = Field(default="")
    draft_id: Optional[str] = Field(default=None, description="Draft to delete together with the insert")


class SessionFieldsUpdate(BaseModel):
    """Clinician editable fields of a finalized session"""
    final_diagnosis: Optional[str] = None
    final_prescription: Optional[str] = None
    examination_results: Optional[str] = None
    treatment_plan: Optional[str] = None
    doctor_notes: Optional[str] = None


class TextSessionUpdate(SessionFieldsUpdate):
    """JSON update: text fields only, media list unchanged"""
    kind: Literal["text"] = "text"


class MediaSessionUpdate(SessionFieldsUpdate):
    """Multipart update: text fields plus the new media list"""
    kind: Literal["media"] = "media"
    keep_media_urls: List[str] = Field(default_factory=list, description="Existing media to keep, in order")
    uploads: List[MediaUpload] = Field(default_factory=list, description="New files appended after kept media")


SessionUpdate = Annotated[Union[TextSessionUpdate, MediaSessionUpdate], Field(discriminator="kind")]
