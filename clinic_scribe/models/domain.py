"""
Domain models for drafts, finalized sessions and usage accounting
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from pydantic import BaseModel, Field

from clinic_scribe.core.errors import DraftConflictError


class DraftState(str, Enum):
    EDITING = "editing"
    RECORDING = "recording"
    REVIEWING = "reviewing"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    DISCARDED = "discarded"


TERMINAL_STATES: FrozenSet[DraftState] = frozenset({DraftState.FINALIZED, DraftState.DISCARDED})

ALLOWED_TRANSITIONS: Dict[DraftState, FrozenSet[DraftState]] = {
    DraftState.EDITING: frozenset({
        DraftState.RECORDING, DraftState.REVIEWING, DraftState.FINALIZING, DraftState.DISCARDED,
    }),
    DraftState.RECORDING: frozenset({DraftState.REVIEWING, DraftState.DISCARDED}),
    DraftState.REVIEWING: frozenset({DraftState.FINALIZING, DraftState.DISCARDED}),
    DraftState.FINALIZING: frozenset({DraftState.FINALIZED, DraftState.DISCARDED}),
    DraftState.FINALIZED: frozenset(),
    DraftState.DISCARDED: frozenset(),
}


class Draft(BaseModel):
    """A recording session that has not been finalized yet"""
    id: str = Field(description="Draft identifier")
    user_id: str = Field(description="Owning clinician")
    audio_path: str = Field(description="Blob store path of the single audio artifact")
    audio_url: str = Field(description="Public URL of the audio artifact")
    audio_content_type: str = Field(description="Content type of the stored audio")
    title: Optional[str] = Field(default=None, description="Optional clinician supplied title")
    state: DraftState = Field(default=DraftState.EDITING, description="Lifecycle state")
    created_at: datetime = Field(description="Creation time (UTC)")
    updated_at: datetime = Field(description="Last modification time (UTC)")

    # Working fields filled while reviewing
    language: Optional[str] = Field(default=None, description="Language hint used for transcription")
    transcript: Optional[str] = Field(default=None, description="Speaker segmented transcript")
    summary: Optional[str] = Field(default=None, description="AI summary of the consultation")
    suggested_diagnosis: Optional[str] = Field(default=None, description="AI suggested diagnosis")
    suggested_prescription: Optional[str] = Field(default=None, description="AI suggested prescription")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def require_state(self, expected: DraftState, action: str) -> None:
        if self.state != expected:
            raise DraftConflictError(self.id, self.state.value, action)

    def advance(self, target: DraftState, action: str, now: datetime, **changes) -> "Draft":
        """
        Returns a copy of the draft moved to ``target``.
        Raises DraftConflictError if the transition is not allowed from the current state.
        """
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise DraftConflictError(self.id, self.state.value, action)
        return self.model_copy(update={"state": target, "updated_at": now, **changes})


class FinalizedSession(BaseModel):
    """Immutable clinical record produced from a draft"""
    id: str = Field(description="Session identifier")
    user_id: str = Field(description="Owning clinician")
    patient_name: str = Field(description="Patient name")
    patient_age: str = Field(description="Patient age as entered")
    transcript: str = Field(default="", description="Speaker segmented transcript")
    summary: str = Field(default="", description="Complaint and history summary")

    # Provenance, never changed after creation
    suggested_diagnosis: str = Field(default="", description="AI suggested diagnosis (verbatim)")
    suggested_prescription: str = Field(default="", description="AI suggested prescription (verbatim)")

    # Clinician editable
    final_diagnosis: str = Field(description="Clinician confirmed diagnosis")
    final_prescription: str = Field(description="Clinician confirmed prescription / management")
    examination_results: str = Field(default="", description="Examination results")
    treatment_plan: str = Field(default="", description="Treatment plan")
    doctor_notes: str = Field(default="", description="Additional notes")
    media_urls: List[str] = Field(default_factory=list, description="Ordered media references")

    document_path: str = Field(description="Blob store path of the rendered document")
    document_url: str = Field(description="Public URL of the rendered document")
    created_at: datetime = Field(description="Creation time (UTC)")
    updated_at: datetime = Field(description="Last modification time (UTC)")


class UsageRecord(BaseModel):
    """Transcription minutes for one (user, year, month)"""
    user_id: str
    year: int
    month: int
    minutes_used: float = Field(default=0.0, description="Committed minutes, additive only")
    minutes_reserved: float = Field(default=0.0, description="Provisional minutes held by in-flight requests")
    version: int = Field(default=0, description="Incremented on every write, used for compare-and-swap")


class PromptSettings(BaseModel):
    """Saved analysis prompts of one clinician"""
    user_id: str
    clinic_prompt: str = Field(description="System prompt for diagnosis/prescription")
    summary_prompt: str = Field(description="System prompt for the summary")
    updated_at: Optional[datetime] = Field(default=None, description="Last save time (UTC), unset for defaults")


class DocumentFields(BaseModel):
    """Structured fields placed into the rendered clinical document"""
    patient_name: str
    patient_age: str
    date: str
    summary: str = ""
    examination_results: Optional[str] = None
    diagnosis: str
    prescription: str
    treatment_plan: Optional[str] = None
    doctor_notes: Optional[str] = None


class ProviderWord(BaseModel):
    """One token returned by a speech-to-text provider"""
    text: str
    speaker_id: Optional[str] = None
    token_type: str = Field(default="word", description="word, spacing or audio_event")
    end_seconds: Optional[float] = None


@dataclass(frozen=True)
class SpeakerSegment:
    speaker_id: str
    speech: str


@dataclass(frozen=True)
class AudioArtifact:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class MediaUpload:
    filename: str
    content_type: str
    data: bytes
