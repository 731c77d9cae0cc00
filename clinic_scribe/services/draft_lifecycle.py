"""
Draft Lifecycle: the state machine that carries a recording from first capture
to a finalized session.

    EDITING -> RECORDING -> REVIEWING -> FINALIZING -> FINALIZED
    (any state) -> DISCARDED

Each operation is one clinician action. No lock is held across provider or
storage calls; instead every write goes through ``update_draft`` with the
state the operation started from, so a concurrent delete or transition shows
up as NotFoundError / DraftConflictError instead of a lost update. Actions on
a draft that was already finalized or discarded raise DraftConflictError.
"""

import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from clinic_scribe.config import settings
from clinic_scribe.core.errors import (
    AnalysisFailure,
    DraftConflictError,
    NotFoundError,
    ProviderFailure,
    ValidationFailure,
)
from clinic_scribe.core.logging import get_logger, audit_logger
from clinic_scribe.models.domain import Draft, DraftState, FinalizedSession, MediaUpload
from clinic_scribe.models.requests import AnalysisPrompts, FinalizeForm, TranscribeRequest
from clinic_scribe.models.responses import AnalysisResult, TranscribeResponse
from clinic_scribe.services.audio_processor import AudioProcessor
from clinic_scribe.services.diarization import format_transcript, spoken_duration_minutes
from clinic_scribe.services.llm_service import AnalysisService
from clinic_scribe.services.prompt_settings import PromptSettingsService
from clinic_scribe.services.session_service import SessionService, timestamp_ms
from clinic_scribe.services.stt_service import SpeechToTextProvider
from clinic_scribe.services.usage_ledger import UsageLedger
from clinic_scribe.storage.blob_store import BlobStore
from clinic_scribe.storage.repository import SessionRepository

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DraftLifecycle:
    """Orchestrates recording, transcription, analysis and finalization of drafts"""

    def __init__(
        self,
        repository: SessionRepository,
        blob_store: BlobStore,
        audio_processor: AudioProcessor,
        ledger: UsageLedger,
        stt_provider: SpeechToTextProvider,
        analysis_service: AnalysisService,
        sessions: SessionService,
        prompt_settings: Optional[PromptSettingsService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.audio = audio_processor
        self.ledger = ledger
        self.stt = stt_provider
        self.analysis = analysis_service
        self.sessions = sessions
        self.prompt_settings = prompt_settings or PromptSettingsService(repository, clock=clock)
        self.clock = clock or _utcnow

    # --- Helpers ---

    def _closed_conflict(self, user_id: str, draft_id: str, action: str) -> Optional[DraftConflictError]:
        closed = self.repository.closed_draft_state(user_id, draft_id)
        if closed is None:
            return None
        return DraftConflictError(draft_id, closed.value, action)

    def _load(self, user_id: str, draft_id: str, action: str) -> Draft:
        """Fetches a draft for a mutating action."""
        try:
            return self.repository.get_draft(user_id, draft_id)
        except NotFoundError:
            conflict = self._closed_conflict(user_id, draft_id, action)
            if conflict is not None:
                raise conflict
            raise

    def _update(self, updated: Draft, expected: DraftState, action: str) -> Draft:
        try:
            return self.repository.update_draft(updated, expected_state=expected)
        except NotFoundError:
            conflict = self._closed_conflict(updated.user_id, updated.id, action)
            if conflict is not None:
                raise conflict
            raise

    def _transition(self, draft: Draft, target: DraftState, action: str, **changes) -> Draft:
        updated = draft.advance(target, action, self.clock(), **changes)
        self._update(updated, draft.state, action)
        audit_logger.log_draft_transition(draft.user_id, draft.id, draft.state.value, target.value)
        return updated

    def _save_working_fields(self, user_id: str, draft_id: str, expected: DraftState, action: str, **changes) -> Draft:
        """Persists working fields without changing state."""
        current = self._load(user_id, draft_id, action)
        current.require_state(expected, action)
        updated = current.model_copy(update={**changes, "updated_at": self.clock()})
        return self._update(updated, expected, action)

    @staticmethod
    def _normalize_language(language: Optional[str]) -> Optional[str]:
        if not language or language == "auto":
            return None
        if language not in settings.supported_languages:
            raise ValidationFailure(
                f"Unsupported language '{language}'. Supported are: {', '.join(settings.supported_languages)}"
            )
        return language

    # --- Editing ---

    async def create_draft(self, user_id: str, audio: bytes, content_type: Optional[str] = None) -> Draft:
        """Stores the first recording and opens a draft in EDITING."""
        content_type = self.audio.validate(audio, content_type or settings.draft_content_type)
        now = self.clock()
        draft_id = uuid.uuid4().hex
        path = f"drafts/{user_id}/{draft_id}_{timestamp_ms(now)}{self.audio.extension_for(content_type)}"
        audio_url = await self.blob_store.put(audio, path, content_type)

        draft = Draft(
            id=draft_id,
            user_id=user_id,
            audio_path=path,
            audio_url=audio_url,
            audio_content_type=content_type,
            state=DraftState.EDITING,
            created_at=now,
            updated_at=now,
        )
        self.repository.create_draft(draft)
        audit_logger.log_draft_transition(user_id, draft_id, "none", DraftState.EDITING.value)
        return draft

    def list_drafts(self, user_id: str) -> List[Draft]:
        return self.repository.list_drafts(user_id)

    def get_draft(self, user_id: str, draft_id: str) -> Draft:
        return self.repository.get_draft(user_id, draft_id)

    def rename_draft(self, user_id: str, draft_id: str, title: Optional[str]) -> Draft:
        draft = self._load(user_id, draft_id, "rename")
        return self._save_working_fields(user_id, draft_id, draft.state, "rename", title=title)

    # --- Recording ---

    def start_recording(self, user_id: str, draft_id: str) -> Draft:
        draft = self._load(user_id, draft_id, "start recording")
        return self._transition(draft, DraftState.RECORDING, "start recording")

    async def append_recording(
        self, user_id: str, draft_id: str, continuation: bytes, content_type: Optional[str] = None
    ) -> Draft:
        """
        Combines the stored recording with a continuation and replaces the
        draft's audio reference with the combined artifact.
        """
        draft = self._load(user_id, draft_id, "append recording")
        draft.require_state(DraftState.RECORDING, "append recording")
        self.audio.validate(continuation, content_type or settings.continuation_content_type)

        original = await self.blob_store.get(draft.audio_path)
        combined = self.audio.combine(original, continuation)
        path = (
            f"drafts/{user_id}/{draft_id}_{timestamp_ms(self.clock())}_final"
            f"{self.audio.extension_for(combined.content_type)}"
        )
        audio_url = await self.blob_store.put(combined.data, path, combined.content_type)

        return self._transition(
            draft,
            DraftState.REVIEWING,
            "append recording",
            audio_path=path,
            audio_url=audio_url,
            audio_content_type=combined.content_type,
        )

    def review_existing_audio(self, user_id: str, draft_id: str) -> Draft:
        """Moves to REVIEWING with the stored audio unchanged."""
        draft = self._load(user_id, draft_id, "review existing audio")
        return self._transition(draft, DraftState.REVIEWING, "review existing audio")

    def skip_to_finalizing(self, user_id: str, draft_id: str) -> Draft:
        """Goes straight to the review form with the stored audio and no transcript."""
        draft = self._load(user_id, draft_id, "skip to finalizing")
        return self._transition(draft, DraftState.FINALIZING, "skip to finalizing")

    # --- Reviewing ---

    async def transcribe(self, user_id: str, draft_id: str, request: TranscribeRequest) -> TranscribeResponse:
        """
        Quota check, speech-to-text, diarized formatting, usage commit and
        analysis. Any failure leaves the draft in REVIEWING.
        """
        draft = self._load(user_id, draft_id, "transcribe")
        draft.require_state(DraftState.REVIEWING, "transcribe")
        language = self._normalize_language(request.language)

        audio = await self.blob_store.get(draft.audio_path)
        estimated_minutes = self.audio.estimate_duration_minutes(audio)
        reservation = self.ledger.check_quota(user_id, estimated_minutes)

        started = time.monotonic()
        try:
            words = await self.stt.transcribe(audio, language)
        except asyncio.CancelledError:
            self.ledger.release(reservation)
            logger.info(f"Transcription of draft {draft_id} was cancelled; reservation released")
            raise
        except ProviderFailure:
            self.ledger.release(reservation)
            raise
        except Exception as e:
            self.ledger.release(reservation)
            logger.error(f"Speech-to-text call failed for draft {draft_id}: {e}", exc_info=True)
            raise ProviderFailure("Transcription failed.") from e

        transcript = format_transcript(words)
        actual_minutes = spoken_duration_minutes(words)
        if actual_minutes is None:
            actual_minutes = estimated_minutes
        # Provider minutes are consumed whatever happens to the analysis
        self.ledger.commit_usage(user_id, actual_minutes, reservation)
        audit_logger.log_transcription(
            user_id=user_id,
            draft_id=draft_id,
            audio_size_bytes=len(audio),
            estimated_minutes=round(estimated_minutes, 3),
            actual_minutes=round(actual_minutes, 3),
            language=language,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )

        try:
            draft = self._save_working_fields(
                user_id, draft_id, DraftState.REVIEWING, "store transcript",
                language=language, transcript=transcript,
            )
        except (NotFoundError, DraftConflictError):
            logger.info(f"Draft {draft_id} was closed or changed while transcribing; discarding result")
            raise

        analysis = await self._run_analysis(draft, request)
        draft = self._apply_analysis(draft, analysis)
        return TranscribeResponse(
            draft=draft,
            transcript=transcript,
            analysis=analysis,
            minutes_charged=round(actual_minutes, 4),
        )

    async def analyze(self, user_id: str, draft_id: str, prompts: AnalysisPrompts) -> TranscribeResponse:
        """Re-runs only the analysis on the transcript kept from a previous attempt."""
        draft = self._load(user_id, draft_id, "analyze")
        draft.require_state(DraftState.REVIEWING, "analyze")
        if draft.transcript is None:
            raise ValidationFailure("Draft has no transcript yet; transcribe it first.")

        analysis = await self._run_analysis(draft, prompts)
        draft = self._apply_analysis(draft, analysis)
        return TranscribeResponse(draft=draft, transcript=draft.transcript, analysis=analysis, minutes_charged=0.0)

    async def _run_analysis(self, draft: Draft, prompts: AnalysisPrompts) -> AnalysisResult:
        """Request prompts win over the clinician's saved prompts, which win over the defaults."""
        effective = self.prompt_settings.resolve(draft.user_id, prompts)
        try:
            return await self.analysis.analyze(
                draft.transcript or "",
                effective.clinic_prompt,
                effective.summary_prompt,
            )
        except AnalysisFailure:
            raise
        except Exception as e:
            logger.error(f"Analysis failed for draft {draft.id}: {e}", exc_info=True)
            raise AnalysisFailure("Failed to analyze transcript.") from e

    def _apply_analysis(self, draft: Draft, analysis: AnalysisResult) -> Draft:
        current = self._load(draft.user_id, draft.id, "complete review")
        return self._transition(
            current,
            DraftState.FINALIZING,
            "complete review",
            summary=analysis.summary,
            suggested_diagnosis=analysis.suggested_diagnosis,
            suggested_prescription=analysis.suggested_prescription,
        )

    # --- Finalizing ---

    async def finalize(
        self, user_id: str, draft_id: str, form: FinalizeForm, uploads: Sequence[MediaUpload] = ()
    ) -> FinalizedSession:
        """
        Renders the document and atomically creates the session and deletes the
        draft. On any failure the draft stays in FINALIZING.
        """
        draft = self._load(user_id, draft_id, "finalize")
        draft.require_state(DraftState.FINALIZING, "finalize")
        session = await self.sessions.create_from_draft(draft, form, uploads)
        audit_logger.log_draft_transition(
            user_id, draft_id, DraftState.FINALIZING.value, DraftState.FINALIZED.value, session_id=session.id
        )
        return session

    # --- Discarding ---

    def discard(self, user_id: str, draft_id: str) -> None:
        draft = self._load(user_id, draft_id, "discard")
        self.repository.delete_draft(user_id, draft_id)
        audit_logger.log_draft_transition(user_id, draft_id, draft.state.value, DraftState.DISCARDED.value)

    def sweep_stale_drafts(self, user_id: str, older_than_hours: Optional[int] = None) -> List[str]:
        """Deletes the user's drafts created more than ``older_than_hours`` ago."""
        hours = settings.draft_max_age_hours if older_than_hours is None else older_than_hours
        cutoff = self.clock() - timedelta(hours=hours)
        deleted = self.repository.delete_drafts_created_before(user_id, cutoff)
        for draft_id in deleted:
            audit_logger.log_draft_transition(user_id, draft_id, "stale", DraftState.DISCARDED.value)
        logger.info("Swept stale drafts", user_id=user_id, older_than_hours=hours, deleted_count=len(deleted))
        return deleted
