"""
Finalized sessions: creation, clinician edits, media and document publishing.

Documents are never patched. Every create or edit renders the whole document
from the current field state and stores it under a new timestamped path; the
session then points at the new artifact.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from clinic_scribe.config import settings
from clinic_scribe.core.errors import ScribeError, StorageFailure, ValidationFailure
from clinic_scribe.core.logging import get_logger, audit_logger
from clinic_scribe.models.domain import (
    DocumentFields,
    Draft,
    DraftState,
    FinalizedSession,
    MediaUpload,
)
from clinic_scribe.models.requests import (
    FinalizeForm,
    ManualSessionForm,
    MediaSessionUpdate,
    SessionUpdate,
)
from clinic_scribe.services.document_renderer import DocumentRenderer
from clinic_scribe.storage.blob_store import BlobStore
from clinic_scribe.storage.repository import SessionRepository

logger = get_logger(__name__)

REQUIRED_FIELDS = ("patient_name", "patient_age", "final_diagnosis", "final_prescription")
DOCUMENT_DATE_FORMAT = "%Y-%m-%d"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def sanitize_filename(name: str, pattern: str = r"[^a-zA-Z0-9.-]") -> str:
    return re.sub(pattern, "_", name or "") or "file"


class SessionService:
    """Creates and edits finalized sessions and publishes their documents"""

    def __init__(
        self,
        repository: SessionRepository,
        blob_store: BlobStore,
        renderer: DocumentRenderer,
        clock: Optional[Callable[[], datetime]] = None,
        max_media_size_mb: Optional[int] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.renderer = renderer
        self.clock = clock or _utcnow
        self.max_media_bytes = (max_media_size_mb or settings.max_media_size_mb) * 1024 * 1024

    # --- Validation ---

    @staticmethod
    def validate_form(form: FinalizeForm) -> None:
        missing = [name for name in REQUIRED_FIELDS if not getattr(form, name).strip()]
        if missing:
            raise ValidationFailure(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )

    # --- Media ---

    async def upload_media(self, user_id: str, upload: MediaUpload, session_id: Optional[str] = None) -> str:
        """Stores an image or video and returns its public URL."""
        content_type = (upload.content_type or "").lower()
        if not (content_type.startswith("image/") or content_type.startswith("video/")):
            raise ValidationFailure("Only images and videos are supported")
        if len(upload.data) > self.max_media_bytes:
            raise ValidationFailure(f"File size exceeds {self.max_media_bytes // (1024 * 1024)}MB limit")

        path = (
            f"media/{user_id}/{session_id or 'manual'}_{timestamp_ms(self.clock())}_"
            f"{sanitize_filename(upload.filename)}"
        )
        return await self.blob_store.put(upload.data, path, content_type)

    async def _upload_all(self, user_id: str, uploads: Sequence[MediaUpload], session_id: str) -> List[str]:
        # Any failed upload fails the whole operation; a document must not
        # silently miss media the clinician attached.
        return [await self.upload_media(user_id, upload, session_id) for upload in uploads]

    # --- Documents ---

    async def _publish_document(self, session: FinalizedSession, now: datetime) -> Tuple[str, str]:
        fields = DocumentFields(
            patient_name=session.patient_name,
            patient_age=session.patient_age,
            date=now.strftime(DOCUMENT_DATE_FORMAT),
            summary=session.summary,
            examination_results=session.examination_results or None,
            diagnosis=session.final_diagnosis,
            prescription=session.final_prescription,
            treatment_plan=session.treatment_plan or None,
            doctor_notes=session.doctor_notes or None,
        )
        html = self.renderer.render(fields, session.media_urls)
        path = (
            f"documents/{session.user_id}/"
            f"{sanitize_filename(session.patient_name, r'[^a-zA-Z0-9]')}_{timestamp_ms(now)}.html"
        )
        url = await self.blob_store.put(html.encode("utf-8"), path, "text/html")
        audit_logger.log_document_rendered(session.user_id, session.id, url, len(session.media_urls))
        return path, url

    # --- Creation ---

    async def create_from_draft(
        self, draft: Draft, form: FinalizeForm, uploads: Sequence[MediaUpload] = ()
    ) -> FinalizedSession:
        """Turns a draft in FINALIZING into a session and deletes the draft, atomically."""
        self.validate_form(form)
        return await self._create(
            user_id=draft.user_id,
            form=form,
            uploads=uploads,
            transcript=draft.transcript or "",
            summary=form.summary if form.summary is not None else (draft.summary or ""),
            suggested_diagnosis=draft.suggested_diagnosis or "",
            suggested_prescription=draft.suggested_prescription or "",
            draft_id=draft.id,
            expected_state=DraftState.FINALIZING,
        )

    async def create_session(
        self, user_id: str, form: ManualSessionForm, uploads: Sequence[MediaUpload] = ()
    ) -> FinalizedSession:
        """Creates a session directly from form input, optionally deleting a draft with it."""
        self.validate_form(form)
        return await self._create(
            user_id=user_id,
            form=form,
            uploads=uploads,
            transcript=form.transcript,
            summary=form.summary or "",
            suggested_diagnosis=form.suggested_diagnosis,
            suggested_prescription=form.suggested_prescription,
            draft_id=form.draft_id,
            expected_state=None,
        )

    async def _create(
        self,
        user_id: str,
        form: FinalizeForm,
        uploads: Sequence[MediaUpload],
        transcript: str,
        summary: str,
        suggested_diagnosis: str,
        suggested_prescription: str,
        draft_id: Optional[str],
        expected_state: Optional[DraftState],
    ) -> FinalizedSession:
        now = self.clock()
        session_id = uuid.uuid4().hex
        media_urls = await self._upload_all(user_id, uploads, session_id)

        session = FinalizedSession(
            id=session_id,
            user_id=user_id,
            patient_name=form.patient_name.strip(),
            patient_age=form.patient_age.strip(),
            transcript=transcript,
            summary=summary,
            suggested_diagnosis=suggested_diagnosis,
            suggested_prescription=suggested_prescription,
            final_diagnosis=form.final_diagnosis,
            final_prescription=form.final_prescription,
            examination_results=form.examination_results,
            treatment_plan=form.treatment_plan,
            doctor_notes=form.doctor_notes,
            media_urls=media_urls,
            document_path="",
            document_url="",
            created_at=now,
            updated_at=now,
        )
        document_path, document_url = await self._publish_document(session, now)
        session = session.model_copy(update={"document_path": document_path, "document_url": document_url})

        try:
            self.repository.finalize_draft(session, draft_id, expected_state)
        except ScribeError:
            raise
        except Exception as e:
            logger.error(f"Error saving session: {e}", exc_info=True)
            raise StorageFailure("Failed to save session") from e

        logger.info("Session created", user_id=user_id, session_id=session_id, draft_id=draft_id)
        return session

    # --- Reads / edits ---

    def list_sessions(self, user_id: str) -> List[FinalizedSession]:
        return self.repository.list_sessions(user_id)

    def get_session(self, user_id: str, session_id: str) -> FinalizedSession:
        return self.repository.get_session(user_id, session_id)

    async def update_session(
        self,
        user_id: str,
        session_id: str,
        update: SessionUpdate,
    ) -> FinalizedSession:
        """
        Applies clinician edits, re-renders the whole document and points the
        session at the new artifact. Suggested fields and the transcript are
        never touched.
        """
        current = self.repository.get_session(user_id, session_id)
        changes = update.model_dump(
            include={"final_diagnosis", "final_prescription", "examination_results", "treatment_plan", "doctor_notes"},
            exclude_none=True,
        )
        for name in ("final_diagnosis", "final_prescription"):
            if name in changes and not changes[name].strip():
                raise ValidationFailure(f"Missing required fields: {name}", details={"missing": [name]})

        media_urls = list(current.media_urls)
        if isinstance(update, MediaSessionUpdate):
            kept = [url for url in update.keep_media_urls if url in current.media_urls]
            added = await self._upload_all(user_id, update.uploads, session_id)
            media_urls = kept + added

        now = self.clock()
        updated = current.model_copy(update={**changes, "media_urls": media_urls, "updated_at": now})
        document_path, document_url = await self._publish_document(updated, now)
        updated = updated.model_copy(update={"document_path": document_path, "document_url": document_url})

        try:
            self.repository.update_session(updated)
        except ScribeError:
            raise
        except Exception as e:
            logger.error(f"Error updating session: {e}", exc_info=True)
            raise StorageFailure("Failed to update session") from e
        return updated

    def delete_session(self, user_id: str, session_id: str) -> None:
        self.repository.delete_session(user_id, session_id)
        logger.info("Session deleted", user_id=user_id, session_id=session_id)
