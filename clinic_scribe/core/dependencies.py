"""
Service wiring and FastAPI dependencies.

Every service handle is built here and hung off ``app.state.services``;
request handlers receive them through ``Depends(get_services)``. Tests pass
their own container (fakes for the provider clients) to ``create_app``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request, status

from clinic_scribe.config import settings
from clinic_scribe.services.audio_processor import AudioProcessor
from clinic_scribe.services.document_renderer import DocumentRenderer
from clinic_scribe.services.draft_lifecycle import DraftLifecycle
from clinic_scribe.services.llm_service import AnalysisService, LLMService
from clinic_scribe.services.prompt_settings import PromptSettingsService
from clinic_scribe.services.session_service import SessionService
from clinic_scribe.services.stt_service import SpeechToTextProvider, STTService
from clinic_scribe.services.usage_ledger import UsageLedger
from clinic_scribe.storage.blob_store import BlobStore, LocalBlobStore
from clinic_scribe.storage.repository import InMemorySessionRepository, SessionRepository
from clinic_scribe.storage.usage_store import InMemoryUsageStore, UsageStore


@dataclass
class ServiceContainer:
    repository: SessionRepository
    usage_store: UsageStore
    blob_store: BlobStore
    ledger: UsageLedger
    audio_processor: AudioProcessor
    renderer: DocumentRenderer
    sessions: SessionService
    prompt_settings: PromptSettingsService
    drafts: DraftLifecycle


def build_services(
    stt_provider: Optional[SpeechToTextProvider] = None,
    analysis_service: Optional[AnalysisService] = None,
    blob_store: Optional[BlobStore] = None,
    repository: Optional[SessionRepository] = None,
    usage_store: Optional[UsageStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
    cap_minutes: Optional[float] = None,
) -> ServiceContainer:
    """Builds the service graph; any collaborator not passed in gets its default implementation."""
    repository = repository or InMemorySessionRepository()
    usage_store = usage_store or InMemoryUsageStore()
    blob_store = blob_store or LocalBlobStore(settings.blob_root, settings.blob_public_url)
    stt_provider = stt_provider or STTService()
    analysis_service = analysis_service or LLMService()

    audio_processor = AudioProcessor()
    renderer = DocumentRenderer()
    ledger = UsageLedger(usage_store, cap_minutes=cap_minutes, clock=clock)
    sessions = SessionService(repository, blob_store, renderer, clock=clock)
    prompt_settings = PromptSettingsService(repository, clock=clock)
    drafts = DraftLifecycle(
        repository=repository,
        blob_store=blob_store,
        audio_processor=audio_processor,
        ledger=ledger,
        stt_provider=stt_provider,
        analysis_service=analysis_service,
        sessions=sessions,
        prompt_settings=prompt_settings,
        clock=clock,
    )
    return ServiceContainer(
        repository=repository,
        usage_store=usage_store,
        blob_store=blob_store,
        ledger=ledger,
        audio_processor=audio_processor,
        renderer=renderer,
        sessions=sessions,
        prompt_settings=prompt_settings,
        drafts=drafts,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> str:
    """Caller identity. Authentication happens upstream of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User ID is required")
    return x_user_id.strip()
