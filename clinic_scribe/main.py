"""
Clinic Scribe - FastAPI Main Application
"""

import json
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from clinic_scribe.config import settings
from clinic_scribe.core.dependencies import ServiceContainer, build_services, get_services, get_user_id
from clinic_scribe.core.errors import ScribeError, ValidationFailure
from clinic_scribe.core.logging import setup_logging, get_logger, audit_logger
from clinic_scribe.models.domain import Draft, FinalizedSession, MediaUpload
from clinic_scribe.models.requests import (
    AnalysisPrompts,
    CleanupRequest,
    FinalizeForm,
    ManualSessionForm,
    MediaSessionUpdate,
    PromptSettingsUpdate,
    RenameDraftRequest,
    TextSessionUpdate,
    TranscribeRequest,
)
from clinic_scribe.models.responses import (
    CleanupResponse,
    DraftListResponse,
    ErrorResponse,
    FinalizeResponse,
    HealthCheckResponse,
    MediaUploadResponse,
    PromptSettingsResponse,
    RateLimitResponse,
    SessionListResponse,
    TranscribeResponse,
    UsageEntry,
    UsageResponse,
)
from clinic_scribe.storage.blob_store import LocalBlobStore

# Initialize logging
setup_logging()
logger = get_logger(__name__)

# Prometheus metrics
request_count = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
request_duration = Histogram('http_request_duration_seconds', 'HTTP request duration')

# Rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

START_TIME = time.time()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}

router = APIRouter(prefix="/v1", responses=ERROR_RESPONSES)


async def _read_upload(upload: UploadFile) -> MediaUpload:
    return MediaUpload(
        filename=upload.filename or "upload",
        content_type=upload.content_type or "application/octet-stream",
        data=await upload.read(),
    )


async def _read_uploads(uploads: Optional[List[UploadFile]]) -> List[MediaUpload]:
    return [await _read_upload(upload) for upload in uploads or [] if upload.filename]


def _finalize_response(session: FinalizedSession) -> FinalizeResponse:
    return FinalizeResponse(
        session_id=session.id,
        document_url=session.document_url,
        media_count=len(session.media_urls),
    )


# --- Drafts ---

@router.post("/drafts", response_model=Draft, status_code=status.HTTP_201_CREATED)
async def create_draft(
    audio_file: UploadFile = File(..., alias="file"),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Stores the first recording and opens a draft."""
    audio = await audio_file.read()
    return await services.drafts.create_draft(user_id, audio, audio_file.content_type)


@router.get("/drafts", response_model=DraftListResponse)
async def list_drafts(user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    return DraftListResponse(drafts=services.drafts.list_drafts(user_id))


@router.post("/drafts/cleanup", response_model=CleanupResponse)
async def cleanup_drafts(
    body: CleanupRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Deletes the caller's drafts older than the given age."""
    deleted = services.drafts.sweep_stale_drafts(user_id, body.older_than_hours)
    return CleanupResponse(deleted_count=len(deleted), deleted_ids=deleted)


@router.get("/drafts/{draft_id}", response_model=Draft)
async def get_draft(draft_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    return services.drafts.get_draft(user_id, draft_id)


@router.patch("/drafts/{draft_id}", response_model=Draft)
async def rename_draft(
    draft_id: str,
    body: RenameDraftRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    return services.drafts.rename_draft(user_id, draft_id, body.title)


@router.delete("/drafts/{draft_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_draft(draft_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    services.drafts.discard(user_id, draft_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/drafts/{draft_id}/recording", response_model=Draft)
async def start_recording(draft_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    """Reopens the draft for recording a continuation."""
    return services.drafts.start_recording(user_id, draft_id)


@router.put("/drafts/{draft_id}/recording", response_model=Draft)
async def append_recording(
    draft_id: str,
    audio_file: UploadFile = File(..., alias="file"),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Appends the continuation to the stored recording and moves the draft to review."""
    continuation = await audio_file.read()
    return await services.drafts.append_recording(user_id, draft_id, continuation, audio_file.content_type)


@router.post("/drafts/{draft_id}/review", response_model=Draft)
async def review_draft(draft_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    return services.drafts.review_existing_audio(user_id, draft_id)


@router.post("/drafts/{draft_id}/skip", response_model=Draft)
async def skip_review(draft_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    """Goes to the review form without a transcript."""
    return services.drafts.skip_to_finalizing(user_id, draft_id)


@router.post("/drafts/{draft_id}/transcribe", response_model=TranscribeResponse)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def transcribe_draft(
    request: Request,
    draft_id: str,
    body: TranscribeRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """
    Checks the monthly quota, transcribes the draft's audio with speaker
    labels, records the minutes used and runs the summary and suggestions.
    """
    return await services.drafts.transcribe(user_id, draft_id, body)


@router.post("/drafts/{draft_id}/analyze", response_model=TranscribeResponse)
async def analyze_draft(
    draft_id: str,
    body: AnalysisPrompts,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Retries only the analysis on an already stored transcript."""
    return await services.drafts.analyze(user_id, draft_id, body)


@router.post("/drafts/{draft_id}/finalize", response_model=FinalizeResponse, status_code=status.HTTP_201_CREATED)
async def finalize_draft(
    draft_id: str,
    patient_name: str = Form(""),
    patient_age: str = Form(""),
    summary: Optional[str] = Form(None),
    examination_results: str = Form(""),
    final_diagnosis: str = Form(""),
    final_prescription: str = Form(""),
    treatment_plan: str = Form(""),
    doctor_notes: str = Form(""),
    media: Optional[List[UploadFile]] = File(None),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Renders the medical document and turns the draft into a session."""
    form = FinalizeForm(
        patient_name=patient_name,
        patient_age=patient_age,
        summary=summary,
        examination_results=examination_results,
        final_diagnosis=final_diagnosis,
        final_prescription=final_prescription,
        treatment_plan=treatment_plan,
        doctor_notes=doctor_notes,
    )
    session = await services.drafts.finalize(user_id, draft_id, form, await _read_uploads(media))
    return _finalize_response(session)


# --- Sessions ---

@router.post("/sessions", response_model=FinalizeResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    patient_name: str = Form(""),
    patient_age: str = Form(""),
    summary: Optional[str] = Form(None),
    examination_results: str = Form(""),
    final_diagnosis: str = Form(""),
    final_prescription: str = Form(""),
    treatment_plan: str = Form(""),
    doctor_notes: str = Form(""),
    transcript: str = Form(""),
    suggested_diagnosis: str = Form(""),
    suggested_prescription: str = Form(""),
    draft_id: Optional[str] = Form(None),
    media: Optional[List[UploadFile]] = File(None),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Creates a session from form input, deleting ``draft_id`` in the same write when given."""
    form = ManualSessionForm(
        patient_name=patient_name,
        patient_age=patient_age,
        summary=summary,
        examination_results=examination_results,
        final_diagnosis=final_diagnosis,
        final_prescription=final_prescription,
        treatment_plan=treatment_plan,
        doctor_notes=doctor_notes,
        transcript=transcript,
        suggested_diagnosis=suggested_diagnosis,
        suggested_prescription=suggested_prescription,
        draft_id=draft_id or None,
    )
    session = await services.sessions.create_session(user_id, form, await _read_uploads(media))
    return _finalize_response(session)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    return SessionListResponse(sessions=services.sessions.list_sessions(user_id))


@router.get("/sessions/{session_id}", response_model=FinalizedSession)
async def get_session(session_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    return services.sessions.get_session(user_id, session_id)


@router.patch("/sessions/{session_id}", response_model=FinalizedSession)
async def update_session(
    request: Request,
    session_id: str,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """
    Edits a finalized session. A JSON body changes text fields only; a
    multipart body also replaces the media list with ``existing_media_urls``
    (JSON array) followed by the uploaded ``media`` files.
    """
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("multipart/form-data"):
            update = await _media_update_from_form(request)
        else:
            update = TextSessionUpdate.model_validate(await request.json())
    except ValidationError as e:
        raise ValidationFailure("Invalid session update", details={"errors": e.errors(include_url=False, include_context=False)}) from e
    except json.JSONDecodeError as e:
        raise ValidationFailure("Request body must be JSON or multipart form data") from e

    return await services.sessions.update_session(user_id, session_id, update)


async def _media_update_from_form(request: Request) -> MediaSessionUpdate:
    form = await request.form()
    raw_keep = form.get("existing_media_urls") or "[]"
    try:
        keep_media_urls = json.loads(raw_keep)
    except json.JSONDecodeError as e:
        raise ValidationFailure("existing_media_urls must be a JSON array") from e
    if not isinstance(keep_media_urls, list):
        raise ValidationFailure("existing_media_urls must be a JSON array")

    fields = {
        name: form.get(name)
        for name in ("final_diagnosis", "final_prescription", "examination_results", "treatment_plan", "doctor_notes")
        if isinstance(form.get(name), str)
    }
    uploads = [
        await _read_upload(item)
        for item in form.getlist("media")
        if not isinstance(item, str) and item.filename
    ]
    return MediaSessionUpdate(keep_media_urls=keep_media_urls, uploads=uploads, **fields)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, user_id: str = Depends(get_user_id), services: ServiceContainer = Depends(get_services)):
    services.sessions.delete_session(user_id, session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Media ---

@router.post("/media", response_model=MediaUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_media(
    media_file: UploadFile = File(..., alias="file"),
    session_id: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Uploads an image or video for later attachment to a session."""
    url = await services.sessions.upload_media(user_id, await _read_upload(media_file), session_id)
    return MediaUploadResponse(url=url)


# --- Prompt settings ---

@router.get("/settings", response_model=PromptSettingsResponse)
async def get_prompt_settings(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """The caller's saved analysis prompts, or the defaults."""
    saved = services.prompt_settings.get(user_id)
    return PromptSettingsResponse(**saved.model_dump(exclude={"user_id"}))


@router.put("/settings", response_model=PromptSettingsResponse)
async def update_prompt_settings(
    body: PromptSettingsUpdate,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    saved = services.prompt_settings.update(user_id, body)
    return PromptSettingsResponse(**saved.model_dump(exclude={"user_id"}))


# --- Usage ---

@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    year: Optional[int] = None,
    month: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Monthly transcription minutes, newest month first."""
    records = services.ledger.monthly_usage(user_id, year, month)
    return UsageResponse(
        usage=[UsageEntry(year=r.year, month=r.month, minutes_used=round(r.minutes_used, 2)) for r in records],
        cap_minutes=services.ledger.cap_minutes,
    )


# --- Application ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("🚀 Clinic Scribe starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"API Version: {settings.api_version}")

    yield

    # Shutdown
    logger.info("🛑 Clinic Scribe shutting down...")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Builds the application around ``services`` (default wiring when omitted)."""
    services = services or build_services()

    app = FastAPI(
        title=settings.api_title,
        description=settings.api_description,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
        debug=settings.debug,
    )
    app.state.services = services

    # Published documents, media and draft audio for the local blob store
    if isinstance(services.blob_store, LocalBlobStore):
        app.mount("/blobs", StaticFiles(directory=str(services.blob_store.root), check_dir=False), name="blobs")

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        if "Strict-Transport-Security" not in response.headers:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        if "X-Content-Type-Options" not in response.headers:
            response.headers["X-Content-Type-Options"] = "nosniff"
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"
        # Rendered documents carry inline styles and a print button script
        if "Content-Security-Policy" not in response.headers:
            response.headers["Content-Security-Policy"] = (
                "default-src 'self'; "
                "style-src 'self' 'unsafe-inline'; "
                "script-src 'self' 'unsafe-inline'; "
                "object-src 'none'"
            )
        return response

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Request tracking and Prometheus metrics"""
        start_time = time.time()
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.start_time = start_time

        try:
            response = await call_next(request)
        except Exception as e:
            request_count.labels(method=request.method, endpoint=request.url.path, status=500).inc()
            logger.error(f"Request {request_id} failed: {e}")
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_server_error",
                    "message": "An internal error occurred",
                    "request_id": request_id,
                    "timestamp": datetime.utcnow().isoformat()
                },
                headers={"X-Request-ID": request_id}
            )

        duration = time.time() - start_time
        request_count.labels(method=request.method, endpoint=request.url.path, status=response.status_code).inc()
        request_duration.observe(duration)
        audit_logger.log_api_request(
            request_id=request_id,
            endpoint=request.url.path,
            method=request.method,
            user_id=request.headers.get("X-User-ID"),
            user_agent=request.headers.get("user-agent"),
            status_code=response.status_code,
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time"] = f"{duration:.3f}s"
        return response

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        """Service health check"""
        return HealthCheckResponse(
            status="healthy",
            timestamp=datetime.utcnow(),
            version=settings.api_version,
            uptime_seconds=int(time.time() - START_TIME),
        )

    @app.get(settings.metrics_path)
    async def metrics():
        """Prometheus metrics"""
        if not settings.enable_metrics:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)

    @app.exception_handler(ScribeError)
    async def scribe_error_handler(request: Request, exc: ScribeError):
        """Maps pipeline errors to ErrorResponse bodies"""
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            audit_logger.log_error(
                error_type=exc.error_code,
                error_message=exc.message,
                request_id=request_id,
                user_id=request.headers.get("X-User-ID"),
            )
        body = ErrorResponse(
            error=exc.error_code,
            message=exc.message,
            retryable=exc.retryable,
            details=exc.details,
            request_id=request_id,
            timestamp=datetime.utcnow(),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        """Custom rate limit error handler"""
        response = RateLimitResponse(
            message="Too many requests. Please try again later.",
            retry_after=settings.rate_limit_window,
            limit=settings.rate_limit_requests,
            window=settings.rate_limit_window,
            timestamp=datetime.utcnow()
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=response.model_dump(mode="json"),
            headers={"Retry-After": str(settings.rate_limit_window)}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors"""
        request_id = getattr(request.state, 'request_id', 'unknown')

        logger.error(f"Unhandled error in request {request_id}: {exc}")
        logger.error(f"Stacktrace: {traceback.format_exc()}")

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": request_id,
                "timestamp": datetime.utcnow().isoformat()
            },
            headers={"X-Request-ID": request_id}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinic_scribe.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
