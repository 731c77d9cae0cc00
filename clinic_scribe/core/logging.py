"""
Structured logging setup for Clinic Scribe
"""

import logging
import structlog
from datetime import datetime
from typing import Optional
from clinic_scribe.config import settings, Environment


def setup_logging():
    """Configures structured logging"""

    # Timestamper for consistent timestamps
    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    processors = [
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == Environment.DEVELOPMENT:
        # Development: colored console output
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True)
        ])
    else:
        # Production: JSON output
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """Creates a configured logger"""
    return structlog.get_logger(name or __name__)


class AuditLogger:
    """Dedicated logger for audit events"""

    def __init__(self):
        self.logger = get_logger("audit")

    def _emit(self, event: str, **kwargs):
        if not settings.audit_log_enabled:
            return
        self.logger.info(event, timestamp=datetime.utcnow().isoformat(), **kwargs)

    def log_api_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        **kwargs
    ):
        """Logs API requests for audit purposes"""
        self._emit(
            "api_request",
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            user_id=user_id,
            user_agent=user_agent,
            **kwargs
        )

    def log_draft_transition(self, user_id: str, draft_id: str, from_state: str, to_state: str, **kwargs):
        """Logs a draft lifecycle state change"""
        self._emit(
            "draft_transition",
            user_id=user_id,
            draft_id=draft_id,
            from_state=from_state,
            to_state=to_state,
            **kwargs
        )

    def log_transcription(
        self,
        user_id: str,
        draft_id: str,
        audio_size_bytes: int,
        estimated_minutes: float,
        actual_minutes: float,
        language: Optional[str],
        processing_time_ms: int,
        **kwargs
    ):
        """Logs a completed speech-to-text call"""
        self._emit(
            "transcription",
            user_id=user_id,
            draft_id=draft_id,
            audio_size_bytes=audio_size_bytes,
            estimated_minutes=estimated_minutes,
            actual_minutes=actual_minutes,
            language=language,
            processing_time_ms=processing_time_ms,
            **kwargs
        )

    def log_usage_commit(self, user_id: str, year: int, month: int, minutes: float, total_minutes: float):
        """Logs minutes added to the monthly usage record"""
        self._emit(
            "usage_commit",
            user_id=user_id,
            year=year,
            month=month,
            minutes=minutes,
            total_minutes=total_minutes,
        )

    def log_document_rendered(self, user_id: str, session_id: Optional[str], document_url: str, media_count: int):
        self._emit(
            "document_rendered",
            user_id=user_id,
            session_id=session_id,
            document_url=document_url,
            media_count=media_count,
        )

    def log_error(
        self,
        request_id: str,
        error_type: str,
        error_message: str,
        stack_trace: str = None,
        **kwargs
    ):
        """Logs error events"""
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger()
