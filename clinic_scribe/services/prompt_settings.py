"""
Per-clinician analysis prompts.

A clinician may save their own diagnosis and summary prompts. Analysis uses a
prompt from the request first, then the saved one, then the configured default.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from clinic_scribe.config import settings
from clinic_scribe.core.errors import ScribeError, StorageFailure
from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.domain import PromptSettings
from clinic_scribe.models.requests import AnalysisPrompts
from clinic_scribe.storage.repository import SessionRepository

logger = get_logger(__name__)


class PromptSettingsService:
    """Reads, saves and resolves the analysis prompts of a clinician"""

    def __init__(
        self,
        repository: SessionRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, user_id: str) -> PromptSettings:
        """Saved prompts, or the configured defaults when nothing was saved"""
        saved = self.repository.get_prompt_settings(user_id)
        if saved is not None:
            return saved
        return PromptSettings(
            user_id=user_id,
            clinic_prompt=settings.default_clinic_prompt,
            summary_prompt=settings.default_summary_prompt,
        )

    def update(self, user_id: str, prompts: AnalysisPrompts) -> PromptSettings:
        current = self.get(user_id)
        updated = PromptSettings(
            user_id=user_id,
            clinic_prompt=_non_blank(prompts.clinic_prompt) or current.clinic_prompt,
            summary_prompt=_non_blank(prompts.summary_prompt) or current.summary_prompt,
            updated_at=self._clock(),
        )
        try:
            saved = self.repository.save_prompt_settings(updated)
        except ScribeError:
            raise
        except Exception as e:
            logger.error(f"Saving prompt settings for {user_id} failed: {e}", exc_info=True)
            raise StorageFailure("Failed to save prompt settings.") from e
        logger.info(f"Prompt settings saved for {user_id}")
        return saved

    def resolve(self, user_id: str, prompts: Optional[AnalysisPrompts] = None) -> AnalysisPrompts:
        """Effective prompts for one analysis call"""
        saved = self.get(user_id)
        prompts = prompts or AnalysisPrompts()
        return AnalysisPrompts(
            clinic_prompt=_non_blank(prompts.clinic_prompt) or saved.clinic_prompt,
            summary_prompt=_non_blank(prompts.summary_prompt) or saved.summary_prompt,
        )


def _non_blank(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value
