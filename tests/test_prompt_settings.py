from datetime import datetime, timezone

import pytest

from clinic_scribe.config import settings
from clinic_scribe.core.errors import StorageFailure
from clinic_scribe.models.requests import AnalysisPrompts
from clinic_scribe.services.prompt_settings import PromptSettingsService
from clinic_scribe.storage.repository import InMemorySessionRepository

USER = "doctor-1"
NOW = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def service():
    return PromptSettingsService(InMemorySessionRepository(), clock=lambda: NOW)


def test_defaults_until_saved(service):
    current = service.get(USER)

    assert current.clinic_prompt == settings.default_clinic_prompt
    assert current.summary_prompt == settings.default_summary_prompt
    assert current.updated_at is None


def test_update_keeps_omitted_and_blank_prompts(service):
    service.update(USER, AnalysisPrompts(clinic_prompt="Clinic v1", summary_prompt="Summary v1"))

    saved = service.update(USER, AnalysisPrompts(summary_prompt="   "))

    assert saved.clinic_prompt == "Clinic v1"
    assert saved.summary_prompt == "Summary v1"
    assert saved.updated_at == NOW


def test_resolve_prefers_request_then_saved_then_default(service):
    service.update(USER, AnalysisPrompts(clinic_prompt="Saved clinic"))

    resolved = service.resolve(USER, AnalysisPrompts(summary_prompt="Request summary"))
    assert resolved.clinic_prompt == "Saved clinic"
    assert resolved.summary_prompt == "Request summary"

    other = service.resolve("doctor-2")
    assert other.clinic_prompt == settings.default_clinic_prompt
    assert other.summary_prompt == settings.default_summary_prompt


def test_save_failure_is_a_storage_failure(service, monkeypatch):
    def fail(prompt_settings):
        raise ConnectionError("settings table unreachable")

    monkeypatch.setattr(service.repository, "save_prompt_settings", fail)

    with pytest.raises(StorageFailure):
        service.update(USER, AnalysisPrompts(clinic_prompt="Clinic"))
