import asyncio
from datetime import timedelta

import pytest

from clinic_scribe.config import settings
from clinic_scribe.core.errors import (
    AnalysisFailure,
    DraftConflictError,
    NotFoundError,
    ProviderFailure,
    QuotaExceededError,
    StorageFailure,
    ValidationFailure,
)
from clinic_scribe.models.domain import DraftState
from clinic_scribe.models.requests import AnalysisPrompts, FinalizeForm, TranscribeRequest
from tests.conftest import MP3_CONTINUATION, OTHER_USER_ID, USER_ID, WEBM_AUDIO

FORM = FinalizeForm(
    patient_name="Jane Doe",
    patient_age="42",
    final_diagnosis="Tension headache",
    final_prescription="Paracetamol 500mg",
)


def run(coro):
    return asyncio.run(coro)


def new_draft(services, state=DraftState.EDITING):
    draft = run(services.drafts.create_draft(USER_ID, WEBM_AUDIO, "audio/webm;codecs=opus"))
    if state == DraftState.REVIEWING:
        draft = services.drafts.review_existing_audio(USER_ID, draft.id)
    elif state == DraftState.FINALIZING:
        draft = services.drafts.skip_to_finalizing(USER_ID, draft.id)
    elif state == DraftState.RECORDING:
        draft = services.drafts.start_recording(USER_ID, draft.id)
    return draft


def usage_minutes(services):
    records = services.ledger.monthly_usage(USER_ID)
    return records[0].minutes_used if records else 0.0


def test_create_draft_stores_audio(services, blob_store):
    draft = new_draft(services)

    assert draft.state == DraftState.EDITING
    assert draft.audio_content_type == "audio/webm"
    assert draft.audio_path.startswith(f"drafts/{USER_ID}/{draft.id}_")
    assert draft.audio_path.endswith(".webm")
    assert run(blob_store.get(draft.audio_path)) == WEBM_AUDIO


def test_full_flow_record_continue_transcribe_finalize(services, blob_store, stt, analysis):
    draft = new_draft(services, DraftState.RECORDING)

    draft = run(services.drafts.append_recording(USER_ID, draft.id, MP3_CONTINUATION, "audio/mpeg"))
    assert draft.state == DraftState.REVIEWING
    assert draft.audio_path.endswith("_final.mp3")
    assert draft.audio_content_type == "audio/mpeg"
    assert run(blob_store.get(draft.audio_path)) == WEBM_AUDIO + MP3_CONTINUATION

    result = run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest(language="en")))
    assert result.draft.state == DraftState.FINALIZING
    assert result.transcript == "Speaker A: How are you?\n\nSpeaker B: Headache since Monday."
    assert result.minutes_charged == 1.5
    assert result.draft.suggested_diagnosis == "Tension headache"
    assert stt.calls[0] == (WEBM_AUDIO + MP3_CONTINUATION, "en")
    assert usage_minutes(services) == 1.5

    session = run(services.drafts.finalize(USER_ID, draft.id, FORM))
    assert session.transcript == result.transcript
    assert session.summary == "Headache for three days."
    assert session.suggested_prescription == "Paracetamol 500mg"
    assert session.document_path.startswith(f"documents/{USER_ID}/Jane_Doe_")
    assert b"Tension headache" in run(blob_store.get(session.document_path))
    with pytest.raises(NotFoundError):
        services.drafts.get_draft(USER_ID, draft.id)


def test_auto_language_is_sent_as_detection(services, stt):
    draft = new_draft(services, DraftState.REVIEWING)
    run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest(language="auto")))
    assert stt.calls[0][1] is None


def test_unsupported_language_is_rejected(services, stt):
    draft = new_draft(services, DraftState.REVIEWING)
    with pytest.raises(ValidationFailure):
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest(language="xx")))
    assert stt.calls == []


def test_quota_denial_keeps_draft_reviewing(services, stt):
    services.ledger.commit_usage(USER_ID, 120.0)
    draft = new_draft(services, DraftState.REVIEWING)

    with pytest.raises(QuotaExceededError):
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))

    assert stt.calls == []
    assert services.drafts.get_draft(USER_ID, draft.id).state == DraftState.REVIEWING


def test_provider_failure_releases_reservation(services, stt):
    stt.error = ProviderFailure("provider down")
    draft = new_draft(services, DraftState.REVIEWING)

    with pytest.raises(ProviderFailure):
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))

    record = services.usage_store.list_for_user(USER_ID)[0]
    assert record.minutes_used == 0.0
    assert record.minutes_reserved == 0.0
    assert services.drafts.get_draft(USER_ID, draft.id).state == DraftState.REVIEWING


def test_unexpected_provider_error_is_wrapped(services, stt):
    stt.error = ConnectionResetError("reset")
    draft = new_draft(services, DraftState.REVIEWING)

    with pytest.raises(ProviderFailure):
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))


def test_cancelled_transcription_releases_reservation(services, stt):
    draft = new_draft(services, DraftState.REVIEWING)

    async def cancel_mid_call():
        started = asyncio.Event()

        async def hang(audio, language=None):
            started.set()
            await asyncio.sleep(3600)

        stt.transcribe = hang
        task = asyncio.create_task(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))
        await started.wait()
        assert services.usage_store.list_for_user(USER_ID)[0].minutes_reserved > 0
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(cancel_mid_call())

    record = services.usage_store.list_for_user(USER_ID)[0]
    assert record.minutes_reserved == 0.0
    assert record.minutes_used == 0.0
    assert services.drafts.get_draft(USER_ID, draft.id).state == DraftState.REVIEWING


def test_saved_prompts_fill_in_for_omitted_ones(services, analysis):
    services.prompt_settings.update(
        USER_ID, AnalysisPrompts(clinic_prompt="Use local formulary.", summary_prompt="Two sentences.")
    )
    draft = new_draft(services, DraftState.REVIEWING)

    run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest(summary_prompt="One sentence.")))

    assert analysis.calls[-1][1:] == ("Use local formulary.", "One sentence.")


def test_default_prompts_without_saved_settings(services, analysis):
    draft = new_draft(services, DraftState.REVIEWING)

    run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))

    assert analysis.calls[-1][1:] == (settings.default_clinic_prompt, settings.default_summary_prompt)


def test_analysis_failure_keeps_transcript_and_usage(services, analysis):
    analysis.error = RuntimeError("llm timeout")
    draft = new_draft(services, DraftState.REVIEWING)

    with pytest.raises(AnalysisFailure):
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))

    stored = services.drafts.get_draft(USER_ID, draft.id)
    assert stored.state == DraftState.REVIEWING
    assert stored.transcript.startswith("Speaker A:")
    assert usage_minutes(services) == 1.5

    analysis.error = None
    result = run(services.drafts.analyze(USER_ID, draft.id, AnalysisPrompts(summary_prompt="Be brief.")))
    assert result.draft.state == DraftState.FINALIZING
    assert result.minutes_charged == 0.0
    assert analysis.calls[-1][2] == "Be brief."
    assert usage_minutes(services) == 1.5


def test_analyze_requires_transcript(services):
    draft = new_draft(services, DraftState.REVIEWING)
    with pytest.raises(ValidationFailure):
        run(services.drafts.analyze(USER_ID, draft.id, AnalysisPrompts()))


def test_result_for_deleted_draft_is_discarded(services, stt):
    draft = new_draft(services, DraftState.REVIEWING)
    original = stt.transcribe

    async def delete_then_transcribe(audio, language=None):
        services.drafts.discard(USER_ID, draft.id)
        return await original(audio, language)

    stt.transcribe = delete_then_transcribe

    with pytest.raises(DraftConflictError) as exc_info:
        run(services.drafts.transcribe(USER_ID, draft.id, TranscribeRequest()))
    assert exc_info.value.current_state == "discarded"
    assert services.drafts.list_drafts(USER_ID) == []
    # Provider minutes were still spent
    assert usage_minutes(services) == 1.5


def test_finalized_draft_rejects_recording(services):
    draft = new_draft(services, DraftState.FINALIZING)
    run(services.drafts.finalize(USER_ID, draft.id, FORM))

    with pytest.raises(DraftConflictError) as exc_info:
        services.drafts.start_recording(USER_ID, draft.id)
    assert exc_info.value.current_state == "finalized"
    with pytest.raises(DraftConflictError):
        services.drafts.rename_draft(USER_ID, draft.id, "Too late")
    # Reads still report the draft as gone
    with pytest.raises(NotFoundError):
        services.drafts.get_draft(USER_ID, draft.id)


def test_discarded_draft_rejects_append(services):
    draft = new_draft(services, DraftState.RECORDING)
    services.drafts.discard(USER_ID, draft.id)

    with pytest.raises(DraftConflictError) as exc_info:
        run(services.drafts.append_recording(USER_ID, draft.id, MP3_CONTINUATION, "audio/mpeg"))
    assert exc_info.value.current_state == "discarded"
    with pytest.raises(DraftConflictError):
        services.drafts.discard(USER_ID, draft.id)


def test_closed_draft_of_another_user_is_not_found(services):
    draft = new_draft(services)
    services.drafts.discard(USER_ID, draft.id)

    with pytest.raises(NotFoundError):
        services.drafts.start_recording(OTHER_USER_ID, draft.id)
    with pytest.raises(NotFoundError):
        services.drafts.start_recording(USER_ID, "missing")


def test_wrong_state_actions_conflict(services):
    draft = new_draft(services, DraftState.REVIEWING)

    with pytest.raises(DraftConflictError):
        services.drafts.start_recording(USER_ID, draft.id)
    with pytest.raises(DraftConflictError):
        run(services.drafts.append_recording(USER_ID, draft.id, MP3_CONTINUATION))
    with pytest.raises(DraftConflictError):
        run(services.drafts.finalize(USER_ID, draft.id, FORM))


def test_skip_goes_to_finalizing_without_working_fields(services):
    draft = new_draft(services, DraftState.FINALIZING)

    assert draft.transcript is None
    session = run(services.drafts.finalize(USER_ID, draft.id, FORM))
    assert session.transcript == ""
    assert session.suggested_diagnosis == ""


def test_finalize_validation_failure_keeps_draft(services):
    draft = new_draft(services, DraftState.FINALIZING)

    with pytest.raises(ValidationFailure) as exc_info:
        run(services.drafts.finalize(USER_ID, draft.id, FinalizeForm(patient_name="Jane Doe")))

    assert exc_info.value.details["missing"] == ["patient_age", "final_diagnosis", "final_prescription"]
    assert services.drafts.get_draft(USER_ID, draft.id).state == DraftState.FINALIZING


def test_finalize_commit_failure_keeps_draft(services, monkeypatch):
    draft = new_draft(services, DraftState.FINALIZING)

    def fail(draft_id):
        raise RuntimeError("write failed")

    monkeypatch.setattr(services.repository, "_delete_draft_row", fail)

    with pytest.raises(StorageFailure):
        run(services.drafts.finalize(USER_ID, draft.id, FORM))

    assert services.sessions.list_sessions(USER_ID) == []
    assert services.drafts.get_draft(USER_ID, draft.id).state == DraftState.FINALIZING


def test_rename_and_discard(services):
    draft = new_draft(services)

    renamed = services.drafts.rename_draft(USER_ID, draft.id, "Follow-up visit")
    assert renamed.title == "Follow-up visit"
    assert renamed.state == DraftState.EDITING

    services.drafts.discard(USER_ID, draft.id)
    with pytest.raises(NotFoundError):
        services.drafts.get_draft(USER_ID, draft.id)


def test_sweep_deletes_only_old_drafts(services, clock):
    old = new_draft(services)
    clock.advance(hours=25)
    fresh = new_draft(services)

    deleted = services.drafts.sweep_stale_drafts(USER_ID)

    assert deleted == [old.id]
    assert [d.id for d in services.drafts.list_drafts(USER_ID)] == [fresh.id]


def test_sweep_with_zero_hours_deletes_everything(services, clock):
    new_draft(services)
    clock.advance(seconds=5)
    assert len(services.drafts.sweep_stale_drafts(USER_ID, older_than_hours=0)) == 1
