from datetime import datetime, timedelta, timezone

import pytest

from clinic_scribe.core.errors import DraftConflictError, NotFoundError
from clinic_scribe.models.domain import Draft, DraftState, FinalizedSession, PromptSettings
from clinic_scribe.storage.repository import InMemorySessionRepository

T0 = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)


def make_draft(draft_id="d1", user_id="doctor-1", state=DraftState.FINALIZING, created_at=T0) -> Draft:
    return Draft(
        id=draft_id,
        user_id=user_id,
        audio_path=f"drafts/{user_id}/{draft_id}.webm",
        audio_url=f"http://testserver/blobs/drafts/{user_id}/{draft_id}.webm",
        audio_content_type="audio/webm",
        state=state,
        created_at=created_at,
        updated_at=created_at,
    )


def make_session(session_id="s1", user_id="doctor-1", created_at=T0) -> FinalizedSession:
    return FinalizedSession(
        id=session_id,
        user_id=user_id,
        patient_name="Jane Doe",
        patient_age="42",
        final_diagnosis="Tension headache",
        final_prescription="Paracetamol",
        document_path=f"documents/{user_id}/Jane_Doe_1.html",
        document_url=f"http://testserver/blobs/documents/{user_id}/Jane_Doe_1.html",
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
def repo():
    return InMemorySessionRepository()


def test_drafts_are_scoped_to_their_owner(repo):
    repo.create_draft(make_draft())

    with pytest.raises(NotFoundError):
        repo.get_draft("doctor-2", "d1")
    assert repo.list_drafts("doctor-2") == []


def test_update_with_stale_state_conflicts(repo):
    draft = repo.create_draft(make_draft(state=DraftState.REVIEWING))
    repo.update_draft(draft.model_copy(update={"state": DraftState.FINALIZING}), expected_state=DraftState.REVIEWING)

    with pytest.raises(DraftConflictError):
        repo.update_draft(draft.model_copy(update={"transcript": "late"}), expected_state=DraftState.REVIEWING)
    assert repo.get_draft("doctor-1", "d1").transcript is None


def test_finalize_creates_session_and_deletes_draft(repo):
    repo.create_draft(make_draft())

    repo.finalize_draft(make_session(), "d1")

    assert repo.get_session("doctor-1", "s1").patient_name == "Jane Doe"
    with pytest.raises(NotFoundError):
        repo.get_draft("doctor-1", "d1")
    assert repo.closed_draft_state("doctor-1", "d1") == DraftState.FINALIZED
    assert repo.closed_draft_state("doctor-2", "d1") is None


def test_failed_finalize_leaves_no_partial_state(repo, monkeypatch):
    repo.create_draft(make_draft())

    def fail(draft_id):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repo, "_delete_draft_row", fail)

    with pytest.raises(RuntimeError):
        repo.finalize_draft(make_session(), "d1")

    assert repo.list_sessions("doctor-1") == []
    with pytest.raises(NotFoundError):
        repo.get_session("doctor-1", "s1")
    assert repo.get_draft("doctor-1", "d1").state == DraftState.FINALIZING
    assert repo.closed_draft_state("doctor-1", "d1") is None


def test_finalize_requires_expected_state(repo):
    repo.create_draft(make_draft(state=DraftState.REVIEWING))

    with pytest.raises(DraftConflictError):
        repo.finalize_draft(make_session(), "d1")
    assert repo.list_sessions("doctor-1") == []


def test_lists_are_newest_first(repo):
    repo.create_draft(make_draft("old", created_at=T0))
    repo.create_draft(make_draft("new", created_at=T0 + timedelta(minutes=5)))
    repo.finalize_draft(make_session("s-old", created_at=T0), None, None)
    repo.finalize_draft(make_session("s-new", created_at=T0 + timedelta(minutes=5)), None, None)

    assert [d.id for d in repo.list_drafts("doctor-1")] == ["new", "old"]
    assert [s.id for s in repo.list_sessions("doctor-1")] == ["s-new", "s-old"]


def test_delete_drafts_created_before(repo):
    repo.create_draft(make_draft("stale", created_at=T0 - timedelta(hours=30)))
    repo.create_draft(make_draft("fresh", created_at=T0))
    repo.create_draft(make_draft("other", user_id="doctor-2", created_at=T0 - timedelta(hours=30)))

    deleted = repo.delete_drafts_created_before("doctor-1", T0 - timedelta(hours=24))

    assert deleted == ["stale"]
    assert [d.id for d in repo.list_drafts("doctor-1")] == ["fresh"]
    assert [d.id for d in repo.list_drafts("doctor-2")] == ["other"]
    assert repo.closed_draft_state("doctor-1", "stale") == DraftState.DISCARDED
    assert repo.closed_draft_state("doctor-1", "fresh") is None


def test_delete_session_unlinks_it(repo):
    repo.finalize_draft(make_session(), None, None)

    repo.delete_session("doctor-1", "s1")

    assert repo.list_sessions("doctor-1") == []
    with pytest.raises(NotFoundError):
        repo.delete_session("doctor-1", "s1")


def test_deleted_draft_is_remembered_as_discarded(repo):
    repo.create_draft(make_draft(state=DraftState.RECORDING))

    repo.delete_draft("doctor-1", "d1")

    with pytest.raises(NotFoundError):
        repo.get_draft("doctor-1", "d1")
    assert repo.closed_draft_state("doctor-1", "d1") == DraftState.DISCARDED
    assert repo.closed_draft_state("doctor-1", "never-existed") is None


def test_prompt_settings_are_per_user(repo):
    assert repo.get_prompt_settings("doctor-1") is None

    repo.save_prompt_settings(
        PromptSettings(user_id="doctor-1", clinic_prompt="Clinic.", summary_prompt="Summary.", updated_at=T0)
    )

    assert repo.get_prompt_settings("doctor-1").clinic_prompt == "Clinic."
    assert repo.get_prompt_settings("doctor-2") is None
