"""
Session repository: drafts, finalized sessions, the user/session link table and
per-user prompt settings.

The in-memory implementation keeps every multi-row operation all-or-nothing by
snapshotting the affected tables under the lock and restoring them if any step
fails.
"""

from contextlib import contextmanager
from datetime import datetime
from threading import RLock
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from clinic_scribe.core.errors import DraftConflictError, NotFoundError
from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.domain import Draft, DraftState, FinalizedSession, PromptSettings

logger = get_logger(__name__)


class SessionRepository(Protocol):
    def create_draft(self, draft: Draft) -> Draft: ...
    def get_draft(self, user_id: str, draft_id: str) -> Draft: ...
    def list_drafts(self, user_id: str) -> List[Draft]: ...
    def update_draft(self, draft: Draft, expected_state: DraftState) -> Draft: ...
    def delete_draft(self, user_id: str, draft_id: str) -> None: ...
    def delete_drafts_created_before(self, user_id: str, cutoff: datetime) -> List[str]: ...
    def closed_draft_state(self, user_id: str, draft_id: str) -> Optional[DraftState]: ...
    def finalize_draft(
        self, session: FinalizedSession, draft_id: Optional[str], expected_state: Optional[DraftState]
    ) -> FinalizedSession: ...
    def get_session(self, user_id: str, session_id: str) -> FinalizedSession: ...
    def list_sessions(self, user_id: str) -> List[FinalizedSession]: ...
    def update_session(self, session: FinalizedSession) -> FinalizedSession: ...
    def delete_session(self, user_id: str, session_id: str) -> None: ...
    def get_prompt_settings(self, user_id: str) -> Optional[PromptSettings]: ...
    def save_prompt_settings(self, prompt_settings: PromptSettings) -> PromptSettings: ...


class InMemorySessionRepository:
    def __init__(self):
        self._lock = RLock()
        self._drafts: Dict[str, Draft] = {}
        self._sessions: Dict[str, FinalizedSession] = {}
        self._user_sessions: Dict[str, List[str]] = {}
        # Finalized or discarded drafts: id -> (owner, terminal state)
        self._closed_drafts: Dict[str, Tuple[str, DraftState]] = {}
        self._prompt_settings: Dict[str, PromptSettings] = {}

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            drafts = dict(self._drafts)
            sessions = dict(self._sessions)
            user_sessions = {user: list(ids) for user, ids in self._user_sessions.items()}
            closed_drafts = dict(self._closed_drafts)
            try:
                yield
            except Exception:
                self._drafts = drafts
                self._sessions = sessions
                self._user_sessions = user_sessions
                self._closed_drafts = closed_drafts
                logger.warning("Repository transaction rolled back")
                raise

    # --- Drafts ---

    def create_draft(self, draft: Draft) -> Draft:
        with self._lock:
            self._drafts[draft.id] = draft
        return draft

    def _owned_draft(self, user_id: str, draft_id: str) -> Draft:
        draft = self._drafts.get(draft_id)
        if draft is None or draft.user_id != user_id:
            raise NotFoundError(f"Draft {draft_id} not found")
        return draft

    def get_draft(self, user_id: str, draft_id: str) -> Draft:
        with self._lock:
            return self._owned_draft(user_id, draft_id)

    def list_drafts(self, user_id: str) -> List[Draft]:
        with self._lock:
            drafts = [d for d in self._drafts.values() if d.user_id == user_id]
        return sorted(drafts, key=lambda d: d.created_at, reverse=True)

    def update_draft(self, draft: Draft, expected_state: DraftState) -> Draft:
        """Replaces the stored draft if it is still in ``expected_state``."""
        with self._lock:
            stored = self._owned_draft(draft.user_id, draft.id)
            if stored.state != expected_state:
                raise DraftConflictError(draft.id, stored.state.value, f"move to {draft.state.value}")
            self._drafts[draft.id] = draft
        return draft

    def delete_draft(self, user_id: str, draft_id: str) -> None:
        with self._lock:
            self._owned_draft(user_id, draft_id)
            del self._drafts[draft_id]
            self._closed_drafts[draft_id] = (user_id, DraftState.DISCARDED)

    def delete_drafts_created_before(self, user_id: str, cutoff: datetime) -> List[str]:
        with self._lock:
            stale = [
                d.id for d in self._drafts.values()
                if d.user_id == user_id and d.created_at < cutoff
            ]
            for draft_id in stale:
                del self._drafts[draft_id]
                self._closed_drafts[draft_id] = (user_id, DraftState.DISCARDED)
        return stale

    def closed_draft_state(self, user_id: str, draft_id: str) -> Optional[DraftState]:
        """Terminal state of a draft that was finalized or discarded, None if it never closed."""
        with self._lock:
            closed = self._closed_drafts.get(draft_id)
        if closed is None or closed[0] != user_id:
            return None
        return closed[1]

    # --- Sessions ---

    def finalize_draft(
        self,
        session: FinalizedSession,
        draft_id: Optional[str] = None,
        expected_state: Optional[DraftState] = DraftState.FINALIZING,
    ) -> FinalizedSession:
        """
        Creates the session, links it to its user and deletes the source draft
        as one unit.
        """
        with self._transaction():
            if draft_id is not None:
                draft = self._owned_draft(session.user_id, draft_id)
                if expected_state is not None and draft.state != expected_state:
                    raise DraftConflictError(draft_id, draft.state.value, "finalize")
            self._insert_session(session)
            self._link_session(session.user_id, session.id)
            if draft_id is not None:
                self._delete_draft_row(draft_id)
        return session

    def _insert_session(self, session: FinalizedSession) -> None:
        self._sessions[session.id] = session

    def _link_session(self, user_id: str, session_id: str) -> None:
        self._user_sessions.setdefault(user_id, []).append(session_id)

    def _delete_draft_row(self, draft_id: str) -> None:
        draft = self._drafts.pop(draft_id)
        self._closed_drafts[draft_id] = (draft.user_id, DraftState.FINALIZED)

    def _owned_session(self, user_id: str, session_id: str) -> FinalizedSession:
        if session_id not in self._user_sessions.get(user_id, []):
            raise NotFoundError(f"Session {session_id} not found")
        return self._sessions[session_id]

    def get_session(self, user_id: str, session_id: str) -> FinalizedSession:
        with self._lock:
            return self._owned_session(user_id, session_id)

    def list_sessions(self, user_id: str) -> List[FinalizedSession]:
        with self._lock:
            sessions = [self._sessions[sid] for sid in self._user_sessions.get(user_id, [])]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def update_session(self, session: FinalizedSession) -> FinalizedSession:
        with self._transaction():
            self._owned_session(session.user_id, session.id)
            self._sessions[session.id] = session
        return session

    def delete_session(self, user_id: str, session_id: str) -> None:
        with self._transaction():
            self._owned_session(user_id, session_id)
            self._user_sessions[user_id].remove(session_id)
            del self._sessions[session_id]

    # --- Prompt settings ---

    def get_prompt_settings(self, user_id: str) -> Optional[PromptSettings]:
        with self._lock:
            return self._prompt_settings.get(user_id)

    def save_prompt_settings(self, prompt_settings: PromptSettings) -> PromptSettings:
        with self._lock:
            self._prompt_settings[prompt_settings.user_id] = prompt_settings
        return prompt_settings
