import os

# Settings are read at import time
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "development")

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from clinic_scribe.core.dependencies import build_services
from clinic_scribe.main import create_app
from clinic_scribe.models.domain import ProviderWord
from clinic_scribe.models.responses import AnalysisResult
from clinic_scribe.storage.blob_store import LocalBlobStore

USER_ID = "doctor-1"
OTHER_USER_ID = "doctor-2"

# EBML header followed by padding: a webm mutagen cannot decode, so the
# size heuristic applies (4 KiB is roughly 0.004 minutes)
WEBM_AUDIO = b"\x1a\x45\xdf\xa3" + b"\x00" * 4092
MP3_CONTINUATION = b"\xff\xfb\x90\x00" + b"\x01" * 2044


def words(*items, end_seconds: Optional[float] = None) -> List[ProviderWord]:
    """words(("A", "hello"), ("B", "hi")) -> ProviderWord list"""
    result = [ProviderWord(text=text, speaker_id=speaker) for speaker, text in items]
    if end_seconds is not None and result:
        result[-1] = result[-1].model_copy(update={"end_seconds": end_seconds})
    return result


class TickingClock:
    """Advances one second per call so blob paths never collide."""

    def __init__(self, start: datetime = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeSTT:
    def __init__(self, result: Optional[List[ProviderWord]] = None, error: Optional[Exception] = None):
        self.result = result if result is not None else words(
            ("A", "How"), ("A", "are"), ("A", "you?"), ("B", "Headache"), ("B", "since"), ("B", "Monday."),
            end_seconds=90.0,
        )
        self.error = error
        self.calls = []

    async def transcribe(self, audio: bytes, language: Optional[str] = None) -> List[ProviderWord]:
        self.calls.append((audio, language))
        if self.error is not None:
            raise self.error
        return list(self.result)


class FakeAnalysis:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    async def analyze(self, transcript: str, clinic_prompt: str, summary_prompt: str) -> AnalysisResult:
        self.calls.append((transcript, clinic_prompt, summary_prompt))
        if self.error is not None:
            raise self.error
        return AnalysisResult(
            summary="Headache for three days.",
            suggested_diagnosis="Tension headache",
            suggested_prescription="Paracetamol 500mg",
        )


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def stt():
    return FakeSTT()


@pytest.fixture
def analysis():
    return FakeAnalysis()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", "http://testserver/blobs")


@pytest.fixture
def services(stt, analysis, blob_store, clock):
    return build_services(stt_provider=stt, analysis_service=analysis, blob_store=blob_store, clock=clock)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        test_client.headers.update({"X-User-ID": USER_ID})
        yield test_client
