"""
Speech-to-Text Service
Uses AssemblyAI for transcription with speaker diarization.
"""

import asyncio
import io
from typing import List, Optional, Protocol
import assemblyai as aai

from clinic_scribe.config import settings
from clinic_scribe.core.errors import ProviderFailure
from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.domain import ProviderWord

logger = get_logger(__name__)

# Language hints are ISO 639-3; AssemblyAI takes ISO 639-1 where one exists
LANGUAGE_CODES = {
    "en": "en",
    "msa": "ms",
    "tam": "ta",
    "cmn": "zh",
    "hin": "hi",
    "jpn": "ja",
    "kor": "ko",
}


class SpeechToTextProvider(Protocol):
    async def transcribe(self, audio: bytes, language: Optional[str] = None) -> List[ProviderWord]:
        """Returns the ordered, speaker tagged word list for ``audio``."""
        ...


class STTService:
    """Service for Speech-to-Text transcription using AssemblyAI."""

    def __init__(self, api_key: str = None, base_url: str = None, timeout: int = None):
        self.api_key = api_key if api_key is not None else settings.assemblyai_api_key
        self.timeout = timeout or settings.stt_timeout
        # The SDK reads its credentials from module level settings
        aai.settings.api_key = self.api_key
        aai.settings.base_url = base_url or settings.assemblyai_api_base_url

    async def transcribe(self, audio: bytes, language: Optional[str] = None) -> List[ProviderWord]:
        """
        Transcribes audio with speaker labels. ``language`` of None or "auto"
        enables provider-side language detection.
        """
        if not self.api_key:
            raise ProviderFailure("Speech-to-text provider is not configured.")

        config_params = {"speaker_labels": True}
        if not language or language == "auto":
            config_params["language_detection"] = True
        else:
            config_params["language_code"] = LANGUAGE_CODES.get(language, language)

        transcriber = aai.Transcriber(config=aai.TranscriptionConfig(**config_params))
        logger.info(f"Starting transcription with AssemblyAI ({len(audio)} bytes, language={language or 'auto'})")

        try:
            transcript = await asyncio.wait_for(
                asyncio.to_thread(transcriber.transcribe, io.BytesIO(audio)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"AssemblyAI transcription timed out after {self.timeout}s")
            raise ProviderFailure("Transcription timed out.") from e
        except Exception as e:
            logger.error(f"Error during AssemblyAI transcription: {e}", exc_info=True)
            raise ProviderFailure("Transcription failed.") from e

        if transcript.status == aai.TranscriptStatus.error:
            logger.error(f"AssemblyAI transcription failed: {transcript.error}")
            raise ProviderFailure(f"Transcription failed: {transcript.error}")

        words = [
            ProviderWord(
                text=word.text,
                speaker_id=word.speaker,
                token_type="word",
                end_seconds=word.end / 1000.0 if word.end is not None else None,
            )
            for word in (transcript.words or [])
        ]
        logger.info(f"AssemblyAI transcription successful for ID {transcript.id}: {len(words)} words")

        await self.delete_transcript(transcript.id)
        return words

    async def delete_transcript(self, transcript_id: Optional[str]):
        """
        Deletes a transcript from AssemblyAI's servers once its words are copied.
        Failures are logged only.
        """
        if not transcript_id:
            return
        try:
            await asyncio.to_thread(aai.Transcript.delete_by_id, transcript_id)
            logger.info(f"Deleted AssemblyAI transcript ID: {transcript_id}")
        except Exception as e:
            logger.error(f"Failed to delete AssemblyAI transcript ID {transcript_id}: {e}", exc_info=True)
