"""
Audio validation, duration estimation and continuation assembly
"""

import io
import os
from typing import Optional
from mutagen import File as MutagenFile
from clinic_scribe.config import settings
from clinic_scribe.core.errors import ValidationFailure
from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.domain import AudioArtifact

logger = get_logger(__name__)

GENERIC_CONTENT_TYPE = "application/octet-stream"


class AudioProcessor:
    """Audio validation and processing"""

    def __init__(
        self,
        continuation_content_type: str = None,
        bytes_per_estimated_minute: int = None,
    ):
        self.continuation_content_type = continuation_content_type or settings.continuation_content_type
        self.bytes_per_estimated_minute = bytes_per_estimated_minute or settings.bytes_per_estimated_minute

    def validate(self, audio_data: bytes, content_type: Optional[str]) -> str:
        """
        Checks that an uploaded recording is non-empty and of a supported type.
        Returns the effective content type, sniffed when the client sent none
        or only the generic application/octet-stream.
        """
        if not audio_data:
            raise ValidationFailure("No audio data received.")

        effective_type = content_type
        if not effective_type or effective_type.split(";")[0].strip().lower() == GENERIC_CONTENT_TYPE:
            effective_type = self.detect_content_type(audio_data)
        # Browsers append codec parameters, e.g. "audio/webm;codecs=opus"
        base_type = effective_type.split(";")[0].strip().lower()
        if base_type not in settings.supported_audio_formats:
            logger.warning(
                f"Unsupported audio format: {effective_type}. Supported: {settings.supported_audio_formats}"
            )
            raise ValidationFailure(
                f"Unsupported audio format: {effective_type}.",
                details={"supported": settings.supported_audio_formats},
            )
        logger.info(f"Received {len(audio_data)} bytes of {base_type} audio.")
        return base_type

    def combine(self, original: bytes, continuation: bytes) -> AudioArtifact:
        """
        Appends a continuation recording to the original one.

        This is plain byte concatenation, not a re-mux: the result only plays back
        correctly for containers that tolerate concatenated streams (MPEG audio
        frames do, most others do not).
        """
        combined = bytes(original) + bytes(continuation)
        logger.info(
            "Combined audio recordings",
            original_bytes=len(original),
            continuation_bytes=len(continuation),
            combined_bytes=len(combined),
        )
        return AudioArtifact(data=combined, content_type=self.continuation_content_type)

    def estimate_duration_minutes(self, audio_data: bytes) -> float:
        """
        Best-effort duration of a recording in minutes.
        Uses the decoded duration when mutagen understands the container, otherwise
        falls back to a size heuristic (about one minute per MB of voice audio).
        """
        duration_seconds = self._extract_duration(audio_data)
        if duration_seconds:
            return duration_seconds / 60.0
        estimate = len(audio_data) / float(self.bytes_per_estimated_minute)
        logger.info(f"Falling back to size-based duration estimate: {estimate:.2f} minutes")
        return estimate

    def _extract_duration(self, audio_data: bytes) -> float:
        """Extracts the duration in seconds using mutagen, 0.0 if unknown."""
        try:
            audio = MutagenFile(io.BytesIO(audio_data))
            if audio is None or audio.info is None:
                return 0.0
            return float(getattr(audio.info, "length", 0.0) or 0.0)
        except Exception as e:
            logger.warning(f"Could not extract duration using mutagen: {e}")
            return 0.0

    @staticmethod
    def extension_for(content_type: str) -> str:
        """Maps content type to file extension."""
        return {
            "audio/mpeg": ".mp3",
            "audio/mp3": ".mp3",
            "audio/wav": ".wav",
            "audio/mp4": ".mp4",
            "audio/m4a": ".m4a",
            "audio/ogg": ".ogg",
            "audio/webm": ".webm",
        }.get(content_type.split(";")[0].strip().lower(), ".bin")

    @staticmethod
    def detect_content_type(audio_data: bytes, filename: Optional[str] = None) -> str:
        """Detects Content-Type based on file signature or filename."""
        # MP4/M4A carry 'ftyp' a few bytes in
        if b'ftyp' in audio_data[4:12]:
            return "audio/mp4"

        signatures = {
            b'ID3': "audio/mpeg",      # MP3 with ID3 Tag
            b'\xff\xfb': "audio/mpeg",  # MP3 frame
            b'\xff\xf3': "audio/mpeg",  # MP3 frame
            b'\xff\xf2': "audio/mpeg",  # MP3 frame
            b'RIFF': "audio/wav",      # WAV
            b'OggS': "audio/ogg",      # OGG
            b'\x1a\x45\xdf\xa3': "audio/webm",  # EBML (WebM/Matroska)
        }

        for signature, detected_type in signatures.items():
            if audio_data.startswith(signature):
                return detected_type

        if filename:
            ext_map = {
                '.mp3': 'audio/mpeg',
                '.wav': 'audio/wav',
                '.m4a': 'audio/mp4',
                '.mp4': 'audio/mp4',
                '.ogg': 'audio/ogg',
                '.webm': 'audio/webm',
            }
            _, ext = os.path.splitext(filename)
            if ext.lower() in ext_map:
                return ext_map[ext.lower()]

        logger.warning("Could not detect specific audio type. Falling back to 'application/octet-stream'.")
        return "application/octet-stream"
