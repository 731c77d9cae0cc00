"""
Speaker-segmented transcript formatting.

Turns the provider's ordered, speaker tagged word list into
``Speaker <id>: <speech>`` blocks separated by a blank line.
Pure functions, no I/O.
"""

from typing import List, Optional, Sequence

from clinic_scribe.models.domain import ProviderWord, SpeakerSegment

SPACING_TOKEN = "spacing"
SEGMENT_SEPARATOR = "\n\n"


def segment_words(words: Sequence[ProviderWord]) -> List[SpeakerSegment]:
    """Groups consecutive same-speaker tokens into segments, in temporal order."""
    segments: List[SpeakerSegment] = []
    current_speaker: Optional[str] = None
    current_speech = ""

    for word in words:
        if word.token_type == SPACING_TOKEN:
            continue

        speaker = word.speaker_id or ""
        if current_speaker is None or speaker != current_speaker:
            if current_speaker is not None and current_speech.strip():
                segments.append(SpeakerSegment(speaker_id=current_speaker, speech=current_speech.strip()))
            current_speaker = speaker
            current_speech = word.text
        else:
            if current_speech:
                current_speech += " "
            current_speech += word.text

    if current_speaker is not None and current_speech.strip():
        segments.append(SpeakerSegment(speaker_id=current_speaker, speech=current_speech.strip()))

    return segments


def format_transcript(words: Sequence[ProviderWord]) -> str:
    return SEGMENT_SEPARATOR.join(
        f"Speaker {segment.speaker_id}: {segment.speech}" for segment in segment_words(words)
    )


def spoken_duration_minutes(words: Sequence[ProviderWord]) -> Optional[float]:
    """
    Audio duration reported by the provider, taken from the end timestamp of the
    last token. Returns None when the provider gave no timing information.
    """
    if not words:
        return None
    end_seconds = words[-1].end_seconds
    if end_seconds is None:
        return None
    return max(end_seconds, 0.0) / 60.0
