from clinic_scribe.models.domain import ProviderWord, SpeakerSegment
from clinic_scribe.services.diarization import format_transcript, segment_words, spoken_duration_minutes
from tests.conftest import words


def spacing() -> ProviderWord:
    return ProviderWord(text=" ", speaker_id=None, token_type="spacing")


def test_single_speaker_is_one_segment():
    tokens = words(("A", "Good"), ("A", "morning"), ("A", "doctor."))
    assert format_transcript(tokens) == "Speaker A: Good morning doctor."


def test_speaker_changes_split_segments_in_order():
    tokens = [
        *words(("A", "Hello")), spacing(),
        *words(("A", "there")), spacing(),
        *words(("B", "Hi")), spacing(),
        *words(("B", "doctor")), spacing(),
        *words(("A", "Sit")),
    ]

    segments = segment_words(tokens)

    assert segments == [
        SpeakerSegment("A", "Hello there"),
        SpeakerSegment("B", "Hi doctor"),
        SpeakerSegment("A", "Sit"),
    ]
    assert format_transcript(tokens) == "Speaker A: Hello there\n\nSpeaker B: Hi doctor\n\nSpeaker A: Sit"


def test_empty_word_list_formats_to_empty_string():
    assert format_transcript([]) == ""
    assert segment_words([]) == []


def test_blank_segment_is_dropped_on_speaker_change():
    tokens = words(("A", " "), ("B", "Yes"))
    assert format_transcript(tokens) == "Speaker B: Yes"


def test_missing_speaker_id_is_its_own_speaker():
    tokens = words(("A", "One"), (None, "two"))
    assert format_transcript(tokens) == "Speaker A: One\n\nSpeaker : two"


def test_spoken_duration_uses_last_word_end():
    assert spoken_duration_minutes(words(("A", "a"), ("A", "b"), end_seconds=90.0)) == 1.5
    assert spoken_duration_minutes(words(("A", "a"))) is None
    assert spoken_duration_minutes([]) is None
