from models import TranscriptItem
from transcript_service import conversation_items, format_duration, format_transcript


def item(role, text, at_ms, hidden=False):
    return TranscriptItem(role=role, text=text, created_at_ms=at_ms, hidden=hidden)


def test_transcript_labels_speakers_in_order():
    items = [
        item("user", "I'd sort first.", 3000),
        item("assistant", "Walk me through your approach.", 1000),
        item("user", "  A hash map works too.  ", 5000),
    ]

    assert format_transcript(items) == (
        "Interviewer: Walk me through your approach.\n"
        "Candidate: I'd sort first.\n"
        "Candidate: A hash map works too."
    )


def test_non_conversation_items_are_dropped():
    items = [
        item("system", "You are an interviewer", 0),
        item("assistant", "[code snapshot]", 500, hidden=True),
        item("user", "   ", 700),
        item("user", "Done.", 900),
    ]

    assert [i.text for i in conversation_items(items)] == ["Done."]
    assert format_transcript(items) == "Candidate: Done."


def test_empty_transcript():
    assert format_transcript([]) == ""


def test_items_accept_client_field_names():
    parsed = TranscriptItem.model_validate({"role": "user", "text": "hi", "createdAtMs": 42, "isHidden": True})
    assert parsed.created_at_ms == 42
    assert parsed.hidden is True


def test_duration_from_first_item():
    items = [item("assistant", "Hello", 10_000), item("user", "Hi", 20_000)]
    assert format_duration(items, now_ms=10_000 + 754_000) == "12m 34s"


def test_duration_without_items_is_zero():
    assert format_duration([], now_ms=5_000) == "0m 0s"
