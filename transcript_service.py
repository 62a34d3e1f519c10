import time
from typing import Iterable, List, Optional

from models import TranscriptItem

SPEAKER_LABELS = {
    "user": "Candidate",
    "assistant": "Interviewer",
}


def conversation_items(items: Iterable[TranscriptItem]) -> List[TranscriptItem]:
    """Spoken turns only, in the order they were said."""
    kept = [
        item for item in items
        if item.role in SPEAKER_LABELS and not item.hidden and item.text.strip()
    ]
    return sorted(kept, key=lambda item: item.created_at_ms)


def format_transcript(items: Iterable[TranscriptItem]) -> str:
    """
    Render voice-channel items as a plain text transcript.

    Args:
        items: Items from the voice channel, in any order

    Returns:
        One "Candidate: ..." / "Interviewer: ..." line per spoken turn
    """
    lines = [
        f"{SPEAKER_LABELS[item.role]}: {item.text.strip()}"
        for item in conversation_items(items)
    ]
    return "\n".join(lines)


def format_duration(items: Iterable[TranscriptItem], now_ms: Optional[int] = None) -> str:
    """Conversation length as "Xm Ys", measured from the first item."""
    items = list(items)
    end_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    start_ms = min((item.created_at_ms for item in items if item.created_at_ms), default=end_ms)
    duration_ms = max(0, end_ms - start_ms)
    minutes, seconds = divmod(duration_ms // 1000, 60)
    return f"{minutes}m {seconds}s"
