import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

Speaker = Literal["agent", "student"]


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: Speaker
    text: str
    timestamp: float
    stage_index: int = 0
    item_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "timestamp": self.timestamp,
            "stage_index": self.stage_index,
            "item_id": self.item_id,
        }


class TranscriptLedger:
    """
    Append-only log of finalized utterances for the whole lesson.

    Order is arrival order of finalized events, which is not always dialogue
    order: a student's transcription can finalize after the agent's next turn
    has already started. Duplicate suppression happens upstream in the router.
    """

    def __init__(self, on_append: Callable[[TranscriptEntry], None] | None = None):
        self._entries: list[TranscriptEntry] = []
        self._on_append = on_append

    def append(
        self,
        speaker: Speaker,
        text: str,
        timestamp: float | None = None,
        stage_index: int = 0,
        item_id: str | None = None,
    ) -> TranscriptEntry | None:
        text = text.strip()
        if not text:
            return None
        entry = TranscriptEntry(
            speaker=speaker,
            text=text,
            timestamp=time.time() if timestamp is None else timestamp,
            stage_index=stage_index,
            item_id=item_id,
        )
        self._entries.append(entry)
        logger.info("[Transcript] %s: %s", speaker, text[:120])
        if self._on_append:
            self._on_append(entry)
        return entry

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(list(self._entries))
