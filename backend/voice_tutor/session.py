import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class StageState(str, Enum):
    IDLE = "idle"
    AWAITING_SESSION = "awaiting_session"
    VOICE_ACTIVE = "voice_active"
    STAGE_COMPLETE = "stage_complete"
    LESSON_COMPLETE = "lesson_complete"


@dataclass(frozen=True)
class SessionState:
    """
    Everything scoped to one stage's live conversation.

    The orchestrator swaps in a whole new instance on every transition. An
    in-flight event holding the old one compares identities and never sees
    half-updated fields.
    """

    lesson_id: str
    stage_index: int
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stage_started_at: float = field(default_factory=time.time)
    transport: Any = None
    channel: Any = None
    subscription: Any = None

    @property
    def connected(self) -> bool:
        return self.transport is not None and self.channel is not None

    def with_connection(self, transport: Any, channel: Any, subscription: Any) -> "SessionState":
        return replace(self, transport=transport, channel=channel, subscription=subscription)

    @classmethod
    def fresh(cls, lesson_id: str, stage_index: int) -> "SessionState":
        return cls(lesson_id=lesson_id, stage_index=stage_index)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "lesson_id": self.lesson_id,
            "stage_index": self.stage_index,
            "stage_started_at": self.stage_started_at,
            "connected": self.connected,
        }
