"""
Decoding of realtime channel events into a closed set of variants.

Every inbound message becomes exactly one of the models below; anything the
router does not act on is an UnclassifiedEvent rather than falling through
string checks further down the pipeline.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from voice_tutor.errors import ProtocolError
from voice_tutor.transcript import Speaker

# Both the GA and the beta names of the realtime protocol are accepted.
AGENT_TRANSCRIPT_DONE = ("response.output_audio_transcript.done", "response.audio_transcript.done")
AGENT_TRANSCRIPT_DELTA = ("response.output_audio_transcript.delta", "response.audio_transcript.delta")

# Streamed every turn; their completed counterparts are what the router reads.
ROUTINE_EVENTS = frozenset({"response.function_call_arguments.delta"})

StrictText = Annotated[str, Field(strict=True)]


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class FunctionCallCompleted(_Event):
    type: Literal["response.function_call_arguments.done"] = "response.function_call_arguments.done"
    name: StrictText
    arguments: StrictText = "{}"
    call_id: Optional[StrictText] = None
    item_id: Optional[StrictText] = None

    @field_validator("arguments", mode="before")
    @classmethod
    def _empty_arguments(cls, value: Any) -> Any:
        return value or "{}"

    @property
    def event_id(self) -> str | None:
        return self.call_id or self.item_id


class TranscriptCompleted(_Event):
    type: Literal[
        "response.output_audio_transcript.done",
        "response.audio_transcript.done",
        "conversation.item.input_audio_transcription.completed",
    ]
    transcript: StrictText
    item_id: Optional[StrictText] = None

    @property
    def speaker(self) -> Speaker:
        return "agent" if self.type in AGENT_TRANSCRIPT_DONE else "student"


class TranscriptDelta(_Event):
    type: Literal[
        "response.output_audio_transcript.delta",
        "response.audio_transcript.delta",
        "conversation.item.input_audio_transcription.delta",
    ]
    delta: StrictText = ""
    item_id: Optional[StrictText] = None

    @property
    def speaker(self) -> Speaker:
        return "agent" if self.type in AGENT_TRANSCRIPT_DELTA else "student"


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: ErrorDetail = ErrorDetail()

    @property
    def kind(self) -> str:
        return self.error.type or "unknown"

    @property
    def message(self) -> str:
        return self.error.message or ""


class ConfigurationAcknowledged(_Event):
    type: Literal["session.created", "session.updated"]
    session: dict = Field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.type


class UnclassifiedEvent(_Event):
    type: str
    raw: dict = Field(default_factory=dict, exclude=True)

    @property
    def looks_like_drift(self) -> bool:
        """True when an unknown type is named like something the router handles."""
        if self.type in ROUTINE_EVENTS:
            return False
        lowered = self.type.lower()
        return "transcript" in lowered or "function_call" in lowered


KnownEvent = Annotated[
    Union[FunctionCallCompleted, TranscriptCompleted, TranscriptDelta, ErrorEvent, ConfigurationAcknowledged],
    Field(discriminator="type"),
]

ChannelEvent = Union[
    FunctionCallCompleted,
    TranscriptCompleted,
    TranscriptDelta,
    ErrorEvent,
    ConfigurationAcknowledged,
    UnclassifiedEvent,
]


class _Envelope(BaseModel):
    type: Annotated[str, StringConstraints(strict=True, min_length=1)]


_KNOWN_ADAPTER = TypeAdapter(KnownEvent)


def decode_event(message: Any) -> ChannelEvent:
    """
    Decode one raw channel message (a JSON string, bytes, or an already
    parsed dict). Raises ProtocolError when the message has no usable shape.
    """
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8", errors="replace")
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"event is not valid JSON: {exc}", raw=message) from exc

    if not isinstance(message, dict):
        raise ProtocolError("event is not a JSON object", raw=message)

    try:
        envelope = _Envelope.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError("event has no type", raw=message) from exc

    try:
        return _KNOWN_ADAPTER.validate_python(message)
    except ValidationError as exc:
        if exc.errors()[0]["type"] == "union_tag_invalid":
            return UnclassifiedEvent(type=envelope.type, raw=message)
        raise ProtocolError(f"malformed {envelope.type} event: {exc}", raw=message) from exc
