import asyncio
import logging
import os
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from voice_tutor.dispatcher import FunctionCallDispatcher
from voice_tutor.errors import ProtocolError
from voice_tutor.events import (
    ChannelEvent,
    ConfigurationAcknowledged,
    ErrorEvent,
    FunctionCallCompleted,
    TranscriptCompleted,
    TranscriptDelta,
    UnclassifiedEvent,
    decode_event,
)
from voice_tutor.transcript import TranscriptLedger

logger = logging.getLogger(__name__)

MAX_PROTOCOL_ERRORS = int(os.getenv("MAX_PROTOCOL_ERRORS", "5"))


@dataclass(frozen=True)
class Diagnostic:
    kind: str  # "error" | "drift" | "protocol"
    detail: str
    timestamp: float


class EventRouter:
    """
    Consumes one channel's ordered event stream.

    One router exists per channel, so its seen-id set lives exactly as long
    as that stage's channel. `handle_message` is synchronous and never awaits
    anything external; handlers that need I/O schedule their own tasks.
    """

    def __init__(
        self,
        ledger: TranscriptLedger,
        dispatcher: FunctionCallDispatcher,
        stage_index: int = 0,
        on_protocol_failure: Callable[[], None] | None = None,
        max_protocol_errors: int = MAX_PROTOCOL_ERRORS,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.stage_index = stage_index
        self.seen_event_ids: set[tuple[str, str]] = set()
        self.diagnostics: deque[Diagnostic] = deque(maxlen=100)

        self._on_protocol_failure = on_protocol_failure
        self._max_protocol_errors = max_protocol_errors
        self._consecutive_protocol_errors = 0
        self._protocol_failure_reported = False
        self._acks: dict[str, asyncio.Event] = {
            "session.created": asyncio.Event(),
            "session.updated": asyncio.Event(),
        }

    # ── Entry point ──────────────────────────────────────────────────────────

    def handle_message(self, message) -> ChannelEvent | None:
        try:
            event = decode_event(message)
        except ProtocolError as exc:
            self._on_protocol_error(exc)
            return None

        self._consecutive_protocol_errors = 0
        self.route(event)
        return event

    def route(self, event: ChannelEvent) -> None:
        if isinstance(event, FunctionCallCompleted):
            self._handle_function_call(event)
        elif isinstance(event, TranscriptCompleted):
            self._handle_transcript(event)
        elif isinstance(event, TranscriptDelta):
            logger.debug("[Router] %s delta: %r", event.speaker, event.delta[:80])
        elif isinstance(event, ErrorEvent):
            logger.warning("[Router] agent error %s: %s", event.kind, event.message)
            self._record("error", f"{event.kind}: {event.message}")
        elif isinstance(event, ConfigurationAcknowledged):
            logger.info("[Router] configuration acknowledged (%s)", event.source)
            self._acks[event.source].set()
        elif isinstance(event, UnclassifiedEvent):
            if event.looks_like_drift:
                logger.warning("[Router] unhandled event type %r (protocol drift?)", event.type)
                self._record("drift", event.type)

    # ── Configuration acknowledgement ────────────────────────────────────────

    def acknowledged(self, source: str = "session.created") -> bool:
        return self._acks[source].is_set()

    async def wait_acknowledged(self, source: str = "session.created") -> None:
        await self._acks[source].wait()

    # ── Handlers ─────────────────────────────────────────────────────────────

    def _first_sighting(self, category: str, event_id: str | None) -> bool:
        if event_id is None:
            return True
        key = (category, event_id)
        if key in self.seen_event_ids:
            logger.debug("[Router] dropping duplicate %s %s", category, event_id)
            return False
        self.seen_event_ids.add(key)
        return True

    def _handle_transcript(self, event: TranscriptCompleted) -> None:
        if not self._first_sighting("transcript", event.item_id):
            return
        self.ledger.append(
            event.speaker,
            event.transcript,
            stage_index=self.stage_index,
            item_id=event.item_id,
        )

    def _handle_function_call(self, event: FunctionCallCompleted) -> None:
        if not self._first_sighting("function_call", event.event_id):
            return
        self.dispatcher.dispatch(event)

    def _on_protocol_error(self, exc: ProtocolError) -> None:
        self._consecutive_protocol_errors += 1
        logger.warning(
            "[Router] protocol error (%d in a row): %s",
            self._consecutive_protocol_errors,
            exc,
        )
        self._record("protocol", str(exc))
        if (
            self._consecutive_protocol_errors >= self._max_protocol_errors
            and not self._protocol_failure_reported
        ):
            self._protocol_failure_reported = True
            logger.error("[Router] too many protocol errors; asking for a new channel")
            if self._on_protocol_failure:
                self._on_protocol_failure()

    def _record(self, kind: str, detail: str) -> None:
        self.diagnostics.append(Diagnostic(kind=kind, detail=detail, timestamp=time.time()))
