import asyncio
import json
import logging
import os
from collections.abc import Callable, Coroutine
from typing import Any

from voice_tutor.dispatcher import FunctionCallDispatcher
from voice_tutor.drawing import command_to_dict
from voice_tutor.errors import DispatchError, LessonNotFoundError, NegotiationError, RenderError
from voice_tutor.events import FunctionCallCompleted
from voice_tutor.lessons import Lesson, LessonProvider, Stage
from voice_tutor.negotiation import (
    FOLLOW_UP,
    SessionNegotiator,
    StageCompleteArgs,
    UpdateWhiteboardArgs,
    build_session_config,
)
from voice_tutor.render import RenderPipeline
from voice_tutor.router import EventRouter
from voice_tutor.session import SessionState, StageState
from voice_tutor.transcript import TranscriptEntry, TranscriptLedger
from voice_tutor.workspace import QuiescenceWatcher, Workspace, WorkspaceSnapshot

logger = logging.getLogger(__name__)


class StageOrchestrator:
    """
    Owns one student's lesson: the stage state machine, the live realtime
    session for the current stage, and the shared whiteboard.

    Idle -> AwaitingSession -> VoiceActive -> StageComplete -> AwaitingSession
    (next stage) ... -> LessonComplete.

    Everything the browser needs to see is put on `outbox`; the WebSocket
    endpoint drains it. Channel callbacks never await I/O: renders and stage
    transitions run as tasks tracked in `_tasks`.
    """

    def __init__(
        self,
        lessons: LessonProvider,
        negotiator: SessionNegotiator,
        renderer: RenderPipeline,
        transport_factory: Callable[[], Any],
        auto_connect: bool = False,
        quiescence_sec: float | None = None,
    ):
        self.lessons = lessons
        self.negotiator = negotiator
        self.renderer = renderer
        self._transport_factory = transport_factory
        self.auto_connect = auto_connect

        self.state: StageState = StageState.IDLE
        self.session: SessionState | None = None
        self.lesson: Lesson | None = None
        self.router: EventRouter | None = None

        self.workspace = Workspace()
        self.ledger = TranscriptLedger(on_append=self._on_transcript)
        self.outbox: asyncio.Queue = asyncio.Queue()

        self.channel_open_timeout = float(os.getenv("CHANNEL_OPEN_TIMEOUT_SEC", "10"))
        self.config_ack_timeout = float(os.getenv("CONFIG_ACK_TIMEOUT_SEC", "10"))

        self._tasks: set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._pending_edit: str | None = None
        watcher_kwargs = {} if quiescence_sec is None else {"window_sec": quiescence_sec}
        self._snapshot_watcher = QuiescenceWatcher(self._flush_local_edit, **watcher_kwargs)

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def stage_index(self) -> int | None:
        return self.session.stage_index if self.session else None

    @property
    def current_stage(self) -> Stage | None:
        if self.session is None or self.lesson is None:
            return None
        return self.lesson.stage(self.session.stage_index)

    def _is_current(self, channel: Any) -> bool:
        return (
            self.state == StageState.VOICE_ACTIVE
            and self.session is not None
            and self.session.channel is channel
        )

    # ── Lesson lifecycle ─────────────────────────────────────────────────────

    async def start_lesson(self, lesson_id: str) -> None:
        lesson = self.lessons.get(lesson_id)
        if lesson is None:
            raise LessonNotFoundError(lesson_id)

        if self.state not in (StageState.IDLE, StageState.LESSON_COMPLETE):
            logger.info("[Stage] restarting lesson; tearing down current session")
            await self.shutdown()

        self.lesson = lesson
        self._publish(SessionState.fresh(lesson.lesson_id, 0), StageState.AWAITING_SESSION)
        if self.auto_connect:
            await self._connect_and_report()

    async def connect(self) -> None:
        """
        Negotiate the realtime session for the current stage.

        Publishes a connected SessionState only once the channel is open and
        the agent has acknowledged its configuration. On any failure the
        partial transport is torn down, the state stays AwaitingSession, and
        NegotiationError is raised so the caller can retry.
        """
        async with self._connect_lock:
            session = self.session
            if self.state != StageState.AWAITING_SESSION or session is None or session.connected:
                logger.info("[Stage] connect ignored in state %s", self.state.value)
                return

            stage = self.lesson.stage(session.stage_index)
            transport = self._transport_factory()
            channel = transport.open_channel()
            router = self._build_router(session.stage_index, channel)
            subscription = channel.subscribe(router.handle_message)

            try:
                offer_sdp = await transport.create_offer()
                answer_sdp = await self.negotiator.negotiate(offer_sdp, stage)
                await transport.accept_answer(answer_sdp)
                await channel.wait_open(self.channel_open_timeout)
                if self.negotiator.strategy == FOLLOW_UP:
                    channel.send({"type": "session.update", "session": build_session_config(stage)})
                await asyncio.wait_for(
                    router.wait_acknowledged(self.negotiator.ack_event),
                    timeout=self.config_ack_timeout,
                )
            except asyncio.CancelledError:
                # Shutdown or a lesson restart cancelled us mid-negotiation.
                await self._release(transport, channel, subscription)
                raise
            except Exception as exc:
                await self._release(transport, channel, subscription)
                logger.error("[Stage] negotiation failed for stage %d: %r", session.stage_index, exc)
                self._emit(
                    {
                        "type": "error",
                        "kind": "negotiation",
                        "message": str(exc) or repr(exc),
                        "retryable": True,
                    }
                )
                if isinstance(exc, NegotiationError):
                    raise
                raise NegotiationError(f"session setup failed: {exc!r}") from exc

            if self.session is not session:
                # The lesson moved on (restart or shutdown) while we negotiated.
                await self._release(transport, channel, subscription)
                return

            self.router = router
            self._publish(
                session.with_connection(transport, channel, subscription),
                StageState.VOICE_ACTIVE,
            )

        # Re-send the board so the new stage's agent sees what is already drawn.
        if self.workspace.snapshot is not None:
            self._submit_image(channel, self.workspace.snapshot)
        channel.send({"type": "response.create"})

    async def _connect_and_report(self) -> None:
        try:
            await self.connect()
        except NegotiationError:
            # Already reported on the outbox; the browser offers a retry.
            logger.info("[Stage] waiting for the student to retry the connection")

    def on_stage_complete(self, reasoning: str, channel: Any) -> bool:
        """
        Honor the first stage_complete on the live channel; ignore the rest.
        The state leaves VoiceActive before this returns, so a duplicate call
        arriving while teardown runs is dropped.
        """
        if not self._is_current(channel):
            logger.info("[Stage] ignoring stage_complete (state=%s)", self.state.value)
            return False

        session = self.session
        logger.info("[Stage] stage %d complete: %s", session.stage_index, reasoning)
        self._publish(session, StageState.STAGE_COMPLETE, reasoning=reasoning)
        self._spawn(self._advance(session))
        return True

    async def _advance(self, session: SessionState) -> None:
        await self._release(session.transport, session.channel, session.subscription)
        self.router = None

        next_index = session.stage_index + 1
        if next_index < len(self.lesson):
            self._publish(SessionState.fresh(session.lesson_id, next_index), StageState.AWAITING_SESSION)
            if self.auto_connect:
                await self._connect_and_report()
        else:
            logger.info("[Stage] lesson %s complete", session.lesson_id)
            self._publish(None, StageState.LESSON_COMPLETE)

    def _on_protocol_failure(self, channel: Any) -> None:
        if not self._is_current(channel):
            return
        session = self.session
        logger.error("[Stage] channel for stage %d is unusable; reconnecting", session.stage_index)
        # Leave VoiceActive now so nothing else acts on the dying channel. The
        # state_update goes out once the replacement session is published.
        self.state = StageState.AWAITING_SESSION
        self._spawn(self._restart_stage(session))

    async def _restart_stage(self, session: SessionState) -> None:
        async with self._connect_lock:
            await self._release(session.transport, session.channel, session.subscription)
            self.router = None
            if self.session is not session:
                return
            self._publish(
                SessionState.fresh(session.lesson_id, session.stage_index),
                StageState.AWAITING_SESSION,
            )
        if self.auto_connect:
            await self._connect_and_report()

    async def shutdown(self) -> None:
        self._snapshot_watcher.cancel()
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

        session = self.session
        if session is not None and session.connected:
            await self._release(session.transport, session.channel, session.subscription)
        self.router = None
        self.session = None
        self.lesson = None
        self.state = StageState.IDLE

    async def wait_idle(self) -> None:
        """Wait until no render or transition task is running."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    # ── Teardown ─────────────────────────────────────────────────────────────

    async def _release(self, transport: Any, channel: Any, subscription: Any) -> None:
        """
        Tear a session down in a fixed order: outbound media, inbound media,
        listener, channel, transport. A failing step is logged and the rest
        still run.
        """
        steps = []
        if transport is not None:
            steps += [("stop outbound", transport.stop_outbound), ("stop inbound", transport.stop_inbound)]
        if subscription is not None:
            steps.append(("release listener", subscription.release))
        if channel is not None:
            steps.append(("close channel", channel.close))
        if transport is not None:
            steps.append(("close transport", transport.close))

        for label, step in steps:
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("[Stage] teardown step %r failed", label)

    # ── Function calls ───────────────────────────────────────────────────────

    def _build_router(self, stage_index: int, channel: Any) -> EventRouter:
        def bad_call(exc: DispatchError) -> None:
            # The agent is told its call never ran.
            if self._is_current(channel):
                self._send_function_output(channel, exc.call_id, {"status": "error", "message": str(exc)})

        dispatcher = FunctionCallDispatcher(on_error=bad_call)

        def stage_complete(args: StageCompleteArgs, event: FunctionCallCompleted) -> None:
            self.on_stage_complete(args.reasoning, channel)

        def update_whiteboard(args: UpdateWhiteboardArgs, event: FunctionCallCompleted) -> None:
            self.request_render(args.description, args.action, channel, event.call_id)

        dispatcher.register("stage_complete", stage_complete, StageCompleteArgs)
        dispatcher.register("update_whiteboard", update_whiteboard, UpdateWhiteboardArgs)

        return EventRouter(
            self.ledger,
            dispatcher,
            stage_index=stage_index,
            on_protocol_failure=lambda: self._on_protocol_failure(channel),
        )

    def request_render(
        self,
        description: str,
        action: str | None,
        channel: Any,
        call_id: str | None = None,
    ) -> None:
        if not self._is_current(channel):
            logger.info("[Render] ignoring request from a stale channel")
            return
        self._spawn(self._render_and_apply(description, action, channel, call_id))

    async def _render_and_apply(
        self,
        description: str,
        action: str | None,
        channel: Any,
        call_id: str | None,
    ) -> None:
        try:
            commands = await self.renderer.render(description, self.workspace.snapshot, action)
        except RenderError as exc:
            # Silent for the student; the agent learns the drawing did not happen.
            logger.error("[Render] %r failed: %s", description[:80], exc)
            if self._is_current(channel):
                self._send_function_output(channel, call_id, {"status": "error", "message": str(exc)})
            return

        if not self._is_current(channel):
            logger.info("[Render] discarding result for %r: stage moved on", description[:80])
            return

        applied = await self.workspace.apply(commands)
        self._emit({"type": "draw_commands", "commands": [command_to_dict(c) for c in applied]})
        self._send_function_output(channel, call_id, {"status": "drawn", "commands": len(applied)})

    def _send_function_output(self, channel: Any, call_id: str | None, output: dict) -> None:
        if not call_id:
            return
        channel.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": json.dumps(output),
                },
            }
        )

    # ── Whiteboard input from the browser ────────────────────────────────────

    def record_local_edit(self, image_base64: str) -> None:
        """A stroke just finished; capture after the board has been still a while."""
        self._pending_edit = image_base64
        self._snapshot_watcher.arm()

    async def _flush_local_edit(self) -> None:
        image, self._pending_edit = self._pending_edit, None
        if image:
            await self.submit_snapshot(image)

    async def submit_snapshot(self, image_base64: str) -> WorkspaceSnapshot:
        snapshot = await self.workspace.update_snapshot(image_base64)
        if self.state == StageState.VOICE_ACTIVE and self.session is not None:
            self._submit_image(self.session.channel, snapshot)
        return snapshot

    def _submit_image(self, channel: Any, snapshot: WorkspaceSnapshot) -> None:
        channel.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_image", "image_url": snapshot.as_data_url()}],
                },
            }
        )

    # ── Outbox ───────────────────────────────────────────────────────────────

    def _publish(self, session: SessionState | None, state: StageState, **extra) -> None:
        self.session = session
        self.state = state
        stage = self.current_stage
        logger.info(
            "[Stage] -> %s (stage_index=%s)",
            state.value,
            session.stage_index if session else None,
        )
        self._emit(
            {
                "type": "state_update",
                "state": state.value,
                "lesson_id": self.lesson.lesson_id if self.lesson else None,
                "stage_index": session.stage_index if session else None,
                "stage": stage.to_dict() if stage else None,
                "session": session.to_dict() if session else None,
                **extra,
            }
        )

    def _on_transcript(self, entry: TranscriptEntry) -> None:
        self._emit({"type": "transcript", **entry.to_dict()})

    def _emit(self, message: dict) -> None:
        self.outbox.put_nowait(message)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[Stage] background task failed", exc_info=task.exception())
