import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from voice_tutor.drawing import Clear, DrawingCommand

logger = logging.getLogger(__name__)

SNAPSHOT_QUIESCENCE_SEC = float(os.getenv("SNAPSHOT_QUIESCENCE_SEC", "1.0"))


@dataclass(frozen=True)
class WorkspaceSnapshot:
    image_base64: str
    captured_at: float
    version: int = 0

    @property
    def media_type(self) -> str:
        if self.image_base64.startswith("data:"):
            return self.image_base64[5:].split(";", 1)[0] or "image/png"
        return "image/png"

    @property
    def data(self) -> str:
        """The raw base64 payload, without any data-URL prefix."""
        if self.image_base64.startswith("data:") and "," in self.image_base64:
            return self.image_base64.split(",", 1)[1]
        return self.image_base64

    def as_data_url(self) -> str:
        if self.image_base64.startswith("data:"):
            return self.image_base64
        return f"data:{self.media_type};base64,{self.image_base64}"


class Workspace:
    """
    The shared whiteboard state.

    The image itself is rasterized by the student's browser; the backend keeps
    the latest snapshot (read by the render pipeline) and the display list of
    remote commands applied since the last clear. Every write goes through the
    same lock so a reader never sees half of a batch.
    """

    def __init__(self, snapshot: WorkspaceSnapshot | None = None, commands=()):
        self._snapshot = snapshot
        self._commands: list[DrawingCommand] = list(commands)
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> WorkspaceSnapshot | None:
        return self._snapshot

    @property
    def commands(self) -> tuple[DrawingCommand, ...]:
        return tuple(self._commands)

    def copy(self) -> "Workspace":
        return Workspace(snapshot=self._snapshot, commands=self._commands)

    async def apply(self, commands: list[DrawingCommand]) -> tuple[DrawingCommand, ...]:
        """
        Apply one command batch as a single pass, in listed order.

        A command already on the board paints nothing new and is skipped, so
        reapplying a batch to a board seeded from its own result leaves the
        display list unchanged. Returns the commands that took effect.
        """
        applied: list[DrawingCommand] = []
        async with self._lock:
            for command in commands:
                if isinstance(command, Clear):
                    self._commands.clear()
                elif command in self._commands:
                    continue
                else:
                    self._commands.append(command)
                applied.append(command)
        logger.info("[Workspace] applied %d of %d command(s)", len(applied), len(commands))
        return tuple(applied)

    async def update_snapshot(self, image_base64: str) -> WorkspaceSnapshot:
        async with self._lock:
            version = self._snapshot.version + 1 if self._snapshot else 1
            self._snapshot = WorkspaceSnapshot(
                image_base64=image_base64,
                captured_at=time.time(),
                version=version,
            )
            return self._snapshot


class QuiescenceWatcher:
    """
    Fires a callback once no edit has arrived for `window_sec`.

    Every `arm()` cancels the pending timer and starts a fresh one, so a burst
    of strokes produces exactly one callback after the last stroke.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        window_sec: float = SNAPSHOT_QUIESCENCE_SEC,
    ):
        self._callback = callback
        self.window_sec = window_sec
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._fire_after_delay())

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _fire_after_delay(self) -> None:
        try:
            await asyncio.sleep(self.window_sec)
        except asyncio.CancelledError:
            return
        # Detach before running so an arm() from inside the callback
        # does not cancel the callback itself.
        self._task = None
        await self._callback()
