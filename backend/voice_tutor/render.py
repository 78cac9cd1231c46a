import json
import logging
import os
from typing import Optional

from voice_tutor.drawing import DrawingCommand, parse_commands
from voice_tutor.errors import RenderError
from voice_tutor.llm_client import LLMClient
from voice_tutor.workspace import WorkspaceSnapshot

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a whiteboard rendering assistant for an educational math application.
You turn a tutor's drawing request into canvas drawing commands.

Reply with ONE JSON object and nothing else (no prose, no markdown fences):
{"commands": [...]}

Available primitives (coordinates in canvas pixels, origin top-left):
- circle: {"type": "circle", "x", "y", "radius", "fill", "stroke", "strokeWidth", "opacity"}
- rectangle: {"type": "rect", "x", "y", "width", "height", "fill", "stroke", "strokeWidth", "opacity"}
- line: {"type": "line", "x1", "y1", "x2", "y2", "stroke", "strokeWidth"}
- arrow: {"type": "arrow", "x1", "y1", "x2", "y2", "stroke", "strokeWidth", "headSize"}
- text: {"type": "text", "x", "y", "content", "fontSize", "fill", "font"}
- path: {"type": "path", "d": "SVG path string", "fill", "stroke", "strokeWidth"}
- clear: {"type": "clear"}

Numbers must be JSON numbers, colors hex strings like "#FF0000".
Commands are painted in the order listed. Keep everything inside the canvas and
avoid covering what the student has already drawn unless asked to."""


class RenderPipeline:
    """
    Whiteboard snapshot + natural-language instruction -> ordered drawing commands.

    One call per request. A reply that is not exactly a {"commands": [...]}
    object is a RenderError; individual bad commands are dropped, and an empty
    list is a valid (logged) result.
    """

    def __init__(self, llm: Optional[LLMClient] = None):
        self._llm = llm
        self.canvas_width = int(os.getenv("CANVAS_WIDTH", "800"))
        self.canvas_height = int(os.getenv("CANVAS_HEIGHT", "600"))

    @property
    def llm(self) -> LLMClient:
        # Created lazily so the app can start without a render key configured.
        if self._llm is None:
            try:
                self._llm = LLMClient()
            except RuntimeError as exc:
                raise RenderError(str(exc)) from exc
        return self._llm

    def build_prompt(self, instruction: str, action: Optional[str] = None) -> str:
        lines = [
            f"Canvas size: {self.canvas_width}x{self.canvas_height} px.",
            "Current whiteboard state: see the attached image (blank if none is attached).",
        ]
        if action:
            lines.append(f"Requested action: {action}")
        lines.append(f"Description: {instruction}")
        lines.append('Return ONLY valid JSON: {"commands": [...]}')
        return "\n".join(lines)

    async def render(
        self,
        instruction: str,
        snapshot: Optional[WorkspaceSnapshot] = None,
        action: Optional[str] = None,
    ) -> list[DrawingCommand]:
        instruction = (instruction or "").strip()
        if not instruction:
            raise RenderError("empty drawing instruction")

        raw = await self.llm.complete(
            system=SYSTEM_PROMPT,
            prompt=self.build_prompt(instruction, action),
            snapshot=snapshot,
        )
        commands = parse_render_response(raw)
        if not commands:
            logger.warning("[Render] empty command list for instruction %r", instruction[:120])
        else:
            logger.info("[Render] %d command(s) for %r", len(commands), instruction[:80])
        return commands


def parse_render_response(raw: str) -> list[DrawingCommand]:
    """
    Strictly parse a generation reply. Only surrounding whitespace is tolerated:
    fences, prose or a second JSON value make the whole reply a format error.
    """
    text = (raw or "").strip()
    if not text:
        raise RenderError("generation returned no content")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[Render] unparseable reply: %s", text[:300])
        raise RenderError(f"reply is not a single JSON value: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("commands"), list):
        raise RenderError('reply must be an object with a "commands" list')
    extra = set(data) - {"commands"}
    if extra:
        raise RenderError(f"reply has unexpected keys: {sorted(extra)}")

    return parse_commands(data["commands"])
