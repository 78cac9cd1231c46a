import asyncio
import json
import logging
import os
import ssl
from typing import Annotated, Literal, Optional

import aiohttp
import certifi
from pydantic import BaseModel, StringConstraints

from voice_tutor.errors import NegotiationError
from voice_tutor.lessons import Stage

logger = logging.getLogger(__name__)

_SSL_CTX = ssl.create_default_context(cafile=certifi.where())

REALTIME_CALLS_URL = "https://api.openai.com/v1/realtime/calls"

BUNDLED = "bundled"
FOLLOW_UP = "follow_up"

INSTRUCTIONS_TEMPLATE = """You are a friendly math tutor helping a 10-year-old student. Use age-appropriate language and keep your responses short and conversational.

Current Problem: {problem}

Success Criteria: {criteria}
{guidance}
CRITICAL RULES:
- NEVER give away answers or do calculations for the student
- NEVER say the numbers from calculations (let them figure it out)
- NEVER tell them what operation to use (like "divide" or "multiply")
- Ask ONE simple question at a time that helps them think through the next small step
- If they're stuck, ask about what they already know
- Build on their ideas, even if imperfect, and guide them gently from where they are
- Keep responses to 1-2 short sentences maximum
- When the student meets the success criteria, call stage_complete()

VISUAL TEACHING:
- When the student asks you to draw something, quietly call update_whiteboard() WITHOUT announcing it
- Do NOT say "I'm drawing" or "Let me draw", just call the function silently
- If student says "draw", "show me", "can you draw", immediately use update_whiteboard()
- Examples: update_whiteboard({{description: "Draw 16 pizza slices in a 4x4 grid"}})
- Examples: update_whiteboard({{description: "Draw 2 pizzas side by side, each with 8 slices"}})
- You can see what's on the whiteboard and what the student has drawn
- Use visuals to reinforce concepts, but let the student do their own work

Start by greeting them warmly and asking what they notice about the problem."""

TOOLS = [
    {
        "type": "function",
        "name": "stage_complete",
        "description": "Call this when the student has demonstrated mastery of the current learning objective",
        "parameters": {
            "type": "object",
            "properties": {
                "reasoning": {
                    "type": "string",
                    "description": "Brief explanation of why student is ready to advance",
                }
            },
            "required": ["reasoning"],
        },
    },
    {
        "type": "function",
        "name": "update_whiteboard",
        "description": (
            "Draw visual elements on the whiteboard to help illustrate mathematical concepts. "
            "Use this to show the problem visually, create groupings, label items, or add "
            "helpful annotations."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": (
                        'Natural language description of what to draw. Examples: "Draw 16 pizza '
                        'slices arranged in a 4x4 grid", "Circle the leftover slice in red", '
                        '"Draw lines to show 3 equal groups"'
                    ),
                },
                "action": {
                    "type": "string",
                    "enum": ["draw", "highlight", "label", "clear"],
                    "description": "Optional hint about the kind of change",
                },
            },
            "required": ["description"],
        },
    },
]

# Argument models for the functions declared in TOOLS.
NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class StageCompleteArgs(BaseModel):
    reasoning: NonBlank


class UpdateWhiteboardArgs(BaseModel):
    description: NonBlank
    action: Optional[Literal["draw", "highlight", "label", "clear"]] = None


def build_instructions(stage: Stage) -> str:
    guidance = f"\nTeaching notes: {stage.guidance}\n" if stage.guidance else ""
    return INSTRUCTIONS_TEMPLATE.format(
        problem=stage.problem,
        criteria=stage.success_criteria,
        guidance=guidance,
    )


def build_session_config(
    stage: Stage,
    model: str | None = None,
    voice: str | None = None,
    transcription_model: str | None = None,
) -> dict:
    """The full per-stage configuration document sent to the realtime agent."""
    return {
        "type": "realtime",
        "model": model or os.getenv("REALTIME_MODEL", "gpt-realtime"),
        "audio": {
            "input": {
                "transcription": {
                    "model": transcription_model or os.getenv("TRANSCRIPTION_MODEL", "whisper-1"),
                },
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": 0.6,
                    "prefix_padding_ms": 300,
                    "silence_duration_ms": 1000,
                    "create_response": True,
                    "interrupt_response": False,
                },
            },
            "output": {"voice": voice or os.getenv("REALTIME_VOICE", "alloy")},
        },
        "instructions": build_instructions(stage),
        "tools": TOOLS,
    }


def build_minimal_config(model: str | None = None) -> dict:
    """Used by the follow-up strategy: just enough to open the call."""
    return {"type": "realtime", "model": model or os.getenv("REALTIME_MODEL", "gpt-realtime")}


class SessionNegotiator:
    """
    Exchanges a local SDP offer for the agent's SDP answer.

    With the bundled strategy the stage configuration travels in the same
    multipart request as the offer, so the agent is instructed from its very
    first turn. The follow-up strategy sends a minimal config here and leaves
    the `session.update` to the orchestrator.
    """

    def __init__(self, api_key: str | None = None, strategy: str | None = None):
        self.api_key = (api_key or os.getenv("OPENAI_API_KEY", "")).strip()
        self.url = os.getenv("REALTIME_CALLS_URL", REALTIME_CALLS_URL)
        self.strategy = (strategy or os.getenv("REALTIME_CONFIG_STRATEGY", BUNDLED)).strip()
        self.timeout_sec = float(os.getenv("NEGOTIATION_TIMEOUT_SEC", "15"))
        if self.strategy not in (BUNDLED, FOLLOW_UP):
            raise ValueError(f"unknown REALTIME_CONFIG_STRATEGY {self.strategy!r}")

    @property
    def ack_event(self) -> str:
        """The configuration-acknowledged event to wait for before the first turn."""
        return "session.created" if self.strategy == BUNDLED else "session.updated"

    def config_for(self, stage: Stage) -> dict:
        if self.strategy == BUNDLED:
            return build_session_config(stage)
        return build_minimal_config()

    async def negotiate(self, offer_sdp: str, stage: Stage) -> str:
        if not offer_sdp or not offer_sdp.strip():
            raise NegotiationError("missing local SDP offer")
        if not self.api_key:
            raise NegotiationError("OPENAI_API_KEY is not set")

        session_config = self.config_for(stage)
        logger.info(
            "[Negotiation] stage %s: sending offer (%d bytes, strategy=%s)",
            stage.stage_id,
            len(offer_sdp),
            self.strategy,
        )
        answer = await self._post(offer_sdp, session_config)
        if not answer.strip():
            raise NegotiationError("agent returned an empty SDP answer")
        return answer

    async def _post(self, offer_sdp: str, session_config: dict) -> str:
        form = aiohttp.FormData()
        form.add_field("sdp", offer_sdp)
        form.add_field("session", json.dumps(session_config))
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)

        try:
            connector = aiohttp.TCPConnector(ssl=_SSL_CTX)
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.post(self.url, headers=headers, data=form) as resp:
                    body = await resp.text()
                    if resp.status >= 400:
                        logger.error("[Negotiation] HTTP %s: %s", resp.status, body[:500])
                        raise NegotiationError(
                            f"realtime call failed: {resp.status} - {body[:200]}",
                            status=resp.status,
                        )
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NegotiationError(f"realtime call failed: {exc}") from exc
