import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from voice_tutor.drawing import command_to_dict
from voice_tutor.errors import LessonNotFoundError, NegotiationError, RenderError
from voice_tutor.lessons import LessonProvider, Stage
from voice_tutor.negotiation import SessionNegotiator
from voice_tutor.orchestrator import StageOrchestrator
from voice_tutor.render import RenderPipeline
from voice_tutor.transport import RealtimeTransport
from voice_tutor.workspace import WorkspaceSnapshot

# main.py is at backend/voice_tutor/main.py, so two parents up is the project root.
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path, override=True)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

lesson_provider = LessonProvider()
render_pipeline = RenderPipeline()


def new_orchestrator() -> StageOrchestrator:
    return StageOrchestrator(
        lessons=lesson_provider,
        negotiator=SessionNegotiator(),
        renderer=render_pipeline,
        transport_factory=RealtimeTransport,
        auto_connect=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Voice tutor backend starting up...")
    yield
    logger.info("Voice tutor backend shutting down...")


app = FastAPI(title="Voice Tutor API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:5173")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class StageBody(BaseModel):
    problem: str
    success_criteria: str
    guidance: str = ""


class SessionRequest(BaseModel):
    sdp: str
    stage: StageBody


class RenderRequest(BaseModel):
    imageDataUrl: Optional[str] = None
    description: str
    action: Optional[str] = None


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": "0.1.0"}


@app.get("/lessons/{lesson_id}")
async def get_lesson(lesson_id: str):
    lesson = lesson_provider.get(lesson_id)
    if lesson is None:
        raise HTTPException(status_code=404, detail=f"Lesson not found: {lesson_id}")
    return lesson.to_dict()


@app.post("/api/session")
async def create_session(body: SessionRequest):
    """Exchange a browser-held SDP offer for an answer, configured for one stage."""
    if not body.sdp.strip():
        raise HTTPException(status_code=400, detail="Invalid or missing SDP")
    stage = Stage(
        stage_id=0,
        problem=body.stage.problem,
        success_criteria=body.stage.success_criteria,
        guidance=body.stage.guidance,
    )
    try:
        answer = await SessionNegotiator().negotiate(body.sdp, stage)
    except NegotiationError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to create session: {exc}") from exc
    return PlainTextResponse(answer, media_type="application/sdp")


@app.post("/api/render")
async def render(body: RenderRequest):
    snapshot = None
    if body.imageDataUrl:
        snapshot = WorkspaceSnapshot(image_base64=body.imageDataUrl, captured_at=0.0)
    try:
        commands = await render_pipeline.render(body.description, snapshot, body.action)
    except RenderError as exc:
        raise HTTPException(
            status_code=502, detail=f"Failed to generate drawing commands: {exc}"
        ) from exc
    return {"commands": [command_to_dict(c) for c in commands]}


async def _pump_outbox(orchestrator: StageOrchestrator, websocket: WebSocket) -> None:
    while True:
        message = await orchestrator.outbox.get()
        await websocket.send_json(message)


async def _handle_client_message(orchestrator: StageOrchestrator, lesson_id: str, data: dict) -> None:
    msg_type = data.get("type")

    if msg_type == "start_lesson":
        await orchestrator.start_lesson(data.get("lesson_id") or lesson_id)
    elif msg_type == "connect":
        # Explicit retry after a failed negotiation.
        await orchestrator.connect()
    elif msg_type == "board_edit":
        image_b64 = data.get("image_base64", "")
        if image_b64:
            orchestrator.record_local_edit(image_b64)
    elif msg_type == "board_snapshot":
        image_b64 = data.get("image_base64", "")
        if image_b64:
            await orchestrator.submit_snapshot(image_b64)
    else:
        await orchestrator.outbox.put(
            {"type": "error", "kind": "client", "message": f"Unknown message type: {msg_type}"}
        )


@app.websocket("/ws/{lesson_id}")
async def websocket_endpoint(websocket: WebSocket, lesson_id: str):
    await websocket.accept()

    orchestrator = new_orchestrator()
    pump = asyncio.create_task(_pump_outbox(orchestrator, websocket))

    try:
        await websocket.send_json({"type": "connected", "lesson_id": lesson_id})
        while True:
            data = await websocket.receive_json()
            try:
                await _handle_client_message(orchestrator, lesson_id, data)
            except LessonNotFoundError as exc:
                await orchestrator.outbox.put({"type": "error", "kind": "lesson", "message": str(exc)})
            except NegotiationError:
                # The orchestrator has already reported it; the client may send "connect" again.
                logger.info("Lesson %s: negotiation failed, waiting for retry", lesson_id)
    except WebSocketDisconnect:
        logger.info("Lesson %s client disconnected", lesson_id)
    except Exception as e:
        logger.exception("Error in lesson %s", lesson_id)
        # WebSocket close reason has a 123-byte hard limit; truncate to be safe
        await websocket.close(code=1011, reason=str(e)[:100])
    finally:
        pump.cancel()
        await orchestrator.shutdown()
