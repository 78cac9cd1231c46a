import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from voice_tutor.drawing import Circle, Text
from voice_tutor.errors import RenderError
from voice_tutor.llm_client import LLMClient
from voice_tutor.render import RenderPipeline, parse_render_response
from voice_tutor.workspace import WorkspaceSnapshot


class FakeMessages:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.reply)])


def make_llm(reply=None, error=None):
    messages = FakeMessages(reply=reply, error=error)
    return LLMClient(client=SimpleNamespace(messages=messages)), messages


class FakeLLM:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def complete(self, system, prompt, snapshot=None):
        self.calls.append((system, prompt, snapshot))
        return self.reply


@pytest.mark.asyncio
async def test_render_returns_commands_in_order():
    reply = json.dumps(
        {
            "commands": [
                {"type": "circle", "x": 200, "y": 150, "radius": 50, "fill": "#FFD700"},
                {"type": "text", "x": 180, "y": 230, "content": "1 pizza"},
            ]
        }
    )
    llm = FakeLLM(reply)
    pipeline = RenderPipeline(llm=llm)

    commands = await pipeline.render("Draw one pizza", action="draw")

    assert commands == [
        Circle(x=200.0, y=150.0, radius=50.0, fill="#FFD700"),
        Text(x=180.0, y=230.0, content="1 pizza"),
    ]
    _, prompt, snapshot = llm.calls[0]
    assert "Description: Draw one pizza" in prompt
    assert "Requested action: draw" in prompt
    assert snapshot is None


@pytest.mark.asyncio
async def test_empty_command_list_is_valid_but_logged(caplog):
    pipeline = RenderPipeline(llm=FakeLLM('{"commands": []}'))
    assert await pipeline.render("Draw nothing") == []
    assert "empty command list" in caplog.text


@pytest.mark.asyncio
async def test_blank_instruction_is_rejected():
    pipeline = RenderPipeline(llm=FakeLLM('{"commands": []}'))
    with pytest.raises(RenderError):
        await pipeline.render("   ")


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "Here you go: {\"commands\": []}",
        '```json\n{"commands": []}\n```',
        '{"commands": []} {"commands": []}',
        '[{"type": "clear"}]',
        '{"commands": {}}',
        '{"commands": [], "note": "hi"}',
    ],
)
def test_malformed_replies_are_format_errors(raw):
    with pytest.raises(RenderError):
        parse_render_response(raw)


def test_invalid_entries_are_dropped_not_fatal():
    commands = parse_render_response(
        '  {"commands": [{"type": "blob"}, {"type": "clear"}]}\n'
    )
    assert [c.type for c in commands] == ["clear"]


@pytest.mark.asyncio
async def test_llm_client_attaches_snapshot_before_prompt():
    llm, messages = make_llm(reply='{"commands": []}')
    snapshot = WorkspaceSnapshot(image_base64="data:image/png;base64,QUJD", captured_at=0.0)

    text = await llm.complete(system="sys", prompt="draw", snapshot=snapshot)

    assert text == '{"commands": []}'
    content = messages.requests[0]["messages"][0]["content"]
    assert content[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "QUJD"}
    assert content[1] == {"type": "text", "text": "draw"}
    assert messages.requests[0]["system"] == "sys"


@pytest.mark.asyncio
async def test_llm_client_wraps_api_failures():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    llm, _ = make_llm(error=anthropic.APIConnectionError(request=request))

    with pytest.raises(RenderError):
        await llm.complete(system="sys", prompt="draw")


def test_llm_client_rejects_placeholder_key(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "YOUR_KEY_HERE")
    with pytest.raises(RuntimeError):
        LLMClient()


@pytest.mark.asyncio
async def test_missing_key_surfaces_as_render_error(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    pipeline = RenderPipeline()

    with pytest.raises(RenderError, match="ANTHROPIC_API_KEY"):
        await pipeline.render("Draw one pizza")


@pytest.mark.asyncio
async def test_unexpected_client_failure_surfaces_as_render_error():
    llm, messages = make_llm(error=TypeError("unexpected keyword argument"))

    with pytest.raises(RenderError, match="unexpected keyword"):
        await llm.complete("system", "Draw one pizza")
    assert len(messages.requests) == 1


def test_unknown_shape_is_dropped_and_circle_kept():
    commands = parse_render_response(
        '{"commands":[{"type":"circle","x":10,"y":10,"radius":5},{"type":"unknown_shape"}]}'
    )
    assert commands == [Circle(x=10.0, y=10.0, radius=5.0)]
