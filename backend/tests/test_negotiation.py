import pytest

from voice_tutor.errors import NegotiationError
from voice_tutor.lessons import Stage
from voice_tutor.negotiation import (
    BUNDLED,
    FOLLOW_UP,
    SessionNegotiator,
    build_instructions,
    build_session_config,
)

STAGE = Stage(
    stage_id=1,
    problem="16 slices shared by 3 friends",
    success_criteria="Says each gets 5 with 1 left over",
    guidance="Use pizza language.",
)


def test_instructions_embed_the_stage():
    text = build_instructions(STAGE)
    assert "Current Problem: 16 slices shared by 3 friends" in text
    assert "Success Criteria: Says each gets 5 with 1 left over" in text
    assert "Teaching notes: Use pizza language." in text
    assert "update_whiteboard({description:" in text


def test_session_config_fields():
    config = build_session_config(STAGE, model="m", voice="v", transcription_model="t")
    assert config["type"] == "realtime"
    assert config["model"] == "m"
    assert config["audio"]["output"]["voice"] == "v"
    assert config["audio"]["input"]["transcription"]["model"] == "t"
    vad = config["audio"]["input"]["turn_detection"]
    assert vad["type"] == "server_vad"
    assert vad["create_response"] is True and vad["interrupt_response"] is False
    assert [tool["name"] for tool in config["tools"]] == ["stage_complete", "update_whiteboard"]


def test_strategies():
    bundled = SessionNegotiator(api_key="k", strategy=BUNDLED)
    follow_up = SessionNegotiator(api_key="k", strategy=FOLLOW_UP)

    assert bundled.ack_event == "session.created"
    assert "instructions" in bundled.config_for(STAGE)
    assert follow_up.ack_event == "session.updated"
    assert "instructions" not in follow_up.config_for(STAGE)

    with pytest.raises(ValueError):
        SessionNegotiator(api_key="k", strategy="eventually")


@pytest.mark.asyncio
async def test_negotiate_posts_offer_with_config(monkeypatch):
    negotiator = SessionNegotiator(api_key="k", strategy=BUNDLED)
    posted = []

    async def fake_post(offer_sdp, session_config):
        posted.append((offer_sdp, session_config))
        return "v=0\r\nanswer"

    monkeypatch.setattr(negotiator, "_post", fake_post)

    assert await negotiator.negotiate("v=0\r\noffer", STAGE) == "v=0\r\nanswer"
    assert posted[0][1]["instructions"] == build_instructions(STAGE)


@pytest.mark.asyncio
async def test_negotiate_failures(monkeypatch):
    negotiator = SessionNegotiator(api_key="k")

    async def empty_answer(offer_sdp, session_config):
        return "  "

    monkeypatch.setattr(negotiator, "_post", empty_answer)

    with pytest.raises(NegotiationError):
        await negotiator.negotiate("", STAGE)
    with pytest.raises(NegotiationError):
        await negotiator.negotiate("v=0", STAGE)


@pytest.mark.asyncio
async def test_negotiate_without_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(NegotiationError):
        await SessionNegotiator().negotiate("v=0", STAGE)
