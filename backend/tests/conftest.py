import asyncio
import json

import pytest

from voice_tutor.errors import NegotiationError, RenderError
from voice_tutor.lessons import Lesson, LessonProvider, Stage
from voice_tutor.orchestrator import StageOrchestrator


class FakeSubscription:
    def __init__(self, channel):
        self.channel = channel
        self.active = True

    def release(self):
        self.channel.log.append("release listener")
        self.active = False
        self.channel.listener = None


class FakeChannel:
    def __init__(self, log):
        self.log = log
        self.sent = []
        self.listener = None
        self.closed = False

    def subscribe(self, on_message):
        self.listener = on_message
        return FakeSubscription(self)

    async def wait_open(self, timeout):
        return None

    def send(self, event):
        self.sent.append(event)

    def close(self):
        self.log.append("close channel")
        self.closed = True

    def deliver(self, event):
        """Simulate the agent sending an event; dropped once the listener is released."""
        if self.listener is not None:
            self.listener(event if isinstance(event, str) else json.dumps(event))

    def sent_types(self):
        return [e["type"] for e in self.sent]


class FakeTransport:
    def __init__(self, ack=True):
        self.log = []
        self.ack = ack
        self.channel = FakeChannel(self.log)
        self.answer = None

    def open_channel(self):
        return self.channel

    async def create_offer(self):
        return "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\n"

    async def accept_answer(self, answer_sdp):
        self.answer = answer_sdp
        if self.ack:
            self.channel.deliver({"type": "session.created", "session": {"id": "sess_1"}})

    def stop_outbound(self):
        self.log.append("stop outbound")

    def stop_inbound(self):
        self.log.append("stop inbound")

    async def close(self):
        self.log.append("close transport")


class FakeNegotiator:
    def __init__(self, fail=False, strategy="bundled"):
        self.fail = fail
        self.strategy = strategy
        self.gate = None
        self.calls = []

    @property
    def ack_event(self):
        return "session.created" if self.strategy == "bundled" else "session.updated"

    async def negotiate(self, offer_sdp, stage):
        self.calls.append((offer_sdp, stage))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise NegotiationError("realtime call failed: 500 - boom", status=500)
        return "v=0\r\nanswer\r\n"


class FakeRenderer:
    def __init__(self, commands=None, error=None):
        self.commands = commands or []
        self.error = error
        self.gate = None
        self.calls = []

    async def render(self, instruction, snapshot=None, action=None):
        self.calls.append((instruction, snapshot, action))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise RenderError(self.error)
        return list(self.commands)


def function_call(name, arguments, call_id="call_1"):
    return {
        "type": "response.function_call_arguments.done",
        "name": name,
        "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
        "call_id": call_id,
        "item_id": f"item_{call_id}",
    }


def drain(queue: asyncio.Queue) -> list:
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


@pytest.fixture
def two_stage_lesson():
    return Lesson(
        lesson_id="sharing",
        title="Sharing",
        learning_goal="Division with remainders",
        stages=(
            Stage(stage_id=1, problem="16 slices, 3 friends", success_criteria="5 r 1"),
            Stage(stage_id=2, problem="20 brownies, 6 kids", success_criteria="3 r 2"),
        ),
    )


@pytest.fixture
def provider(two_stage_lesson, tmp_path):
    p = LessonProvider(lessons_dir=tmp_path)
    p.add(two_stage_lesson)
    return p


@pytest.fixture
def transports():
    return []


@pytest.fixture
def make_orchestrator(provider, transports):
    def _make(negotiator=None, renderer=None, ack=True, **kwargs):
        def factory():
            transport = FakeTransport(ack=ack)
            transports.append(transport)
            return transport

        return StageOrchestrator(
            lessons=provider,
            negotiator=negotiator or FakeNegotiator(),
            renderer=renderer or FakeRenderer(),
            transport_factory=factory,
            **kwargs,
        )

    return _make
