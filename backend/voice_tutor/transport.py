import asyncio
import json
import logging
from collections.abc import Callable

from aiortc import MediaStreamTrack, RTCDataChannel, RTCPeerConnection, RTCSessionDescription

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "oai-events"


class Subscription:
    """
    Handle returned by `RealtimeChannel.subscribe`. Whoever holds it owns the
    listener and must release it; releasing twice is harmless.
    """

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release()


class RealtimeChannel:
    """The duplex JSON event channel of one realtime call."""

    def __init__(self, dc: RTCDataChannel):
        self._dc = dc
        self._opened = asyncio.Event()
        if dc.readyState == "open":
            self._opened.set()
        dc.on("open", self._opened.set)

    @property
    def is_open(self) -> bool:
        return self._dc.readyState == "open"

    def subscribe(self, on_message: Callable[[str], None]) -> Subscription:
        self._dc.on("message", on_message)
        return Subscription(lambda: self._dc.remove_listener("message", on_message))

    async def wait_open(self, timeout: float) -> None:
        await asyncio.wait_for(self._opened.wait(), timeout=timeout)

    def send(self, event: dict) -> None:
        if not self.is_open:
            logger.warning("[Channel] dropping %s: channel not open", event.get("type"))
            return
        self._dc.send(json.dumps(event))

    def close(self) -> None:
        self._dc.remove_listener("open", self._opened.set)
        self._dc.close()


class RealtimeTransport:
    """
    One WebRTC peer connection to the realtime agent.

    Audio capture and playback live outside this class: callers may pass an
    outbound track (e.g. a relayed microphone); without one a bare audio
    transceiver is offered so the agent still negotiates an audio line.
    """

    def __init__(self, outbound_track: MediaStreamTrack | None = None):
        self.pc = RTCPeerConnection()
        self.inbound_tracks: list[MediaStreamTrack] = []
        self._channel: RealtimeChannel | None = None

        if outbound_track is not None:
            self.pc.addTrack(outbound_track)
        else:
            self.pc.addTransceiver("audio", direction="sendrecv")

        self.pc.on("track", self._on_track)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info("[Transport] inbound %s track", track.kind)
        self.inbound_tracks.append(track)

    @property
    def connected(self) -> bool:
        return self.pc.connectionState == "connected"

    def open_channel(self) -> RealtimeChannel:
        # Must exist before the offer so the SDP carries the data section.
        if self._channel is None:
            self._channel = RealtimeChannel(self.pc.createDataChannel(CHANNEL_LABEL))
        return self._channel

    async def create_offer(self) -> str:
        offer = await self.pc.createOffer()
        # aiortc gathers ICE candidates inside setLocalDescription.
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def accept_answer(self, answer_sdp: str) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))

    # ── Teardown steps (called in order by the orchestrator) ─────────────────

    def stop_outbound(self) -> None:
        for sender in self.pc.getSenders():
            if sender.track is not None:
                sender.track.stop()

    def stop_inbound(self) -> None:
        for track in self.inbound_tracks:
            track.stop()
        self.inbound_tracks.clear()

    async def close(self) -> None:
        self.pc.remove_listener("track", self._on_track)
        await self.pc.close()
