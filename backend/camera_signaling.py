"""Per-camera WebRTC signaling.

Each rover camera has its own signaling socket. We open it, send an SDP offer
for a receive-only video transceiver, then feed the rover's answer and ICE
candidates into the peer connection until a video track arrives. Channels are
independent: one failing never closes or mutates another.
"""

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException
from aiortc import RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole, MediaRecorder
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

from bridge_protocol import decode_signal, signal_frame
from errors import SignalingFailed
from rover_config import CAMERA_CHANNELS, RoverConfig
from timers import SystemClock, cancel_task


BIND_RETRY_INTERVAL = 0.2
BIND_MAX_ATTEMPTS = 300  # ~60 s
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

_PEER_ERRORS = (InvalidStateError, InvalidAccessError, ValueError)


class ChannelPhase(str, Enum):
    DISCONNECTED = "disconnected"
    SIGNALING_OPEN = "signaling_open"
    OFFERED = "offered"
    NEGOTIATED = "negotiated"


class PeerMediaSession:
    """Receive-only video peer connection."""

    def __init__(self, channel_id: str, configuration: Optional[RTCConfiguration] = None):
        self.channel_id = channel_id
        self._on_stream = None
        self._pc = RTCPeerConnection(configuration)
        self._pc.addTransceiver("video", direction="recvonly")

        @self._pc.on("track")
        async def on_track(track):
            if track.kind == "video" and self._on_stream is not None:
                await self._on_stream(track)

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange():
            print(f"[Camera {self.channel_id}] Peer connection {self._pc.connectionState}")

    def on_stream(self, callback):
        self._on_stream = callback

    async def create_offer(self) -> str:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except _PEER_ERRORS as e:
            raise SignalingFailed(self.channel_id, f"could not create offer: {e}") from e
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str):
        if not isinstance(sdp, str) or not sdp:
            raise SignalingFailed(self.channel_id, "answer without SDP")
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except _PEER_ERRORS as e:
            raise SignalingFailed(self.channel_id, f"rejected answer: {e}") from e

    async def add_ice_candidate(self, candidate):
        if isinstance(candidate, str):
            candidate = {"candidate": candidate, "sdpMLineIndex": 0}
        if not candidate:
            return  # end-of-candidates
        if not isinstance(candidate, dict):
            raise SignalingFailed(self.channel_id, f"bad ICE candidate: {candidate!r}")
        sdp = candidate.get("candidate")
        if not sdp:
            return
        mline = candidate.get("sdpMLineIndex")
        if not isinstance(sdp, str) or (mline is not None and not isinstance(mline, int)):
            raise SignalingFailed(self.channel_id, f"bad ICE candidate: {candidate!r}")
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        try:
            ice = candidate_from_sdp(sdp)
            ice.sdpMid = candidate.get("sdpMid")
            ice.sdpMLineIndex = mline
            await self._pc.addIceCandidate(ice)
        except (*_PEER_ERRORS, IndexError) as e:
            raise SignalingFailed(self.channel_id, f"bad ICE candidate: {e}") from e

    async def close(self):
        await self._pc.close()


class VideoSink:
    """Destination for a channel's negotiated video stream."""

    def __init__(self, sink_id: str):
        self.sink_id = sink_id
        self.stream = None
        self.playing = False

    def attach(self, stream):
        self.stream = stream

    async def play(self):
        self.playing = True

    async def release(self):
        self.playing = False
        self.stream = None


class RecorderSink(VideoSink):
    """Records to a file, or drains the track when no path is given."""

    def __init__(self, sink_id: str, path: Optional[str] = None):
        super().__init__(sink_id)
        self.path = path
        self._recorder = None

    def attach(self, stream):
        super().attach(stream)
        self._recorder = MediaRecorder(self.path) if self.path else MediaBlackhole()
        self._recorder.addTrack(stream)

    async def play(self):
        if self._recorder is None:
            raise RuntimeError(f"sink {self.sink_id} has no stream attached")
        await self._recorder.start()
        self.playing = True

    async def release(self):
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await recorder.stop()
        await super().release()


@dataclass
class CameraChannel:
    channel_id: str
    url: str
    auto_start: bool = False
    phase: ChannelPhase = ChannelPhase.DISCONNECTED
    socket: object = None
    peer: object = None
    stream: object = None
    sink_id: Optional[str] = None
    bound_sink: Optional[VideoSink] = None
    runner: Optional[asyncio.Task] = None
    bind_task: Optional[asyncio.Task] = None
    failures: int = 0

    @property
    def connected(self) -> bool:
        return self.phase != ChannelPhase.DISCONNECTED

    @property
    def running(self) -> bool:
        return self.runner is not None and not self.runner.done()

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "has_stream": self.stream is not None,
            "sink_id": self.sink_id,
            "auto_start": self.auto_start,
            "phase": self.phase.value,
        }


class CameraSignalingManager:
    def __init__(self, config: RoverConfig, clock=None, connect_socket=None, peer_factory=None):
        self._clock = clock or SystemClock()
        self._connect_socket = connect_socket or self._open_websocket
        self._peer_factory = peer_factory or PeerMediaSession
        self._connect_timeout = config.connect_timeout
        self._max_reconnects = config.signaling_reconnect_attempts
        self._sinks: dict = {}
        self.channels = {
            cid: CameraChannel(cid, config.signaling_url(cid), auto_start=config.is_camera_enabled(cid))
            for cid in CAMERA_CHANNELS
        }

    async def _open_websocket(self, url: str):
        return await websockets.connect(url, open_timeout=self._connect_timeout)

    def channel(self, channel_id: str) -> CameraChannel:
        try:
            return self.channels[channel_id]
        except KeyError:
            raise KeyError(f"Unknown camera channel: {channel_id}") from None

    def status(self) -> dict:
        return {cid: ch.to_dict() for cid, ch in self.channels.items()}

    # --- Lifecycle ---

    def start_enabled(self):
        for ch in self.channels.values():
            if ch.auto_start:
                self.start_channel(ch.channel_id)

    def start_channel(self, channel_id: str):
        ch = self.channel(channel_id)
        if ch.running:
            return
        ch.failures = 0
        ch.runner = asyncio.create_task(self._run_channel(ch))

    async def teardown_channel(self, channel_id: str):
        ch = self.channel(channel_id)
        runner, ch.runner = ch.runner, None
        await cancel_task(runner)
        bind_task, ch.bind_task = ch.bind_task, None
        await cancel_task(bind_task)
        await self._release(ch)

    async def teardown_all(self):
        for channel_id in self.channels:
            await self.teardown_channel(channel_id)

    async def _run_channel(self, ch: CameraChannel):
        while True:
            try:
                await self._negotiate(ch)
                print(f"[Camera {ch.channel_id}] Signaling socket closed")
            except SignalingFailed as e:
                print(f"[Camera {ch.channel_id}] {e.reason}")
            except Exception as e:
                print(f"[Camera {ch.channel_id}] Signaling error: {e!r}")
            await self._release(ch)

            ch.failures += 1
            if ch.failures > self._max_reconnects:
                print(f"[Camera {ch.channel_id}] Giving up after {ch.failures - 1} reconnect attempt(s)")
                break
            delay = min(RECONNECT_BASE_DELAY * 2 ** (ch.failures - 1), RECONNECT_MAX_DELAY)
            print(f"[Camera {ch.channel_id}] Reconnecting in {delay:.0f}s")
            await self._clock.sleep(delay)
        ch.runner = None

    async def _negotiate(self, ch: CameraChannel):
        try:
            socket = await self._connect_socket(ch.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise SignalingFailed(ch.channel_id, f"could not open {ch.url}: {e}") from e
        ch.socket = socket
        ch.phase = ChannelPhase.SIGNALING_OPEN
        print(f"[Camera {ch.channel_id}] Signaling open at {ch.url}")

        peer = self._peer_factory(ch.channel_id)
        ch.peer = peer
        peer.on_stream(functools.partial(self._on_stream, ch))
        sdp = await peer.create_offer()
        await self._send(ch, signal_frame("offer", sdp=sdp))
        ch.phase = ChannelPhase.OFFERED

        try:
            async for raw in socket:
                await self._handle_signal(ch, raw)
        except (OSError, ConnectionClosedError) as e:
            raise SignalingFailed(ch.channel_id, f"signaling socket error: {e}") from e

    async def _send(self, ch: CameraChannel, frame: str):
        try:
            await ch.socket.send(frame)
        except (OSError, ConnectionClosed) as e:
            raise SignalingFailed(ch.channel_id, f"send failed: {e}") from e

    async def _handle_signal(self, ch: CameraChannel, raw):
        data = decode_signal(raw)
        if data is None:
            print(f"[Camera {ch.channel_id}] Ignoring malformed signaling message")
            return
        kind = data["type"]
        try:
            if kind == "answer":
                await ch.peer.apply_answer(data.get("sdp", ""))
                print(f"[Camera {ch.channel_id}] Answer applied")
            elif kind in ("ice-candidate", "candidate"):
                await ch.peer.add_ice_candidate(data.get("candidate"))
            else:
                print(f"[Camera {ch.channel_id}] Unexpected {kind} from rover")
        except SignalingFailed as e:
            print(f"[Camera {ch.channel_id}] {e.reason}")

    async def _on_stream(self, ch: CameraChannel, stream):
        ch.stream = stream
        ch.phase = ChannelPhase.NEGOTIATED
        ch.failures = 0
        print(f"[Camera {ch.channel_id}] Video stream received")
        if ch.sink_id is not None:
            await self._bind(ch)

    # --- Sinks ---

    def register_sink(self, sink: VideoSink):
        self._sinks[sink.sink_id] = sink

    def unregister_sink(self, sink_id: str):
        self._sinks.pop(sink_id, None)

    async def set_video_sink(self, channel_id: str, sink_id: Optional[str]):
        ch = self.channel(channel_id)
        if sink_id is not None and sink_id not in self._sinks:
            raise ValueError(f"Unknown video sink: {sink_id}")

        bind_task, ch.bind_task = ch.bind_task, None
        await cancel_task(bind_task)
        if ch.bound_sink is not None and ch.bound_sink.sink_id != sink_id:
            await self._release_sink(ch)
        ch.sink_id = sink_id
        if sink_id is None:
            return

        if ch.stream is not None:
            await self._bind(ch)
        elif ch.peer is None:
            ch.bind_task = asyncio.create_task(self._wait_and_bind(ch))

    async def _wait_and_bind(self, ch: CameraChannel):
        for _ in range(BIND_MAX_ATTEMPTS):
            if ch.stream is not None and ch.sink_id is not None:
                ch.bind_task = None
                await self._bind(ch)
                return
            await self._clock.sleep(BIND_RETRY_INTERVAL)
        ch.bind_task = None
        print(f"[Camera {ch.channel_id}] No stream after {BIND_MAX_ATTEMPTS} bind attempts, giving up")

    async def _bind(self, ch: CameraChannel) -> bool:
        sink = self._sinks.get(ch.sink_id)
        if sink is None or ch.stream is None:
            return False
        if ch.bound_sink is sink and sink.stream is ch.stream:
            return True
        if ch.bound_sink is not None and ch.bound_sink is not sink:
            await self._release_sink(ch)

        try:
            sink.attach(ch.stream)
        except (OSError, ValueError, RuntimeError) as e:
            print(f"[Camera {ch.channel_id}] Could not attach sink {sink.sink_id}: {e}")
            return False
        ch.bound_sink = sink
        try:
            await sink.play()
        except (OSError, ValueError, RuntimeError) as e:
            print(f"[Camera {ch.channel_id}] Sink {sink.sink_id} refused to play: {e}")
        return True

    async def _release_sink(self, ch: CameraChannel):
        sink, ch.bound_sink = ch.bound_sink, None
        if sink is None:
            return
        try:
            await sink.release()
        except (OSError, ValueError, RuntimeError) as e:
            print(f"[Camera {ch.channel_id}] Error releasing sink {sink.sink_id}: {e}")

    async def _release(self, ch: CameraChannel):
        await self._release_sink(ch)

        peer, ch.peer = ch.peer, None
        if peer is not None:
            try:
                await peer.close()
            except (OSError, RuntimeError) as e:
                print(f"[Camera {ch.channel_id}] Error closing peer session: {e}")

        socket, ch.socket = ch.socket, None
        if socket is not None:
            try:
                await socket.close()
            except (OSError, WebSocketException) as e:
                print(f"[Camera {ch.channel_id}] Error closing signaling socket: {e}")

        ch.stream = None
        ch.phase = ChannelPhase.DISCONNECTED
