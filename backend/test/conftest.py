"""pytest 설정 및 공유 fixture

테스트 인프라:
- 가짜 RTCPeerConnection / RTCRtpSender / 데이터채널
- 가짜 미디어 트랙 (비디오, 오디오)과 재생 미디어
- 가짜 WebSocket (릴레이 참가자용)
- 메시지 기록기, 릴레이 하네스 (in-process 릴레이로 세션 연결)

네트워크나 실제 미디어 파일은 사용하지 않습니다.
"""

import asyncio
import fractions
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import numpy as np
import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame
from fastapi.websockets import WebSocketState
from pyee.asyncio import AsyncIOEventEmitter

from modules.signaling import RoomManager, SignalingRelay, Participant
from modules.webrtc.capture import MediaPlayback
from modules.webrtc.ice_provider import fallback_ice_servers


# ===== SDP =====


def make_sdp(session_id: str = "3900000000") -> str:
    """H264가 VP8보다 앞에 있는 최소 SDP."""
    return "\r\n".join([
        "v=0",
        f"o=- {session_id} {session_id} IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=video 9 UDP/TLS/RTP/SAVPF 97 96",
        "c=IN IP4 0.0.0.0",
        "a=rtpmap:97 H264/90000",
        "a=rtpmap:96 VP8/90000",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=rtpmap:111 opus/48000/2",
        "",
    ])


# ===== 미디어 트랙 =====


class FakeVideoTrack(MediaStreamTrack):
    """작은 검은 프레임을 계속 내보내는 비디오 트랙."""

    kind = "video"

    def __init__(self, width: int = 320, height: int = 240):
        super().__init__()
        self.width = width
        self.height = height
        self._pts = 0

    async def recv(self) -> VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(0.005)
        frame = VideoFrame.from_ndarray(
            np.zeros((self.height, self.width, 3), dtype=np.uint8), format="rgb24"
        )
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, 90000)
        self._pts += 3000
        return frame


class FakeAudioTrack(MediaStreamTrack):
    """무음 프레임을 내보내는 오디오 트랙."""

    kind = "audio"

    def __init__(self):
        super().__init__()
        self._pts = 0

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(0.02)
        frame = AudioFrame(format="s16", layout="mono", samples=960)
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        frame.sample_rate = 48000
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, 48000)
        self._pts += 960
        return frame


class StalledVideoTrack(MediaStreamTrack):
    """프레임을 내보내지 않는 비디오 트랙 (첫 프레임 전 상태 재현용)."""

    kind = "video"

    def __init__(self):
        super().__init__()
        self._never = asyncio.Event()

    async def recv(self):
        await self._never.wait()


def make_playback(video: bool = True, audio: bool = True, native_capture: bool = True) -> MediaPlayback:
    player = SimpleNamespace(
        video=FakeVideoTrack() if video else None,
        audio=FakeAudioTrack() if audio else None,
    )
    return MediaPlayback(player, native_capture=native_capture)


# ===== 피어 연결 =====


class FakeSender:
    """RTCRtpSender 대역. setParameters 호출을 기록합니다."""

    def __init__(self, kind: str, track: Optional[MediaStreamTrack] = None):
        self.kind = kind
        self.track = track
        self.parameters: List[dict] = []
        self.replaced: List[Optional[MediaStreamTrack]] = []

    def replaceTrack(self, track: Optional[MediaStreamTrack]) -> None:
        self.track = track
        self.replaced.append(track)

    async def setParameters(self, parameters: dict) -> None:
        self.parameters.append(parameters)


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label: str):
        super().__init__()
        self.label = label


class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection 대역.

    offer/answer는 고정 SDP를 돌려주고, 게스트 측에서 offer를 remote
    description으로 설정하면 준비된 수신 트랙으로 track 이벤트를 발생시킵니다.
    """

    def __init__(self, configuration=None, incoming: Optional[List[MediaStreamTrack]] = None):
        super().__init__()
        self.configuration = configuration
        self.incoming = list(incoming or [])
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.remote_set_count = 0
        self.offers_created = 0
        self.senders: List[FakeSender] = []
        self.channels: List[FakeDataChannel] = []
        self.candidates: list = []
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.closed = False
        self._tracks_emitted = False

    async def createOffer(self) -> RTCSessionDescription:
        self.offers_created += 1
        return RTCSessionDescription(sdp=make_sdp(), type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=make_sdp("3900000001"), type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description
        self.remote_set_count += 1
        if description.type == "offer" and not self._tracks_emitted:
            self._tracks_emitted = True
            for track in self.incoming:
                self.emit("track", track)

    def addTrack(self, track: MediaStreamTrack) -> FakeSender:
        for sender in self.senders:
            if sender.kind == track.kind and sender.track is None:
                sender.track = track
                return sender
        sender = FakeSender(track.kind, track)
        self.senders.append(sender)
        return sender

    def getSenders(self) -> List[FakeSender]:
        return list(self.senders)

    def getTransceivers(self) -> list:
        return []

    def createDataChannel(self, label: str) -> FakeDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"


class FakePeerConnectionFactory:
    """pc_factory 대역. 만든 연결을 기록합니다."""

    def __init__(self, incoming: Optional[Callable[[], List[MediaStreamTrack]]] = None):
        self.incoming = incoming
        self.created: List[FakePeerConnection] = []

    def __call__(self, configuration) -> FakePeerConnection:
        pc = FakePeerConnection(configuration, incoming=self.incoming() if self.incoming else None)
        self.created.append(pc)
        return pc


class StubIceProvider:
    """항상 fallback 목록을 돌려주는 ICE provider."""

    def __init__(self):
        self.calls = 0

    async def get_ice_servers(self, force: bool = False):
        self.calls += 1
        return fallback_ice_servers()


class FakeSink:
    """MediaBlackhole 대역."""

    def __init__(self):
        self.tracks: List[MediaStreamTrack] = []
        self.started = False
        self.stopped = False

    def addTrack(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


# ===== 시그널링 =====


class FakeWebSocket:
    """릴레이 참가자용 WebSocket 대역."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.sent: List[dict] = []

    async def send_json(self, message: dict) -> None:
        self.sent.append(message)


class MessageLog:
    """send 콜백 대역. 보낸 메시지를 기록합니다."""

    def __init__(self):
        self.messages: List[dict] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.messages if m.get("type") == message_type]


def drain(participant: Participant) -> List[dict]:
    """참가자 송신 큐에 쌓인 메시지를 꺼냅니다."""
    messages = []
    while True:
        try:
            message = participant.outbox.get_nowait()
        except asyncio.QueueEmpty:
            return messages
        if message is not None:
            messages.append(message)


class RelayHarness:
    """in-process 릴레이로 여러 RoomSession을 연결하는 하네스."""

    def __init__(self):
        self.relay = SignalingRelay(RoomManager())
        self.sessions: Dict[Participant, object] = {}
        self.delivered: Dict[Participant, List[dict]] = {}

    def attach(self, session_factory: Callable[[Callable], object]):
        participant = self.relay.connect(FakeWebSocket())

        async def send(message: dict) -> None:
            await self.relay.handle_message(participant, message)

        session = session_factory(send)
        self.sessions[participant] = session
        self.delivered[participant] = []
        return participant, session

    async def flush(self, rounds: int = 50) -> None:
        """릴레이 송신 큐가 빌 때까지 메시지를 세션에 전달합니다."""
        for _ in range(rounds):
            delivered = False
            for participant, session in list(self.sessions.items()):
                for message in drain(participant):
                    delivered = True
                    self.delivered[participant].append(message)
                    await session.handle_message(message)
            if not delivered:
                return

    def received(self, participant: Participant, message_type: str) -> List[dict]:
        return [m for m in self.delivered[participant] if m.get("type") == message_type]


# ===== Fixtures =====


@pytest.fixture
def room_manager():
    return RoomManager()


@pytest.fixture
def relay(room_manager):
    return SignalingRelay(room_manager)


@pytest.fixture
def message_log():
    return MessageLog()


@pytest.fixture
def ice_provider():
    return StubIceProvider()


@pytest.fixture
def pc_factory():
    return FakePeerConnectionFactory()


@pytest.fixture
def guest_pc_factory():
    return FakePeerConnectionFactory(incoming=lambda: [FakeVideoTrack(), FakeAudioTrack()])


@pytest.fixture
def playback():
    media = make_playback()
    yield media
    media.stop()


@pytest.fixture
def harness():
    return RelayHarness()
