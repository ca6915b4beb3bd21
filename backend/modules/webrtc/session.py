"""룸/역할 세션 컨텍스트 모듈.

클라이언트 하나의 룸 멤버십(연결 ID, 역할, 룸 ID, 대기 게스트 큐)을 소유하고
릴레이에서 받은 메시지를 피어 세션 관리자와 품질 제어기로 라우팅합니다.
create/join 시 새 컨텍스트가 시작되고 leave() 또는 host-left로 끝납니다.

Message Routing:
    - created / joined: 역할 확정, 피어 세션 관리자 생성
    - new-peer (호스트): 스트림 전이면 대기 큐에 넣고, 송출 중이면 바로 협상
    - offer (게스트): answer 응답 후 수신 트랙 소비 시작
    - answer (호스트) / ice: 피어 세션 관리자로 전달
    - peer-left (호스트): 해당 게스트 세션 종료, 대기 큐에서 제거
    - host-left (게스트): 수신 중단, 모든 세션 종료, 멤버십 해제
    - screen-stopped (게스트): 수신 중단
    - video_url/play/pause/seek/sync (게스트): on_playback 콜백

Examples:
    >>> session = RoomSession(send=client.send, playback=MediaPlayback.open("movie.mp4"))
    >>> await session.create("demo")
    >>> # ... created, new-peer 메시지 처리 후
    >>> await session.start_stream()
    >>> await session.set_quality("ultra")
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

from .config import DEFAULT_QUALITY, QUALITY_PRESETS
from .capture import MediaPlayback, QualityController
from .ice_provider import IceConfigProvider
from .peer_manager import (
    ROLE_HOST,
    ROLE_GUEST,
    PeerSession,
    PeerSessionManager,
    maybe_await,
)
from ..shared.protocol import (
    MSG_CREATE, MSG_JOIN, MSG_CREATED, MSG_JOINED, MSG_NEW_PEER,
    MSG_OFFER, MSG_ANSWER, MSG_ICE, MSG_PEER_LEFT, MSG_HOST_LEFT,
    MSG_SCREEN_STOPPED, PLAYBACK_TYPES,
)

logger = logging.getLogger(__name__)


class RoomSession:
    """룸 멤버십 하나의 클라이언트 상태와 메시지 처리.

    Attributes:
        peer_id (Optional[str]): 릴레이가 배정한 연결 ID
        role (Optional[str]): "host" | "guest" (멤버십이 없으면 None)
        room_id (Optional[str]): 현재 룸 ID
        pending_guests (OrderedDict): 송출 시작 전 합류한 게스트 ID
        peers (Optional[PeerSessionManager]): 멤버십 동안의 피어 세션 관리자
        quality (QualityController): 송출 소스/품질 제어 (호스트)
    """

    def __init__(
        self,
        send: Callable[[dict], Awaitable[None]],
        ice_provider: Optional[IceConfigProvider] = None,
        playback: Optional[MediaPlayback] = None,
        quality: str = DEFAULT_QUALITY,
        pc_factory: Optional[Callable[[Any], Any]] = None,
        sink_factory: Optional[Callable[[], Any]] = None,
        on_playback: Optional[Callable[[dict], Any]] = None,
        on_stream_ended: Optional[Callable[[], Any]] = None,
        force_canvas: Optional[bool] = None,
        handover_delay: Optional[float] = None,
        answer_wait_timeout: Optional[float] = None,
    ):
        self._send = send
        self.ice_provider = ice_provider or IceConfigProvider()
        self.pc_factory = pc_factory
        self.sink_factory = sink_factory or MediaBlackhole
        self.on_playback = on_playback
        self.on_stream_ended = on_stream_ended
        self.answer_wait_timeout = answer_wait_timeout

        self.quality = QualityController(
            playback, level=quality, force_canvas=force_canvas, handover_delay=handover_delay
        )

        self.peer_id: Optional[str] = None
        self.role: Optional[str] = None
        self.room_id: Optional[str] = None
        self.requested_room: Optional[str] = None
        self.pending_guests: "OrderedDict[str, None]" = OrderedDict()
        self.peers: Optional[PeerSessionManager] = None
        # Held while a stream starts; new guests wait for it
        self._stream_lock = asyncio.Lock()

        # Guest-side consumer of inbound tracks
        self._sink: Any = None
        self._sink_tracks: list = []

    @property
    def is_host(self) -> bool:
        return self.role == ROLE_HOST

    @property
    def is_streaming(self) -> bool:
        return self.is_host and self.quality.active

    async def send(self, message: dict) -> None:
        """현재 룸 컨텍스트를 채워 릴레이로 메시지를 보냅니다."""
        outgoing = dict(message)
        if self.peer_id is not None:
            outgoing["from"] = self.peer_id
        if self.room_id is not None:
            outgoing.setdefault("roomId", self.room_id)
        await self._send(outgoing)

    # ------------------------------------------------------------
    # 멤버십
    # ------------------------------------------------------------

    async def create(self, room_id: Optional[str] = None) -> None:
        """룸을 만들고 호스트로 바인딩을 요청합니다. 이전 컨텍스트는 정리됩니다."""
        await self._reset()
        self.requested_room = room_id
        message = {"type": MSG_CREATE}
        if room_id:
            message["roomId"] = room_id
        await self.send(message)
        logger.info(f"[Session] 룸 생성 요청: {room_id or '(서버 지정)'}")

    async def join(self, room_id: str) -> None:
        """룸에 게스트로 참가를 요청합니다. 이전 컨텍스트는 정리됩니다."""
        await self._reset()
        self.requested_room = room_id
        await self.send({"type": MSG_JOIN, "roomId": room_id})
        logger.info(f"[Session] 룸 참가 요청: {room_id}")

    async def leave(self) -> None:
        """모든 피어 세션을 닫고 송출을 멈춘 뒤 멤버십을 해제합니다."""
        logger.info(f"[Session] 룸 '{self.room_id}' 나가기")
        await self._reset()

    async def _reset(self) -> None:
        if self.peers is not None:
            await self.peers.close_all()
        await self.quality.stop()
        await self._stop_sink()
        self.peers = None
        self.role = None
        self.room_id = None
        self.requested_room = None
        self.pending_guests.clear()

    def _new_peer_manager(self, role: str) -> PeerSessionManager:
        if role == ROLE_HOST:
            return PeerSessionManager(
                role,
                self.send,
                ice_provider=self.ice_provider,
                pc_factory=self.pc_factory,
                attach_local=self.quality.install,
                answer_wait_timeout=self.answer_wait_timeout,
            )
        return PeerSessionManager(
            role,
            self.send,
            ice_provider=self.ice_provider,
            pc_factory=self.pc_factory,
            on_remote_track=self._on_remote_track,
            answer_wait_timeout=self.answer_wait_timeout,
        )

    async def _bind(self, role: str, message: dict) -> None:
        if self.peers is not None and self.peers.role != role:
            await self.peers.close_all()
            self.peers = None
        self.peer_id = message.get("id") or self.peer_id
        self.role = role
        self.room_id = message.get("roomId") or self.requested_room
        if self.peers is None:
            self.peers = self._new_peer_manager(role)
        logger.info(f"[Session] 룸 '{self.room_id}' {role}로 참가 (id={self.peer_id})")

    # ------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------

    async def handle_message(self, message: dict) -> None:
        """릴레이에서 받은 메시지를 처리합니다."""
        message_type = message.get("type")
        sender_id = message.get("from")

        if message_type == MSG_CREATED:
            await self._bind(ROLE_HOST, message)
        elif message_type == MSG_JOINED:
            await self._bind(ROLE_GUEST, message)
        elif self.peers is None:
            logger.debug(f"[Session] 룸 멤버십 없음, {message_type} 무시")
        elif message_type == MSG_NEW_PEER:
            await self._on_new_peer(message.get("id"))
        elif message_type == MSG_OFFER:
            await self._on_offer(sender_id, message)
        elif message_type == MSG_ANSWER:
            await self.peers.apply_answer(sender_id, message.get("sdp"), message.get("offerFingerprint"))
        elif message_type == MSG_ICE:
            await self.peers.add_ice_candidate(sender_id, message.get("candidate"))
        elif message_type == MSG_PEER_LEFT:
            await self._on_peer_left(message.get("id"))
        elif message_type == MSG_HOST_LEFT:
            await self._on_host_left()
        elif message_type == MSG_SCREEN_STOPPED:
            if not self.is_host:
                logger.info("[Session] 호스트 화면 공유 중단")
                await self._end_stream()
        elif message_type in PLAYBACK_TYPES:
            if not self.is_host and self.on_playback is not None:
                await maybe_await(self.on_playback(message))
        else:
            logger.debug(f"[Session] 처리하지 않는 메시지 타입: {message_type}")

    async def _on_new_peer(self, guest_id: Optional[str]) -> None:
        if not self.is_host or not guest_id:
            return
        async with self._stream_lock:
            peers = self.peers
            if peers is None:
                return
            if not self.quality.active:
                self.pending_guests[guest_id] = None
                logger.info(f"[Session] 송출 전 게스트 대기열 추가: {guest_id} "
                            f"(대기 {len(self.pending_guests)}명)")
                return
            await peers.ensure_session(guest_id)
        await peers.negotiate(guest_id, prepare=self.quality.install)

    async def _on_offer(self, sender_id: Optional[str], message: dict) -> None:
        if self.is_host or not sender_id:
            logger.info(f"[Session] 호스트가 받은 offer 무시 (from={sender_id})")
            return
        accepted = await self.peers.accept_offer(
            sender_id, message.get("sdp"), message.get("offerFingerprint")
        )
        if accepted:
            await self._consume(self.peers.get(sender_id))

    async def _on_peer_left(self, guest_id: Optional[str]) -> None:
        if not guest_id:
            return
        self.pending_guests.pop(guest_id, None)
        await self.peers.close_session(guest_id)
        logger.info(f"[Session] 게스트 퇴장: {guest_id}")

    async def _on_host_left(self) -> None:
        if self.is_host:
            return
        logger.info(f"[Session] 호스트 퇴장, 룸 '{self.room_id}' 종료")
        await self._stop_sink()
        await self.peers.close_all()
        self.peers = None
        self.role = None
        self.room_id = None
        if self.on_stream_ended is not None:
            await maybe_await(self.on_stream_ended())

    # ------------------------------------------------------------
    # 수신 트랙 소비 (게스트)
    # ------------------------------------------------------------

    def _on_remote_track(self, remote_id: str, track: MediaStreamTrack) -> None:
        logger.info(f"[Session] 호스트 {remote_id}의 {track.kind} 트랙 도착")

    async def _consume(self, session: Optional[PeerSession]) -> None:
        """세션의 살아있는 수신 트랙을 싱크로 소비합니다. 트랙 구성이 같으면 유지."""
        if session is None:
            return
        tracks = [t for t in session.remote_tracks if t.readyState == "live"]
        if not tracks or tracks == self._sink_tracks:
            return

        await self._stop_sink()
        sink = self.sink_factory()
        for track in tracks:
            sink.addTrack(track)
        await sink.start()
        self._sink = sink
        self._sink_tracks = tracks
        logger.info(f"[Session] 수신 시작: 트랙 {len(tracks)}개")

    async def _stop_sink(self) -> None:
        sink = self._sink
        self._sink = None
        self._sink_tracks = []
        if sink is None:
            return
        try:
            await sink.stop()
        except Exception as e:
            logger.warning(f"[Session] 수신 싱크 정지 실패: {type(e).__name__}: {e}")

    async def _end_stream(self) -> None:
        await self._stop_sink()
        if self.on_stream_ended is not None:
            await maybe_await(self.on_stream_ended())

    # ------------------------------------------------------------
    # 호스트 API
    # ------------------------------------------------------------

    async def start_stream(self, level: Optional[str] = None):
        """송출을 시작합니다.

        대기 중인 게스트 큐를 한 번 비우며 세션이 없는 게스트에 대해 세션을
        만들고, 새 송출 소스를 모든 피어에 부착한 뒤 offer를 보냅니다.

        Args:
            level (Optional[str]): 품질 레벨 (None이면 선택된 레벨)

        Returns:
            OutgoingSource: 활성 송출 소스

        Raises:
            RuntimeError: 호스트가 아닐 때
            CaptureUnavailableError: 해당 레벨의 캡처 fallback이 모두 실패했을 때
        """
        if not self.is_host or self.peers is None:
            raise RuntimeError("only the room host can start a stream")

        async with self._stream_lock:
            pending = list(self.pending_guests)
            self.pending_guests.clear()
            for guest_id in pending:
                await self.peers.ensure_session(guest_id)
            if pending:
                logger.info(f"[Session] 대기 게스트 {len(pending)}명 세션 생성")

            return await self.quality.activate(self.peers, level)

    async def set_quality(self, level: str) -> bool:
        """품질 레벨을 바꿉니다. 송출 중이 아니면 다음 시작 시 적용됩니다."""
        if level not in QUALITY_PRESETS:
            logger.warning(f"[Session] 알 수 없는 품질 레벨: {level}")
            return False
        if not self.is_host or self.peers is None:
            logger.info("[Session] 호스트만 품질을 바꿀 수 있음")
            return False
        await self.quality.switch(self.peers, level)
        return True

    async def stop_stream(self) -> bool:
        """송출을 멈추고 게스트에게 screen-stopped를 보냅니다."""
        if not self.is_streaming:
            return False
        await self.quality.stop(self.peers)
        await self.send({"type": MSG_SCREEN_STOPPED})
        logger.info("[Session] 송출 중단")
        return True

    async def send_playback(self, message_type: str, **payload: Any) -> bool:
        """재생 제어 메시지(video_url/play/pause/seek/sync)를 게스트에게 보냅니다."""
        if message_type not in PLAYBACK_TYPES:
            logger.warning(f"[Session] 재생 제어 타입이 아님: {message_type}")
            return False
        if not self.is_host:
            logger.info(f"[Session] 호스트만 {message_type}를 보낼 수 있음")
            return False
        await self.send({"type": message_type, **payload})
        return True
