"""WebRTC 피어 세션 관리 모듈.

이 모듈은 원격 참가자별 RTCPeerConnection과 협상(offer/answer/ICE) 상태를
관리합니다. 호스트만 offer를 만들고, 게스트는 받은 offer에 answer로 응답합니다.

주요 기능:
    - 원격 ID별 피어 세션 생성 (ID당 하나, 중복 생성은 no-op)
    - 호스트: 로컬 트랙 부착 + 제어 데이터채널(ctrl) 생성, offer 발행
    - 게스트: 수신 트랙/데이터채널 대기, offer 수신 시 answer 응답
    - 중복 offer(지문 기준)/중복 answer(송신자+라운드 기준) 무시
    - 피어별 협상 잠금 (한 피어에 대해 동시에 하나의 협상만 진행)
    - ICE candidate 전달 (송신자를 모르면 열린 모든 세션에 적용)

Session State:
    NEW → PENDING_LOCAL_OFFER → ESTABLISHED ⟷ RENEGOTIATING
    CLOSED는 어느 상태에서든 도달 가능

WebRTC Flow (host):
    1. ensure_session(): RTCPeerConnection 생성, 로컬 트랙 부착, ctrl 채널 생성
    2. negotiate(): 이전 offer의 answer 대기 → prepare 콜백 → offer 전송
    3. apply_answer(): answer를 remote description으로 설정 → ESTABLISHED

WebRTC Flow (guest):
    1. accept_offer(): 지문 중복 확인 → 세션 생성 → remote description 설정
    2. answer 생성 및 전송 → ESTABLISHED

Examples:
    >>> manager = PeerSessionManager(role="host", send=session_send)
    >>> await manager.ensure_session("guest01")
    >>> await manager.negotiate("guest01")
    >>> await manager.apply_answer("guest01", {"type": "answer", "sdp": "..."})

See Also:
    session.py: 룸 세션 컨텍스트 (메시지 라우팅)
    capture.py: 송출 소스와 재협상
"""
import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription, MediaStreamTrack

from .config import client_config
from .dedup import ReplayGuard
from .ice_provider import IceConfigProvider, to_rtc_configuration
from .sdp import (
    prefer_codec,
    sdp_fingerprint,
    set_origin_version,
    apply_codec_preferences,
    candidate_to_message,
    candidate_from_message,
)

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_GUEST = "guest"

SendFunc = Callable[[dict], Awaitable[None]]


class PeerState(str, enum.Enum):
    """피어 세션 협상 상태."""
    NEW = "new"
    PENDING_LOCAL_OFFER = "pending-local-offer"
    ESTABLISHED = "established"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


@dataclass(eq=False)
class PeerSession:
    """원격 참가자 하나와의 피어 세션.

    Attributes:
        remote_id (str): 원격 참가자 연결 ID
        pc (RTCPeerConnection): 미디어 전송 연결
        state (PeerState): 협상 상태
        control_channel: 보조 제어 데이터채널 (호스트가 생성, 게스트가 수신)
        remote_tracks (List[MediaStreamTrack]): 수신한 원격 트랙 (게스트)
        source: 현재 부착된 송출 소스 (호스트)
        encoding: 마지막으로 적용한 인코딩 파라미터 (호스트)
        offer_round (int): 발행한 offer 수
        offer_fingerprint (Optional[str]): 마지막으로 보낸 offer의 지문
        answered (asyncio.Event): 마지막 offer의 answer 수신 여부
        negotiation_lock (asyncio.Lock): 피어별 협상 잠금
    """
    remote_id: str
    pc: Any
    state: PeerState = PeerState.NEW
    control_channel: Any = None
    remote_tracks: List[MediaStreamTrack] = field(default_factory=list)
    source: Any = None
    encoding: Any = None
    offer_round: int = 0
    offer_fingerprint: Optional[str] = None
    answered: asyncio.Event = field(default_factory=asyncio.Event)
    negotiation_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def __post_init__(self):
        # No offer outstanding yet
        self.answered.set()

    @property
    def offer_outstanding(self) -> bool:
        return not self.answered.is_set()

    @property
    def is_closed(self) -> bool:
        return self.state is PeerState.CLOSED


def _parse_description(payload: Any, expected_type: str) -> Optional[RTCSessionDescription]:
    """메시지의 sdp 필드를 RTCSessionDescription으로 변환합니다.

    {"type": ..., "sdp": ...} 객체와 SDP 문자열 둘 다 허용합니다.
    """
    if isinstance(payload, dict):
        text = payload.get("sdp")
        sdp_type = payload.get("type") or expected_type
    else:
        text = payload
        sdp_type = expected_type
    if not isinstance(text, str) or not text or sdp_type != expected_type:
        return None
    return RTCSessionDescription(sdp=text, type=sdp_type)


async def maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class PeerSessionManager:
    """원격 ID별 피어 세션과 협상을 관리하는 클래스.

    룸 멤버십 하나의 수명 동안 사용되며, 떠날 때 close_all()로 정리합니다.
    중복 offer/answer 방지 집합도 이 수명에 묶여 있습니다.

    Attributes:
        role (str): 이 참가자의 역할 ("host" | "guest")
        sessions (Dict[str, PeerSession]): 원격 ID → 피어 세션
        offer_guard (ReplayGuard): 처리한 offer 지문
        answer_guard (ReplayGuard): 처리한 answer (송신자#라운드)

    Callbacks:
        attach_local(session): 호스트 세션 생성 직후 현재 송출 소스 부착
        on_remote_track(remote_id, track): 게스트가 원격 트랙을 받았을 때
        on_control_channel(remote_id, channel): 제어 채널이 열렸을 때
    """

    def __init__(
        self,
        role: str,
        send: SendFunc,
        ice_provider: Optional[IceConfigProvider] = None,
        pc_factory: Optional[Callable[[Any], Any]] = None,
        attach_local: Optional[Callable[[PeerSession], Any]] = None,
        on_remote_track: Optional[Callable[[str, MediaStreamTrack], Any]] = None,
        on_control_channel: Optional[Callable[[str, Any], Any]] = None,
        answer_wait_timeout: Optional[float] = None,
    ):
        self.role = role
        self._send = send
        self.ice_provider = ice_provider or IceConfigProvider()
        self.pc_factory = pc_factory or (lambda configuration: RTCPeerConnection(configuration=configuration))
        self.attach_local = attach_local
        self.on_remote_track = on_remote_track
        self.on_control_channel = on_control_channel
        self.answer_wait_timeout = (
            client_config.ANSWER_WAIT_TIMEOUT if answer_wait_timeout is None else answer_wait_timeout
        )

        # remote_id -> PeerSession
        self.sessions: Dict[str, PeerSession] = {}

        # remote_id -> creation lock (ICE fetch may suspend)
        self._create_locks: Dict[str, asyncio.Lock] = {}

        self.offer_guard = ReplayGuard()
        self.answer_guard = ReplayGuard()

        # o= session version for outgoing offers
        self._sdp_version = 0

    @property
    def is_host(self) -> bool:
        return self.role == ROLE_HOST

    def get(self, remote_id: str) -> Optional[PeerSession]:
        return self.sessions.get(remote_id)

    def remote_ids(self) -> List[str]:
        return [rid for rid, s in self.sessions.items() if not s.is_closed]

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    # ------------------------------------------------------------
    # 세션 생성
    # ------------------------------------------------------------

    async def ensure_session(self, remote_id: str) -> PeerSession:
        """원격 ID에 대한 세션을 반환하고, 없으면 생성합니다.

        ICE 서버 목록을 받아 RTCPeerConnection을 만들고 이벤트 핸들러를
        등록합니다. 호스트는 현재 송출 트랙을 부착하고 ctrl 데이터채널을
        열며, 게스트는 수신 트랙과 데이터채널을 기다립니다.

        Args:
            remote_id (str): 원격 참가자 연결 ID

        Returns:
            PeerSession: 기존 또는 새 세션
        """
        session = self.sessions.get(remote_id)
        if session is not None:
            return session

        create_lock = self._create_locks.setdefault(remote_id, asyncio.Lock())
        async with create_lock:
            session = self.sessions.get(remote_id)
            if session is not None:
                return session

            servers = await self.ice_provider.get_ice_servers()
            pc = self.pc_factory(to_rtc_configuration(servers))
            session = PeerSession(remote_id=remote_id, pc=pc)
            self.sessions[remote_id] = session
            self._register_handlers(session)

            if self.is_host:
                if self.attach_local is not None:
                    await maybe_await(self.attach_local(session))
                session.control_channel = pc.createDataChannel(client_config.CONTROL_CHANNEL_LABEL)
                self._watch_control_channel(session, session.control_channel)

            logger.info(f"[WebRTC] 피어 세션 생성: remote={remote_id}, role={self.role}, "
                        f"ICE 서버 {len(servers)}개")

        self._create_locks.pop(remote_id, None)
        return session

    def _register_handlers(self, session: PeerSession) -> None:
        pc = session.pc
        remote_id = session.remote_id

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            """로컬 ICE candidate를 원격 참가자에게 전달."""
            if candidate is None or session.is_closed:
                return
            await self._send({"type": "ice", "to": remote_id, "candidate": candidate_to_message(candidate)})

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            # Diagnostics only; negotiation state is driven by signaling messages
            logger.info(f"[WebRTC] 피어 {remote_id} 연결 상태: {pc.connectionState}")

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            logger.debug(f"[WebRTC] 피어 {remote_id} ICE 상태: {pc.iceConnectionState}")

        if self.is_host:
            return

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            """원격 미디어 트랙 수신 (게스트).

            setRemoteDescription 도중 호출되므로 answer 전송 전에 트랙이 기록됩니다.
            """
            logger.info(f"[WebRTC] 피어 {remote_id} {track.kind} 트랙 수신")
            session.remote_tracks.append(track)

            @track.on("ended")
            def on_ended():
                logger.info(f"[WebRTC] 피어 {remote_id} {track.kind} 트랙 종료")

            if self.on_remote_track is not None:
                result = self.on_remote_track(remote_id, track)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)

        @pc.on("datachannel")
        def on_datachannel(channel):
            """호스트가 연 제어 채널 수신 (게스트)."""
            logger.info(f"[WebRTC] 피어 {remote_id} 데이터채널 수신: {channel.label}")
            session.control_channel = channel
            self._watch_control_channel(session, channel)

    def _watch_control_channel(self, session: PeerSession, channel: Any) -> None:
        if channel is None:
            return

        @channel.on("open")
        def on_open():
            logger.info(f"[WebRTC] 피어 {session.remote_id} 제어 채널 열림")
            if self.on_control_channel is not None:
                result = self.on_control_channel(session.remote_id, channel)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)

    # ------------------------------------------------------------
    # offer 발행 (호스트)
    # ------------------------------------------------------------

    async def negotiate(
        self,
        remote_id: str,
        prepare: Optional[Callable[[PeerSession], Any]] = None,
    ) -> bool:
        """피어에 새 offer를 발행합니다.

        같은 피어의 이전 offer에 대한 answer가 아직 없으면 최대
        answer_wait_timeout초 기다린 뒤 진행합니다. 피어별 잠금 안에서
        prepare 콜백(트랙 교체, 인코딩 파라미터 적용)을 실행한 후 offer를
        보냅니다.

        Args:
            remote_id (str): 원격 참가자 ID
            prepare (Optional[Callable]): offer 직전에 실행할 콜백 (동기/비동기)

        Returns:
            bool: offer를 보냈으면 True
        """
        if not self.is_host:
            logger.warning(f"[WebRTC] 게스트는 offer를 발행하지 않음 (remote={remote_id})")
            return False

        session = self.sessions.get(remote_id)
        if session is None or session.is_closed:
            logger.debug(f"[WebRTC] 세션 없음, 협상 생략: {remote_id}")
            return False

        async with session.negotiation_lock:
            await self._wait_for_answer(session)
            if session.is_closed:
                return False

            if prepare is not None:
                try:
                    await maybe_await(prepare(session))
                except Exception as e:
                    logger.warning(f"[WebRTC] 피어 {remote_id} 협상 준비 실패: {type(e).__name__}: {e}")

            try:
                await self._send_offer(session)
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {remote_id} offer 생성/전송 실패: {type(e).__name__}: {e}",
                             exc_info=True)
                return False
        return True

    async def _wait_for_answer(self, session: PeerSession) -> None:
        if not session.offer_outstanding:
            return
        logger.info(f"[WebRTC] 피어 {session.remote_id} 이전 offer의 answer 대기 중...")
        try:
            await asyncio.wait_for(session.answered.wait(), timeout=self.answer_wait_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[WebRTC] 피어 {session.remote_id} answer 대기 시간 초과 "
                           f"({self.answer_wait_timeout:.0f}s), 새 offer 진행")

    async def _send_offer(self, session: PeerSession) -> None:
        """offer를 만들어 local description으로 설정하고 전송합니다. 협상 잠금 보유 필요."""
        pc = session.pc
        apply_codec_preferences(pc)

        offer = await pc.createOffer()
        await pc.setLocalDescription(RTCSessionDescription(sdp=prefer_codec(offer.sdp), type=offer.type))

        self._sdp_version += 1
        local = pc.localDescription
        sdp_text = set_origin_version(prefer_codec(local.sdp), self._sdp_version)
        fingerprint = sdp_fingerprint(sdp_text)

        session.offer_round += 1
        session.offer_fingerprint = fingerprint
        session.answered.clear()
        if session.state is PeerState.ESTABLISHED:
            session.state = PeerState.RENEGOTIATING
        elif session.state is PeerState.NEW:
            session.state = PeerState.PENDING_LOCAL_OFFER

        await self._send({
            "type": "offer",
            "to": session.remote_id,
            "sdp": {"type": local.type, "sdp": sdp_text},
            "offerFingerprint": fingerprint,
        })
        logger.info(f"[WebRTC] offer 전송: remote={session.remote_id}, round={session.offer_round}, "
                    f"state={session.state.value}")

    # ------------------------------------------------------------
    # offer 수신 (게스트)
    # ------------------------------------------------------------

    async def accept_offer(self, sender_id: str, sdp: Any, fingerprint: Optional[str] = None) -> bool:
        """받은 offer에 answer로 응답합니다.

        Args:
            sender_id (str): offer를 보낸 호스트 ID
            sdp: {"type": "offer", "sdp": "..."} 또는 SDP 문자열
            fingerprint (Optional[str]): offerFingerprint (없으면 SDP 접두사로 계산)

        Returns:
            bool: answer를 보냈으면 True
        """
        if self.is_host:
            logger.info(f"[WebRTC] 호스트는 offer를 받지 않음, 무시 (from={sender_id})")
            return False

        description = _parse_description(sdp, "offer")
        if description is None:
            logger.warning(f"[WebRTC] 잘못된 offer 무시 (from={sender_id})")
            return False

        key = fingerprint or sdp_fingerprint(description.sdp)
        if not self.offer_guard.check_and_add(key):
            logger.info(f"[WebRTC] 중복 offer 무시 (from={sender_id})")
            return False

        session = await self.ensure_session(sender_id)
        async with session.negotiation_lock:
            if session.is_closed:
                return False
            pc = session.pc
            try:
                await pc.setRemoteDescription(description)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(
                    RTCSessionDescription(sdp=prefer_codec(answer.sdp), type=answer.type)
                )
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {sender_id} answer 생성 실패: {type(e).__name__}: {e}",
                             exc_info=True)
                return False

            local = pc.localDescription
            await self._send({
                "type": "answer",
                "to": sender_id,
                "sdp": {"type": local.type, "sdp": prefer_codec(local.sdp)},
                "offerFingerprint": key,
            })
            session.state = PeerState.ESTABLISHED

        logger.info(f"[WebRTC] answer 전송: remote={sender_id}")
        return True

    # ------------------------------------------------------------
    # answer 수신 (호스트)
    # ------------------------------------------------------------

    async def apply_answer(self, sender_id: str, sdp: Any, fingerprint: Optional[str] = None) -> bool:
        """받은 answer를 remote description으로 설정합니다.

        같은 offer 라운드에 대한 두 번째 answer는 무시합니다. answer가 응답한
        offer의 지문을 담고 있으면 마지막으로 보낸 offer와 다른 (이전 라운드의)
        answer도 무시합니다.

        Returns:
            bool: remote description을 설정했으면 True
        """
        if not self.is_host:
            logger.info(f"[WebRTC] 게스트는 answer를 받지 않음, 무시 (from={sender_id})")
            return False

        session = self.sessions.get(sender_id)
        if session is None or session.is_closed:
            logger.warning(f"[WebRTC] 세션 없는 피어의 answer 무시 (from={sender_id})")
            return False

        if fingerprint and session.offer_fingerprint and fingerprint != session.offer_fingerprint:
            logger.info(f"[WebRTC] 이전 offer에 대한 answer 무시 (from={sender_id}, round={session.offer_round})")
            return False

        if not self.answer_guard.check_and_add(f"{sender_id}#{session.offer_round}"):
            logger.info(f"[WebRTC] 중복 answer 무시 (from={sender_id}, round={session.offer_round})")
            return False

        description = _parse_description(sdp, "answer")
        if description is None:
            logger.warning(f"[WebRTC] 잘못된 answer 무시 (from={sender_id})")
            return False

        try:
            await session.pc.setRemoteDescription(description)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {sender_id} answer 적용 실패: {type(e).__name__}: {e}")
            return False

        session.state = PeerState.ESTABLISHED
        session.answered.set()
        logger.info(f"[WebRTC] 피어 {sender_id} 협상 완료 (round={session.offer_round})")
        return True

    # ------------------------------------------------------------
    # ICE candidate
    # ------------------------------------------------------------

    async def add_ice_candidate(self, sender_id: Optional[str], payload: Any) -> int:
        """원격 ICE candidate를 적용합니다.

        송신자의 세션이 있으면 그 세션에만, 모르는 송신자면 열린 모든
        세션에 적용합니다.

        Returns:
            int: candidate를 적용한 세션 수
        """
        candidate = candidate_from_message(payload)
        if candidate is None:
            return 0

        session = self.sessions.get(sender_id) if sender_id else None
        if session is not None:
            targets = [session] if not session.is_closed else []
        else:
            targets = [s for s in self.sessions.values() if not s.is_closed]
            logger.debug(f"[WebRTC] 알 수 없는 송신자 {sender_id}의 candidate, 세션 {len(targets)}개에 적용")

        applied = 0
        for target in targets:
            try:
                await target.pc.addIceCandidate(candidate)
                applied += 1
            except Exception as e:
                logger.debug(f"[WebRTC] 피어 {target.remote_id} candidate 적용 실패: {e}")
        return applied

    # ------------------------------------------------------------
    # 정리
    # ------------------------------------------------------------

    async def close_session(self, remote_id: str) -> bool:
        """피어 세션을 닫고 제거합니다."""
        session = self.sessions.pop(remote_id, None)
        if session is None:
            return False

        session.state = PeerState.CLOSED
        # Wake up anyone waiting for this peer's answer
        session.answered.set()

        for track in session.remote_tracks:
            track.stop()
        session.remote_tracks.clear()

        try:
            await session.pc.close()
        except Exception as e:
            logger.debug(f"[WebRTC] 피어 {remote_id} 연결 종료 중 오류: {e}")

        logger.info(f"[WebRTC] 피어 {remote_id} 세션 종료")
        return True

    async def close_all(self) -> None:
        """모든 피어 세션을 닫고 중복 방지 집합을 비웁니다."""
        for remote_id in list(self.sessions.keys()):
            await self.close_session(remote_id)
        self.offer_guard.clear()
        self.answer_guard.clear()
