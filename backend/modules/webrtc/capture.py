"""송출 소스 및 품질 제어 모듈.

호스트가 재생 중인 미디어에서 품질 레벨별 송출 소스(네이티브 캡처 또는
canvas 재렌더링)를 만들고, 소스가 바뀔 때 모든 피어 세션에 새 소스를
부착한 뒤 재협상(offer)을 진행합니다.

Fallback Chain:
    - high / ultra: canvas 재렌더링 → 네이티브 캡처 → CaptureUnavailableError
    - auto: 네이티브 캡처 (제약된 런타임이면 생략) → canvas 1280x720 →
      CaptureUnavailableError
    - 소스 교체 중 모든 단계가 실패하면 현재 소스를 유지

Renegotiation:
    1. 피어마다 같은 종류의 sender 트랙을 교체 (없으면 addTrack)
    2. 인코딩 파라미터 적용 (최대 비트레이트, 30fps, 축소 없음)
    3. 새 offer 발행
    4. 모든 피어 처리 후 이전 소스 정지 (canvas 렌더 루프 포함)

Examples:
    >>> playback = MediaPlayback.open("movie.mp4")
    >>> controller = QualityController(playback)
    >>> await controller.activate(peer_manager)           # 스트림 시작
    >>> await controller.switch(peer_manager, "ultra")    # 품질 변경
    >>> await controller.stop()
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from .config import (
    client_config,
    QualityPreset,
    QUALITY_PRESETS,
    DEFAULT_QUALITY,
    get_quality_preset,
)
from .peer_manager import PeerSession, PeerSessionManager, maybe_await
from .tracks import CanvasRenderTrack

logger = logging.getLogger(__name__)

MODE_NATIVE = "native"
MODE_CANVAS = "canvas"


class CaptureUnavailableError(Exception):
    """품질 레벨의 모든 캡처 fallback이 실패함 (스트림 시작 불가)."""


# ============================================================
# 재생 미디어
# ============================================================

class MediaPlayback:
    """호스트가 재생 중인 미디어.

    aiortc MediaPlayer를 감싸고, 소비자마다 MediaRelay 구독을 제공합니다.

    Attributes:
        player: MediaPlayer (video/audio 트랙 제공)
        native_capture (bool): 네이티브 캡처 허용 여부
        relay (MediaRelay): 재생 트랙 구독용 릴레이
    """

    def __init__(self, player: Any, native_capture: bool = True):
        self.player = player
        self.native_capture = native_capture
        self.relay = MediaRelay()

    @classmethod
    def open(cls, path: str, loop: bool = False, native_capture: bool = True) -> "MediaPlayback":
        """미디어 파일을 열어 MediaPlayback을 만듭니다."""
        logger.info(f"[Capture] 미디어 열기: {path}")
        return cls(MediaPlayer(path, loop=loop), native_capture=native_capture)

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return getattr(self.player, "video", None)

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return getattr(self.player, "audio", None)

    @property
    def supports_native_capture(self) -> bool:
        return self.native_capture and self.video is not None

    def subscribe(self, track: MediaStreamTrack) -> MediaStreamTrack:
        return self.relay.subscribe(track)

    def capture_stream(self) -> List[MediaStreamTrack]:
        """재생 중인 미디어를 직접 캡처한 트랙 목록 (비디오, 오디오).

        Raises:
            CaptureUnavailableError: 네이티브 캡처를 쓸 수 없을 때
        """
        if not self.supports_native_capture:
            raise CaptureUnavailableError("native capture unavailable")
        return [self.subscribe(track) for track in (self.video, self.audio) if track is not None]

    def stop(self) -> None:
        for track in (self.video, self.audio):
            if track is not None:
                track.stop()


# ============================================================
# 송출 소스
# ============================================================

@dataclass(eq=False)
class OutgoingSource:
    """모든 피어 세션에 공급되는 호스트의 현재 송출 소스.

    루트 트랙을 MediaRelay로 구독해 피어마다 독립된 트랙을 나눠줍니다.

    Attributes:
        level (str): 품질 레벨
        preset (QualityPreset): 품질 프리셋
        mode (str): "native" | "canvas"
        tracks (List[MediaStreamTrack]): 루트 트랙 (비디오, 오디오)
        canvas (Optional[CanvasRenderTrack]): canvas 모드의 재렌더링 트랙
    """
    level: str
    preset: QualityPreset
    mode: str
    tracks: List[MediaStreamTrack]
    canvas: Optional[CanvasRenderTrack] = None
    relay: MediaRelay = field(default_factory=MediaRelay)
    subscriptions: List[MediaStreamTrack] = field(default_factory=list)
    stopped: bool = False

    @property
    def kinds(self) -> List[str]:
        return [track.kind for track in self.tracks]

    def subscribe(self) -> List[MediaStreamTrack]:
        """피어 하나에 부착할 트랙 구독을 만듭니다."""
        tracks = [self.relay.subscribe(track) for track in self.tracks]
        self.subscriptions.extend(tracks)
        return tracks

    def stop(self) -> None:
        """구독과 루트 트랙을 모두 정지합니다 (canvas 렌더 루프 포함)."""
        if self.stopped:
            return
        self.stopped = True
        # Roots before subscriptions
        for track in self.tracks:
            track.stop()
        for track in self.subscriptions:
            track.stop()
        self.subscriptions.clear()
        logger.info(f"[Capture] 송출 소스 정지: level={self.level}, mode={self.mode}")


# ============================================================
# 인코딩 파라미터
# ============================================================

@dataclass(frozen=True)
class EncodingParameters:
    """비디오 sender 인코딩 파라미터."""
    max_bitrate: int
    max_framerate: int
    scale_resolution_down_by: float = 1.0

    @classmethod
    def from_preset(cls, preset: QualityPreset) -> "EncodingParameters":
        return cls(preset.max_bitrate, preset.max_framerate, preset.scale_resolution_down_by)

    def to_dict(self) -> dict:
        return {
            "maxBitrate": self.max_bitrate,
            "maxFramerate": self.max_framerate,
            "scaleResolutionDownBy": self.scale_resolution_down_by,
        }


async def apply_sender_parameters(pc: Any, params: EncodingParameters) -> bool:
    """비디오 sender에 비트레이트/프레임레이트를 적용합니다 (best-effort).

    sender가 setParameters를 제공하면 encodings를 설정하고, 아니면 aiortc
    인코더의 목표 비트레이트를 직접 조정합니다. 실패해도 예외를 던지지
    않습니다.

    Returns:
        bool: 하나 이상의 sender에 적용했으면 True
    """
    applied = False
    for sender in pc.getSenders():
        if getattr(sender, "kind", None) != "video" or sender.track is None:
            continue
        try:
            if hasattr(sender, "setParameters"):
                await maybe_await(sender.setParameters({"encodings": [params.to_dict()]}))
                applied = True
            else:
                # aiortc creates the encoder lazily on the first frame
                encoder = getattr(sender, "_RTCRtpSender__encoder", None)
                if encoder is not None and hasattr(encoder, "target_bitrate"):
                    encoder.target_bitrate = params.max_bitrate
                    applied = True
        except Exception as e:
            logger.warning(f"[Capture] 인코딩 파라미터 적용 실패: {type(e).__name__}: {e}")
    return applied


# ============================================================
# 품질 제어
# ============================================================

class QualityController:
    """품질 레벨별 송출 소스를 만들고 피어 세션 재협상을 구동하는 클래스.

    Attributes:
        playback (Optional[MediaPlayback]): 재생 중인 미디어
        level (str): 선택된 품질 레벨 (비활성 상태에서는 다음 시작 시 적용)
        source (Optional[OutgoingSource]): 현재 송출 소스 (없으면 비활성)
        force_canvas (bool): 네이티브 캡처 대신 항상 canvas 사용
        handover_delay (float): 이전 소스 정지 전 대기 시간 (초)
    """

    def __init__(
        self,
        playback: Optional[MediaPlayback] = None,
        level: str = DEFAULT_QUALITY,
        force_canvas: Optional[bool] = None,
        handover_delay: Optional[float] = None,
    ):
        self.playback = playback
        self.level = level if level in QUALITY_PRESETS else DEFAULT_QUALITY
        self.source: Optional[OutgoingSource] = None
        self.force_canvas = client_config.FORCE_CANVAS_FALLBACK if force_canvas is None else force_canvas
        self.handover_delay = (
            client_config.SOURCE_HANDOVER_DELAY if handover_delay is None else handover_delay
        )
        self._switch_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.source is not None

    def select_level(self, level: str) -> bool:
        """품질 레벨을 기록합니다 (소스는 바꾸지 않음). 잘못된 레벨이면 False."""
        if level not in QUALITY_PRESETS:
            logger.warning(f"[Capture] 알 수 없는 품질 레벨 무시: {level}")
            return False
        self.level = level
        return True

    # ------------------------------------------------------------
    # 소스 생성
    # ------------------------------------------------------------

    def build_source(self, level: str) -> OutgoingSource:
        """품질 레벨에 맞는 송출 소스를 만듭니다.

        Raises:
            CaptureUnavailableError: fallback 체인이 모두 실패했을 때
        """
        preset = get_quality_preset(level)
        if preset is None:
            raise CaptureUnavailableError(f"unknown quality level: {level}")
        if self.playback is None:
            raise CaptureUnavailableError("no media loaded")

        if preset.prefer_native:
            attempts = [self._canvas_source] if self.force_canvas else [self._native_source, self._canvas_source]
        else:
            attempts = [self._canvas_source, self._native_source]

        for attempt in attempts:
            try:
                source = attempt(preset)
            except CaptureUnavailableError as e:
                logger.warning(f"[Capture] {level} 소스 생성 실패, 다음 방법 시도: {e}")
                continue
            logger.info(f"[Capture] 송출 소스 생성: level={level}, mode={source.mode}")
            return source

        raise CaptureUnavailableError(f"cannot start stream at quality '{level}'")

    def _native_source(self, preset: QualityPreset) -> OutgoingSource:
        tracks = self.playback.capture_stream()
        return OutgoingSource(level=preset.name, preset=preset, mode=MODE_NATIVE, tracks=tracks)

    def _canvas_source(self, preset: QualityPreset) -> OutgoingSource:
        video = self.playback.video
        if video is None:
            raise CaptureUnavailableError("no video to render")

        source_track = self.playback.subscribe(video)
        try:
            canvas = CanvasRenderTrack(source_track, preset.width, preset.height)
        except RuntimeError as e:
            source_track.stop()
            raise CaptureUnavailableError(f"canvas capture failed: {e}")

        tracks: List[MediaStreamTrack] = [canvas]
        if self.playback.audio is not None:
            tracks.append(self.playback.subscribe(self.playback.audio))
        return OutgoingSource(level=preset.name, preset=preset, mode=MODE_CANVAS, tracks=tracks, canvas=canvas)

    # ------------------------------------------------------------
    # 피어 세션에 부착
    # ------------------------------------------------------------

    async def install(self, session: PeerSession, source: Optional[OutgoingSource] = None) -> None:
        """피어 세션에 송출 소스를 부착하고 인코딩 파라미터를 적용합니다.

        같은 종류의 sender가 있으면 트랙만 교체하고, 없으면 addTrack 합니다.
        이미 같은 소스가 부착돼 있으면 파라미터만 다시 적용합니다.
        """
        source = source or self.source
        if source is None:
            return
        pc = session.pc

        if session.source is not source:
            senders = list(pc.getSenders())
            for track in source.subscribe():
                sender = next((s for s in senders if getattr(s, "kind", None) == track.kind), None)
                try:
                    if sender is not None:
                        await maybe_await(sender.replaceTrack(track))
                    else:
                        pc.addTrack(track)
                except Exception as e:
                    logger.warning(f"[Capture] 피어 {session.remote_id} {track.kind} 트랙 부착 실패: {e}")

            # Kinds the new source no longer carries
            for sender in senders:
                if getattr(sender, "kind", None) not in source.kinds and sender.track is not None:
                    try:
                        await maybe_await(sender.replaceTrack(None))
                    except Exception as e:
                        logger.debug(f"[Capture] sender 트랙 해제 실패: {e}")

            session.source = source

        params = EncodingParameters.from_preset(source.preset)
        session.encoding = params
        await apply_sender_parameters(pc, params)

    # ------------------------------------------------------------
    # 소스 활성화 / 교체 / 정지
    # ------------------------------------------------------------

    async def activate(self, peers: PeerSessionManager, level: Optional[str] = None) -> OutgoingSource:
        """새 송출 소스를 만들고 모든 피어 세션에 부착한 뒤 재협상합니다.

        모든 피어가 새 소스를 받은 다음에 이전 소스를 정지합니다.

        Args:
            peers (PeerSessionManager): 호스트의 피어 세션 관리자
            level (Optional[str]): 품질 레벨 (None이면 현재 선택된 레벨)

        Returns:
            OutgoingSource: 활성 송출 소스

        Raises:
            CaptureUnavailableError: 소스를 만들 수 없고 유지할 기존 소스도 없을 때
        """
        async with self._switch_lock:
            level = level or self.level
            try:
                new_source = self.build_source(level)
            except CaptureUnavailableError:
                if self.source is not None:
                    logger.warning(f"[Capture] {level} 소스 생성 불가, 현재 소스 유지 ({self.source.level})")
                    return self.source
                raise

            self.level = level
            old_source = self.source
            self.source = new_source

            remote_ids = peers.remote_ids()
            results = await asyncio.gather(*[
                peers.negotiate(remote_id, prepare=lambda s: self.install(s, new_source))
                for remote_id in remote_ids
            ])
            logger.info(f"[Capture] 재협상 완료: level={level}, 피어 {sum(results)}/{len(remote_ids)}")

            if old_source is not None and old_source is not new_source:
                if self.handover_delay > 0:
                    await asyncio.sleep(self.handover_delay)
                old_source.stop()
            return new_source

    async def switch(self, peers: PeerSessionManager, level: str) -> Optional[OutgoingSource]:
        """품질 레벨을 바꿉니다. 스트림이 비활성이면 선택만 기록합니다."""
        if not self.select_level(level):
            return self.source
        if not self.active:
            logger.info(f"[Capture] 스트림 비활성, 다음 시작 시 {level} 적용")
            return None
        return await self.activate(peers, level)

    async def stop(self, peers: Optional[PeerSessionManager] = None) -> None:
        """현재 송출 소스를 정지합니다.

        피어 세션이 주어지면 sender 트랙을 먼저 비운 뒤 소스를 정지합니다.
        """
        async with self._switch_lock:
            source = self.source
            if source is None:
                return
            self.source = None

            if peers is not None:
                for remote_id in peers.remote_ids():
                    session = peers.get(remote_id)
                    if session is None or session.source is not source:
                        continue
                    for sender in session.pc.getSenders():
                        if sender.track is None:
                            continue
                        try:
                            await maybe_await(sender.replaceTrack(None))
                        except Exception as e:
                            logger.debug(f"[Capture] sender 트랙 해제 실패: {e}")
                    session.source = None
                if self.handover_delay > 0:
                    await asyncio.sleep(self.handover_delay)

            source.stop()
