"""WebRTC 클라이언트 모듈.

룸 호스트/게스트 클라이언트 런타임: ICE 서버 조회, 피어 세션 협상,
송출 소스와 품질 제어, 룸 세션 컨텍스트, 릴레이 WebSocket 클라이언트.

Classes:
    RoomSession: 룸 멤버십 컨텍스트 및 릴레이 메시지 라우팅
    PeerSessionManager: 원격 참가자별 피어 세션과 offer/answer/ICE 협상
    QualityController: 품질 레벨별 송출 소스 생성 및 재협상
    MediaPlayback: 호스트가 재생 중인 미디어
    CanvasRenderTrack: 목표 해상도로 재렌더링하는 비디오 트랙
    IceConfigProvider: ICE 서버 목록 조회 (single-flight + 60초 캐시)
    SignalingClient: 릴레이 WebSocket 클라이언트

Config:
    client_config: 클라이언트 설정
    QUALITY_PRESETS: 품질 프리셋
"""

from .config import (
    client_config,
    ClientConfig,
    QualityPreset,
    QUALITY_PRESETS,
    QUALITY_AUTO,
    QUALITY_HIGH,
    QUALITY_ULTRA,
    DEFAULT_QUALITY,
    get_quality_preset,
)
from .dedup import ReplayGuard
from .ice_provider import IceConfigProvider, normalize_ice_servers, fallback_ice_servers
from .peer_manager import PeerSessionManager, PeerSession, PeerState, ROLE_HOST, ROLE_GUEST
from .tracks import CanvasRenderTrack
from .capture import (
    MediaPlayback,
    OutgoingSource,
    QualityController,
    EncodingParameters,
    CaptureUnavailableError,
)
from .session import RoomSession
from .signaling_client import SignalingClient

__all__ = [
    # Classes
    "RoomSession",
    "PeerSessionManager",
    "PeerSession",
    "PeerState",
    "QualityController",
    "MediaPlayback",
    "OutgoingSource",
    "EncodingParameters",
    "CaptureUnavailableError",
    "CanvasRenderTrack",
    "IceConfigProvider",
    "ReplayGuard",
    "SignalingClient",
    "normalize_ice_servers",
    "fallback_ice_servers",
    "ROLE_HOST",
    "ROLE_GUEST",
    # Config
    "client_config",
    "ClientConfig",
    "QualityPreset",
    "QUALITY_PRESETS",
    "QUALITY_AUTO",
    "QUALITY_HIGH",
    "QUALITY_ULTRA",
    "DEFAULT_QUALITY",
    "get_quality_preset",
]
