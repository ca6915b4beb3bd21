"""Backend modules package.

이 패키지는 WebRTC 기반 같이 보기(watch party) 시스템의 핵심 모듈을 포함합니다.

Modules:
    signaling: 룸/역할 상태와 시그널링 메시지 중계 (서버)
    ice: TURN 벤더 ICE 자격증명 발급 및 캐시 (서버)
    webrtc: 피어 세션 협상, 송출 품질 제어, 룸 세션 (클라이언트)
    shared: 서버/클라이언트 공용 DTO와 메시지 타입

NOTE: aiortc에 의존하는 webrtc 패키지는 서버에서 import하지 않도록
여기서 즉시 import하지 않습니다.
"""

from .shared import IceServerInfo
from .signaling import SignalingRelay, RoomManager
from .ice import IceCredentialService, get_ice_credential_service

__all__ = [
    # Shared DTOs
    "IceServerInfo",
    # Signaling
    "SignalingRelay",
    "RoomManager",
    # ICE
    "IceCredentialService",
    "get_ice_credential_service",
]
