"""시그널링 릴레이 모듈.

룸/참가자 상태 관리와 시그널링 메시지 중계 기능을 제공합니다.

Classes:
    SignalingRelay: 시그널링 메시지 라우팅
    RoomManager: 룸 및 참가자 관리
    Participant: 참가자 연결 데이터 클래스
    Room: 룸 데이터 클래스

Config:
    relay_config: 릴레이 설정
"""

from .room_manager import RoomManager, Room, Participant, ROLE_HOST, ROLE_GUEST
from .relay import SignalingRelay
from .config import relay_config, RelayConfig, HOST_ONLY_TYPES, NEGOTIATION_TYPES

__all__ = [
    # Classes
    "SignalingRelay",
    "RoomManager",
    "Room",
    "Participant",
    "ROLE_HOST",
    "ROLE_GUEST",
    # Config
    "relay_config",
    "RelayConfig",
    "HOST_ONLY_TYPES",
    "NEGOTIATION_TYPES",
]
