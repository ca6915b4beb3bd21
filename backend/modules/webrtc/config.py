"""WebRTC 클라이언트 설정.

시그널링/ICE 엔드포인트, fallback ICE 서버, 품질 프리셋 등 클라이언트 런타임
관련 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# 클라이언트 연결 설정
# ============================================================

@dataclass(frozen=True)
class ClientConfig:
    """시그널링 클라이언트 설정."""

    # 시그널링 릴레이 WebSocket URL
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")

    # ICE 자격증명 엔드포인트
    ICE_ENDPOINT: str = os.getenv("ICE_ENDPOINT", "http://localhost:8000/ice")

    # ICE 서버 목록 캐시 유효 시간 (초)
    ICE_CACHE_TTL: float = 60.0

    # ICE 엔드포인트 요청 타임아웃 (초)
    ICE_FETCH_TIMEOUT: float = 15.0

    # offer 중복 판별용 SDP 접두사 길이
    FINGERPRINT_LENGTH: int = 120

    # 코덱 우선순위 (앞쪽이 우선)
    CODEC_PRIORITY: tuple = ("VP8", "H264")

    # 중복 offer/answer 방지 집합 최대 크기 (LRU)
    REPLAY_GUARD_CAPACITY: int = 256

    # 이전 offer의 answer를 기다리는 최대 시간 (초)
    ANSWER_WAIT_TIMEOUT: float = float(os.getenv("ANSWER_WAIT_TIMEOUT", "10"))

    # 네이티브 캡처를 쓰지 않고 항상 canvas 재렌더링 사용 (제약된 런타임)
    FORCE_CANVAS_FALLBACK: bool = _env_flag("FORCE_CANVAS_FALLBACK")

    # 호스트가 여는 보조 제어 채널 라벨
    CONTROL_CHANNEL_LABEL: str = "ctrl"

    # 소스 교체 후 이전 소스 정지까지 대기 시간 (초)
    SOURCE_HANDOVER_DELAY: float = float(os.getenv("SOURCE_HANDOVER_DELAY", "0.5"))


# ============================================================
# Fallback ICE 서버
# ============================================================

# ICE 엔드포인트 실패 시 사용하는 공개 STUN + 테스트 TURN
FALLBACK_ICE_SERVERS: tuple = (
    {"urls": "stun:stun.l.google.com:19302"},
    {
        "urls": "turn:turn.anyfirewall.com:443?transport=tcp",
        "username": "webrtc",
        "credential": "webrtc",
    },
)


# ============================================================
# 품질 프리셋
# ============================================================

@dataclass(frozen=True)
class QualityPreset:
    """품질 레벨별 캡처/인코딩 설정.

    Attributes:
        name (str): 레벨 이름 (auto | high | ultra)
        width (int): canvas 재렌더링 가로 해상도
        height (int): canvas 재렌더링 세로 해상도
        max_bitrate (int): 비디오 최대 비트레이트 (bps)
        max_framerate (int): 최대 프레임레이트
        prefer_native (bool): 네이티브 캡처 우선 여부
    """
    name: str
    width: int
    height: int
    max_bitrate: int
    max_framerate: int = 30
    prefer_native: bool = False
    scale_resolution_down_by: float = 1.0


QUALITY_AUTO = "auto"
QUALITY_HIGH = "high"
QUALITY_ULTRA = "ultra"

QUALITY_PRESETS: Dict[str, QualityPreset] = {
    QUALITY_AUTO: QualityPreset(QUALITY_AUTO, 1280, 720, 600_000, prefer_native=True),
    QUALITY_HIGH: QualityPreset(QUALITY_HIGH, 1280, 720, 1_500_000),
    QUALITY_ULTRA: QualityPreset(QUALITY_ULTRA, 1920, 1080, 3_500_000),
}

DEFAULT_QUALITY = QUALITY_AUTO


def get_quality_preset(level: str) -> Optional[QualityPreset]:
    """품질 레벨 이름으로 프리셋을 조회합니다. 알 수 없는 레벨이면 None."""
    return QUALITY_PRESETS.get(level)


# ============================================================
# 싱글톤 인스턴스
# ============================================================

client_config = ClientConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] 시그널링: {client_config.SIGNALING_URL}, ICE: {client_config.ICE_ENDPOINT}")
if client_config.FORCE_CANVAS_FALLBACK:
    logger.info("[WebRTC Config] canvas fallback 강제 사용")
