"""시그널링 릴레이 설정.

연결 ID 생성, 송신 큐 크기, 기본 룸 ID 등 릴레이 관련 상수.
메시지 타입은 클라이언트와 공유하는 modules.shared.protocol에 있습니다.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

from ..shared.protocol import (  # noqa: F401
    MSG_CREATE, MSG_JOIN, MSG_CREATED, MSG_JOINED, MSG_NEW_PEER,
    MSG_HOST_LEFT, MSG_PEER_LEFT, NEGOTIATION_TYPES, HOST_ONLY_TYPES,
)

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# 릴레이 설정
# ============================================================

@dataclass(frozen=True)
class RelayConfig:
    """릴레이 서버 설정."""

    # 연결 ID 길이 (base-36 문자)
    CONNECTION_ID_LENGTH: int = int(os.getenv("RELAY_CONNECTION_ID_LENGTH", "7"))

    # 연결별 송신 큐 최대 크기 (가득 차면 메시지 드랍)
    OUTBOX_SIZE: int = int(os.getenv("RELAY_OUTBOX_SIZE", "256"))

    # roomId 없이 create 요청 시 생성되는 룸 ID 접두사
    DEFAULT_ROOM_PREFIX: str = "room-"

    # 기본 룸 ID 난수 길이
    DEFAULT_ROOM_SUFFIX_LENGTH: int = 4

    # 브라우저 클라이언트 허용 Origin (정규식, 기본은 로컬 개발 서버)
    CORS_ORIGIN_REGEX: str = os.getenv(
        "RELAY_CORS_ORIGIN_REGEX", r"^http://(localhost|127\.0\.0\.1)(:\d+)?$"
    )


# ============================================================
# 싱글톤 인스턴스
# ============================================================

relay_config = RelayConfig()

logger.info(f"[Relay Config] 연결 ID 길이: {relay_config.CONNECTION_ID_LENGTH}, "
            f"송신 큐: {relay_config.OUTBOX_SIZE}")
