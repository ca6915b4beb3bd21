"""ICE 자격증명 서비스 설정.

TURN 벤더(Xirsys) 계정 정보와 캐시/타임아웃 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# TURN 벤더 설정
# ============================================================

@dataclass(frozen=True)
class IceVendorConfig:
    """Xirsys TURN 벤더 설정."""

    # 계정 정보
    IDENT: Optional[str] = os.getenv("XIRSYS_IDENT")
    SECRET: Optional[str] = os.getenv("XIRSYS_SECRET")
    CHANNEL: str = os.getenv("XIRSYS_CHANNEL", "MyFirstApp")

    # 벤더 API 호스트
    VENDOR_HOST: str = "global.xirsys.net"

    # 벤더 요청 타임아웃 (초)
    REQUEST_TIMEOUT: float = 15.0

    # 자격증명 캐시 유효 시간 (초)
    CACHE_TTL: float = 60.0

    @property
    def is_configured(self) -> bool:
        """벤더 계정 설정 완료 여부."""
        return bool(self.IDENT and self.SECRET)


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_vendor_config = IceVendorConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[ICE Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[ICE Config] Xirsys 설정 완료: {ice_vendor_config.is_configured}, "
            f"채널: {ice_vendor_config.CHANNEL}")
