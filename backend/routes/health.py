"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트를 제공합니다.
"""

from fastapi import APIRouter

from modules.ice import get_ice_credential_service
from .signaling import get_relay

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 룸 수, 연결 수, ICE 캐시 여부
    """
    relay = get_relay()
    return {
        "status": "ok",
        "rooms": len(relay.rooms.rooms),
        "connections": relay.rooms.get_connection_count(),
        "ice_cached": get_ice_credential_service().has_cache,
    }
