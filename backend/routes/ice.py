"""ICE 자격증명 API 라우터.

클라이언트의 IceConfigProvider가 호출하는 /ice 엔드포인트를 제공합니다.
"""

import logging

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from modules.ice import get_ice_credential_service, IceServiceError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ice"])


@router.get("/ice")
async def get_ice_servers(force: str = Query("0")):
    """TURN 벤더에서 발급받은 ICE 서버 자격증명 번들을 반환합니다.

    Args:
        force: "1" 또는 "true"면 캐시를 무시하고 새로 발급

    Returns:
        dict: 벤더 응답 번들 ({"v": {"iceServers": [...]}, ...})

    Errors:
        500: 자격증명 미설정
        502: 벤더 호출 실패 (캐시 없음)
        504: 벤더 호출 시간 초과 (캐시 없음)
    """
    forced = force.strip().lower() in ("1", "true", "yes")
    service = get_ice_credential_service()
    try:
        return await service.get_credentials(force=forced)
    except IceServiceError as e:
        logger.warning(f"[ICE] 자격증명 제공 실패 ({e.status_code}): {e}")
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
