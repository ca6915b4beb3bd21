"""ICE-Config Provider 모듈.

`/ice` 엔드포인트에서 ICE 서버 목록을 받아 60초간 캐시합니다.
동시에 여러 호출이 들어오면 하나의 요청 결과를 공유합니다 (single-flight).
엔드포인트 호출이 실패하거나 결과가 비어 있으면 fallback 목록을 사용하며,
이 모듈은 예외를 던지지 않습니다.

Accepted Response Shapes:
    - {"v": {"iceServers": [...]}}  (벤더 원본 형태)
    - {"iceServers": [...]}
    - [...]
    iceServers가 단일 객체면 1개짜리 목록으로 취급합니다.

Examples:
    >>> provider = IceConfigProvider()
    >>> servers = await provider.get_ice_servers()
    >>> configuration = to_rtc_configuration(servers)
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer
from pydantic import ValidationError

from ..shared import IceServerInfo
from .config import client_config, FALLBACK_ICE_SERVERS

logger = logging.getLogger(__name__)

Fetcher = Callable[[bool], Awaitable[Any]]


def fallback_ice_servers() -> List[IceServerInfo]:
    """하드코딩된 fallback ICE 서버 목록 (공개 STUN + 테스트 TURN)."""
    return [IceServerInfo.model_validate(entry) for entry in FALLBACK_ICE_SERVERS]


def normalize_ice_servers(payload: Any) -> List[IceServerInfo]:
    """응답 본문을 ICE 서버 목록으로 정규화합니다.

    형식이 맞지 않는 항목은 건너뜁니다.

    Args:
        payload: `/ice` 응답 JSON

    Returns:
        List[IceServerInfo]: 정규화된 목록 (인식할 수 없으면 빈 목록)
    """
    raw = payload
    if isinstance(payload, dict):
        nested = payload.get("v")
        if isinstance(nested, dict) and "iceServers" in nested:
            raw = nested["iceServers"]
        else:
            raw = payload.get("iceServers")

    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []

    servers = []
    for entry in raw:
        try:
            servers.append(IceServerInfo.model_validate(entry))
        except ValidationError:
            logger.debug(f"[ICE] 잘못된 ICE 서버 항목 무시: {entry!r}")
    return servers


def to_rtc_configuration(servers: List[IceServerInfo]) -> RTCConfiguration:
    """ICE 서버 목록을 aiortc RTCConfiguration으로 변환합니다."""
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
        for server in servers
    ])


class IceConfigProvider:
    """ICE 서버 목록을 가져오고 짧게 캐시하는 provider.

    Attributes:
        endpoint (str): `/ice` 엔드포인트 URL
        ttl (float): 캐시 유효 시간 (초)
        clock (Callable[[], float]): 만료 판단용 시계 (테스트에서 주입)

    Note:
        - 캐시는 마지막 갱신(성공 또는 fallback) 시점부터 ttl 동안 유효
        - 진행 중인 요청이 있으면 force 여부와 관계없이 그 결과를 공유
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        fetcher: Optional[Fetcher] = None,
    ):
        self.endpoint = endpoint or client_config.ICE_ENDPOINT
        self.ttl = client_config.ICE_CACHE_TTL if ttl is None else ttl
        self.clock = clock
        self._fetcher = fetcher or self._fetch_from_endpoint

        self._cached: List[IceServerInfo] = []
        self._expires_at: float = 0.0
        self._inflight: Optional[asyncio.Task] = None

    def cached_servers(self) -> Optional[List[IceServerInfo]]:
        """캐시가 유효하면 캐시된 목록을, 아니면 None을 반환합니다."""
        if self._cached and self._expires_at > self.clock():
            return list(self._cached)
        return None

    async def get_ice_servers(self, force: bool = False) -> List[IceServerInfo]:
        """ICE 서버 목록을 반환합니다.

        Args:
            force (bool): True면 캐시를 무시하고 새로 요청

        Returns:
            List[IceServerInfo]: ICE 서버 목록 (항상 1개 이상)
        """
        if not force:
            cached = self.cached_servers()
            if cached is not None:
                return cached

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh(force))
        servers = await asyncio.shield(self._inflight)
        return list(servers)

    async def _refresh(self, force: bool) -> List[IceServerInfo]:
        servers: List[IceServerInfo] = []
        try:
            payload = await self._fetcher(force)
            servers = normalize_ice_servers(payload)
            if not servers:
                logger.warning("[ICE] ICE 서버 목록이 비어 있음, fallback 사용")
        except Exception as e:
            logger.warning(f"[ICE] ICE 서버 조회 실패, fallback 사용: {type(e).__name__}: {e}")
        finally:
            self._inflight = None

        if not servers:
            servers = fallback_ice_servers()
        else:
            logger.info(f"[ICE] ICE 서버 {len(servers)}개 수신 (캐시 {self.ttl:.0f}s)")

        self._cached = servers
        self._expires_at = self.clock() + self.ttl
        return servers

    async def _fetch_from_endpoint(self, force: bool) -> Any:
        timeout = aiohttp.ClientTimeout(total=client_config.ICE_FETCH_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.endpoint, params={"force": "1" if force else "0"}) as response:
                response.raise_for_status()
                return await response.json(content_type=None)
