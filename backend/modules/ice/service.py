"""ICE 자격증명 서비스 모듈.

TURN 벤더(Xirsys)에서 임시 ICE 서버 자격증명을 발급받아 짧게 캐시합니다.
클라이언트의 ICE-Config Provider가 호출하는 `GET /ice` 엔드포인트의 백엔드입니다.

Behavior:
    1. force가 아니고 캐시가 유효하면 캐시된 번들을 반환
    2. 벤더 계정이 설정되지 않았으면 IceNotConfiguredError
    3. 벤더 호출 (PUT /_turn/{channel}, Basic 인증, body {"format": "urls"})
    4. 성공 시 번들을 60초간 캐시
    5. 벤더 호출 실패 시 이전 캐시가 있으면 그것을 반환, 없으면 예외

Error Mapping:
    IceNotConfiguredError: 500 (자격증명 미설정)
    IceVendorError: 502 (요청 오류, 비정상 상태 코드, 파싱 실패)
    IceVendorTimeoutError: 504 (벤더 응답 시간 초과)
"""
import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional
from urllib.parse import quote

import aiohttp

from .config import ice_vendor_config, IceVendorConfig

logger = logging.getLogger(__name__)


class IceServiceError(Exception):
    """ICE 자격증명 조회 실패의 기본 예외."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class IceNotConfiguredError(IceServiceError):
    """벤더 계정 정보가 설정되지 않음."""

    status_code = 500


class IceVendorError(IceServiceError):
    """벤더 요청 실패 (전송 오류, 비정상 응답, 파싱 실패)."""

    status_code = 502


class IceVendorTimeoutError(IceServiceError):
    """벤더 응답 시간 초과."""

    status_code = 504


class IceCredentialService:
    """벤더 발급 ICE 자격증명 번들을 캐시하는 서비스.

    Attributes:
        config (IceVendorConfig): 벤더 설정
        clock (Callable[[], float]): 캐시 만료 판단용 시계 (테스트에서 주입)

    Examples:
        >>> service = get_ice_credential_service()
        >>> bundle = await service.get_credentials()
        >>> bundle["v"]["iceServers"]
    """

    def __init__(
        self,
        config: Optional[IceVendorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ice_vendor_config
        self.clock = clock

        self._cached_body: Optional[Any] = None
        self._expires_at: float = 0.0

    @property
    def has_cache(self) -> bool:
        return self._cached_body is not None

    def _cache_valid(self) -> bool:
        return self._cached_body is not None and self._expires_at > self.clock()

    async def get_credentials(self, force: bool = False) -> Any:
        """ICE 자격증명 번들을 반환합니다.

        Args:
            force (bool): True면 캐시를 무시하고 벤더에 새로 요청

        Returns:
            Any: 벤더가 반환한 JSON 번들 (보통 {"v": {"iceServers": [...]}, "s": "ok"})

        Raises:
            IceNotConfiguredError: 벤더 계정 미설정
            IceVendorTimeoutError: 벤더 시간 초과 (캐시 없음)
            IceVendorError: 벤더 요청/파싱 실패 (캐시 없음)
        """
        if not force and self._cache_valid():
            return self._cached_body

        if not self.config.is_configured:
            raise IceNotConfiguredError("XIRSYS_IDENT/XIRSYS_SECRET not configured on the server")

        try:
            body = await self._fetch_from_vendor()
        except IceServiceError as e:
            if self._cached_body is not None:
                logger.warning(f"[ICE] 벤더 호출 실패, 이전 캐시 반환: {e.message}")
                return self._cached_body
            logger.error(f"[ICE] 벤더 호출 실패 (캐시 없음): {e.message}")
            raise

        self._cached_body = body
        self._expires_at = self.clock() + self.config.CACHE_TTL
        logger.info(f"[ICE] Xirsys iceServers 발급 완료 (캐시 {self.config.CACHE_TTL:.0f}s)")
        return body

    async def _fetch_from_vendor(self) -> Any:
        """벤더 API에 자격증명을 요청합니다."""
        url = f"https://{self.config.VENDOR_HOST}/_turn/{quote(self.config.CHANNEL, safe='')}"
        timeout = aiohttp.ClientTimeout(total=self.config.REQUEST_TIMEOUT)
        auth = aiohttp.BasicAuth(self.config.IDENT, self.config.SECRET)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(url, json={"format": "urls"}, auth=auth) as response:
                    raw = await response.text()
                    status = response.status
        except asyncio.TimeoutError:
            raise IceVendorTimeoutError("Xirsys timeout")
        except aiohttp.ClientError as e:
            raise IceVendorError("Xirsys request error", details=str(e))

        if status >= 400:
            raise IceVendorError(f"Xirsys responded with HTTP {status}", details=raw)

        try:
            return json.loads(raw)
        except ValueError:
            raise IceVendorError("Xirsys parse fail", details=raw)


# ============================================================
# 싱글톤
# ============================================================

_ice_credential_service: Optional[IceCredentialService] = None


def get_ice_credential_service() -> IceCredentialService:
    """IceCredentialService 싱글톤을 반환합니다."""
    global _ice_credential_service
    if _ice_credential_service is None:
        _ice_credential_service = IceCredentialService()
    return _ice_credential_service
