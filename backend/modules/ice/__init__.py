"""ICE 자격증명 모듈.

TURN 벤더에서 ICE 서버 자격증명을 발급받아 캐시하는 서버 측 서비스.
"""

from .service import (
    IceCredentialService,
    get_ice_credential_service,
    IceServiceError,
    IceNotConfiguredError,
    IceVendorError,
    IceVendorTimeoutError,
)
from .config import ice_vendor_config, IceVendorConfig

__all__ = [
    "IceCredentialService",
    "get_ice_credential_service",
    "IceServiceError",
    "IceNotConfiguredError",
    "IceVendorError",
    "IceVendorTimeoutError",
    "ice_vendor_config",
    "IceVendorConfig",
]
