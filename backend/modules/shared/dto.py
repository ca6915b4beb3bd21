"""Lightweight shared DTOs for cross-service communication."""

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class IceServerInfo(BaseModel):
    """ICE 서버 서술자 (STUN/TURN).

    `/ice` 응답과 클라이언트 fallback 목록이 같은 형태를 사용합니다.
    알 수 없는 필드는 무시합니다.
    """

    model_config = ConfigDict(extra="ignore")

    urls: Union[str, List[str]] = Field(..., description="stun:/turn: URL 또는 URL 목록")
    username: Optional[str] = Field(default=None, description="TURN 사용자명")
    credential: Optional[str] = Field(default=None, description="TURN 자격증명")

    @property
    def url_list(self) -> List[str]:
        return [self.urls] if isinstance(self.urls, str) else list(self.urls)
