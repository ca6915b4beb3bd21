"""시그널링 릴레이 WebSocket 클라이언트.

릴레이(/ws)에 연결해 JSON 메시지를 주고받습니다. 수신 메시지는 RoomSession에
하나씩 순서대로 전달됩니다.

Examples:
    >>> client = SignalingClient()
    >>> await client.connect()
    >>> session = RoomSession(send=client.send)
    >>> await session.join("demo")
    >>> await client.run(session)
"""
import json
import logging
from typing import Any, AsyncIterator, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .config import client_config

logger = logging.getLogger(__name__)


class SignalingClient:
    """릴레이 WebSocket 연결.

    Attributes:
        url (str): 릴레이 WebSocket URL
        conn: websockets 클라이언트 연결 (connect() 전에는 None)
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or client_config.SIGNALING_URL
        self.conn: Any = None

    async def connect(self) -> None:
        self.conn = await websockets.connect(self.url)
        logger.info(f"[Signaling] 릴레이 연결: {self.url}")

    async def send(self, message: dict) -> None:
        """메시지를 보냅니다. 연결이 닫혀 있으면 드랍합니다."""
        if self.conn is None:
            logger.debug(f"[Signaling] 연결 전 메시지 드랍: {message.get('type')}")
            return
        try:
            await self.conn.send(json.dumps(message))
        except ConnectionClosed:
            logger.warning(f"[Signaling] 연결 종료됨, {message.get('type')} 드랍")

    async def messages(self) -> AsyncIterator[dict]:
        """수신한 JSON 객체를 순서대로 내보냅니다. 잘못된 프레임은 건너뜁니다."""
        try:
            async for raw in self.conn:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("[Signaling] 잘못된 JSON 프레임 무시")
                    continue
                if isinstance(message, dict):
                    yield message
        except ConnectionClosed as e:
            logger.info(f"[Signaling] 릴레이 연결 종료: {e}")

    async def run(self, session: Any) -> None:
        """연결이 끊길 때까지 수신 메시지를 세션에 전달합니다."""
        async for message in self.messages():
            try:
                await session.handle_message(message)
            except Exception as e:
                logger.error(f"[Signaling] {message.get('type')} 처리 실패: {type(e).__name__}: {e}",
                             exc_info=True)

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
