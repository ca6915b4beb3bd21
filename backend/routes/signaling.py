"""시그널링 WebSocket 라우터.

/ws 엔드포인트로 들어온 연결을 SignalingRelay에 등록하고, 텍스트 프레임을
하나씩 순서대로 릴레이에 전달합니다. 연결별 송신은 pump 태스크가 담당합니다.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from modules.signaling import SignalingRelay

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 릴레이 참조 (app.py에서 설정됨)
_relay: Optional[SignalingRelay] = None


def init_relay(relay: SignalingRelay):
    """릴레이 인스턴스를 설정합니다. app.py에서 호출합니다."""
    global _relay
    _relay = relay
    logger.info("시그널링 라우터 릴레이 초기화 완료")


def get_relay() -> SignalingRelay:
    global _relay
    if _relay is None:
        _relay = SignalingRelay()
    return _relay


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """시그널링 WebSocket 엔드포인트.

    Message Types (수신):
        - create / join: 룸 호스트 바인딩 / 게스트 참가
        - offer / answer / ice: 룸 안에서 전달
        - video_url / play / pause / seek / sync / screen-stopped: 호스트 전용 브로드캐스트

    연결이 끊기면 호스트는 host-left로 룸을 종료하고, 게스트는 호스트에게
    peer-left를 알립니다.
    """
    relay = get_relay()
    await websocket.accept()
    participant = relay.connect(websocket)
    pump_task = asyncio.create_task(participant.pump())
    logger.info(f"[Relay] 연결 수락: {participant.conn_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            await relay.handle_raw(participant, raw)
    except WebSocketDisconnect:
        logger.info(f"[Relay] 연결 {participant.conn_id} 끊김")
    except Exception as e:
        logger.error(f"[Relay] 연결 {participant.conn_id} 처리 중 오류: {e}", exc_info=True)
    finally:
        await relay.disconnect(participant)
        pump_task.cancel()
        try:
            await pump_task
        except asyncio.CancelledError:
            pass
