"""Canvas 재렌더링 비디오 트랙 모듈.

재생 중인 미디어의 비디오를 목표 해상도로 다시 그려서 송출하는 fallback
트랙을 제공합니다. 네이티브 캡처가 불가능하거나 해상도를 강제해야 할 때
사용합니다.
"""

import asyncio
import logging
from typing import Optional

import numpy as np
from av import VideoFrame
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)


class CanvasRenderTrack(VideoStreamTrack):
    """원본 비디오를 목표 해상도로 재렌더링하는 트랙.

    백그라운드 렌더 루프가 원본 트랙에서 프레임을 받아 목표 해상도로
    변환해 최신 프레임 하나를 보관하고, recv()는 30fps 간격으로 그 프레임을
    내보냅니다 (off-screen canvas의 captureStream과 같은 동작).

    Attributes:
        kind (str): 트랙 종류 ("video")
        source (MediaStreamTrack): 재렌더링할 원본 비디오 트랙 (보통 MediaRelay 구독)
        width (int): 목표 가로 해상도
        height (int): 목표 세로 해상도

    Note:
        - 첫 프레임이 도착하기 전에는 검은 프레임을 송출
        - stop() 호출 시 렌더 루프를 취소하고 원본 구독도 종료

    Examples:
        >>> relay = MediaRelay()
        >>> canvas = CanvasRenderTrack(relay.subscribe(player.video), 1920, 1080)
        >>> pc.addTrack(canvas)
        >>> canvas.stop()  # 렌더 루프 정리
    """
    kind = "video"

    def __init__(self, source: MediaStreamTrack, width: int, height: int):
        """CanvasRenderTrack 초기화.

        Args:
            source (MediaStreamTrack): 원본 비디오 트랙
            width (int): 목표 가로 해상도
            height (int): 목표 세로 해상도

        Raises:
            RuntimeError: 실행 중인 이벤트 루프가 없을 때
        """
        super().__init__()
        self.source = source
        self.width = width
        self.height = height
        self.frames_rendered = 0

        self._latest: Optional[VideoFrame] = None
        self._render_task: Optional[asyncio.Task] = asyncio.ensure_future(self._render_loop())

    @property
    def render_task(self) -> Optional[asyncio.Task]:
        return self._render_task

    @property
    def is_rendering(self) -> bool:
        """렌더 루프가 아직 살아있는지 여부."""
        if self.readyState != "live":
            return False
        return self._render_task is not None and not self._render_task.done()

    async def _render_loop(self) -> None:
        logger.info(f"[Capture] canvas 렌더 루프 시작 ({self.width}x{self.height})")
        try:
            while True:
                frame = await self.source.recv()
                self._latest = frame.reformat(width=self.width, height=self.height)
                self.frames_rendered += 1
        except MediaStreamError:
            logger.info("[Capture] canvas 원본 트랙 종료")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Capture] canvas 렌더 루프 오류: {type(e).__name__}: {e}", exc_info=True)
        finally:
            logger.info(f"[Capture] canvas 렌더 루프 종료. 총 프레임: {self.frames_rendered}")

    def _blank_frame(self) -> VideoFrame:
        return VideoFrame.from_ndarray(
            np.zeros((self.height, self.width, 3), dtype=np.uint8), format="rgb24"
        )

    async def recv(self) -> VideoFrame:
        """다음 프레임을 30fps 간격으로 반환합니다.

        Raises:
            MediaStreamError: 트랙이 종료된 후 호출된 경우
        """
        pts, time_base = await self.next_timestamp()

        frame = self._latest if self._latest is not None else self._blank_frame()
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def stop(self) -> None:
        if self._render_task is not None and not self._render_task.done():
            self._render_task.cancel()
        self.source.stop()
        super().stop()
