"""같이 보기 호스트/게스트 클라이언트 실행 스크립트.

시그널링 릴레이에 연결해 호스트로 영상을 송출하거나 게스트로 수신합니다.

Usage:
    python client.py host --room demo --file movie.mp4 --quality high
    python client.py guest --room demo --record out.mp4
    python client.py guest --room demo --url ws://192.168.0.10:8000/ws --verbose
"""

import argparse
import asyncio
import logging

from aiortc.contrib.media import MediaRecorder

from modules.webrtc import (
    RoomSession,
    SignalingClient,
    MediaPlayback,
    CaptureUnavailableError,
    QUALITY_PRESETS,
    DEFAULT_QUALITY,
)

logger = logging.getLogger("client")

# created/joined 응답 대기 시간 (초)
BIND_TIMEOUT = 10.0


async def wait_for_role(session: RoomSession, timeout: float = BIND_TIMEOUT) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.role is None:
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.1)
    return True


async def run_host(args: argparse.Namespace) -> None:
    playback = MediaPlayback.open(args.file, loop=args.loop)
    client = SignalingClient(args.url)
    await client.connect()
    session = RoomSession(send=client.send, playback=playback, quality=args.quality)
    receiver = asyncio.create_task(client.run(session))

    try:
        await session.create(args.room)
        if not await wait_for_role(session):
            logger.error("릴레이에서 created 응답이 없습니다")
            return
        logger.info(f"룸 '{session.room_id}' 호스트 (id={session.peer_id})")

        try:
            source = await session.start_stream()
        except CaptureUnavailableError as e:
            logger.error(f"스트림을 시작할 수 없습니다: {e}")
            return
        logger.info(f"송출 시작: quality={source.level}, mode={source.mode}")

        await receiver
    finally:
        await session.leave()
        await client.close()
        receiver.cancel()
        playback.stop()


async def run_guest(args: argparse.Namespace) -> None:
    client = SignalingClient(args.url)
    await client.connect()

    sink_factory = (lambda: MediaRecorder(args.record)) if args.record else None

    def on_playback(message: dict) -> None:
        logger.info(f"재생 제어 수신: {message}")

    def on_stream_ended() -> None:
        logger.info("호스트 송출 종료")

    session = RoomSession(
        send=client.send,
        sink_factory=sink_factory,
        on_playback=on_playback,
        on_stream_ended=on_stream_ended,
    )
    receiver = asyncio.create_task(client.run(session))

    try:
        await session.join(args.room)
        if not await wait_for_role(session):
            logger.error("릴레이에서 joined 응답이 없습니다")
            return
        logger.info(f"룸 '{session.room_id}' 게스트 (id={session.peer_id})")
        await receiver
    finally:
        await session.leave()
        await client.close()
        receiver.cancel()


def main():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", default=None, help="시그널링 릴레이 WebSocket URL")
    common.add_argument("--verbose", "-v", action="store_true", help="DEBUG 로그 출력")

    parser = argparse.ArgumentParser(description="WebRTC watch party client")
    subparsers = parser.add_subparsers(dest="role", required=True)

    host = subparsers.add_parser("host", parents=[common], help="영상 파일을 룸에 송출")
    host.add_argument("--room", default=None, help="룸 ID (생략 시 서버가 생성)")
    host.add_argument("--file", required=True, help="송출할 미디어 파일")
    host.add_argument("--quality", choices=sorted(QUALITY_PRESETS), default=DEFAULT_QUALITY)
    host.add_argument("--loop", action="store_true", help="파일 반복 재생")

    guest = subparsers.add_parser("guest", parents=[common], help="룸에 참가해 영상 수신")
    guest.add_argument("--room", required=True, help="룸 ID")
    guest.add_argument("--record", default=None, help="수신 영상을 저장할 파일")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    runner = run_host if args.role == "host" else run_guest
    try:
        asyncio.run(runner(args))
    except KeyboardInterrupt:
        logger.info("종료")


if __name__ == "__main__":
    main()
