"""FastAPI WebRTC Watch Party Signaling Server.

이 모듈은 한 명의 호스트가 재생하는 영상을 여러 게스트에게 peer-to-peer로
송출하는 같이 보기 시스템의 시그널링 릴레이 서버를 제공합니다.
릴레이는 미디어를 다루지 않고 JSON 제어 메시지만 중계합니다.

주요 기능:
    - 룸 기반 호스트/게스트 관리 (룸당 호스트 최대 1명)
    - WebRTC offer/answer/ICE 메시지 중계
    - 호스트 전용 재생 제어 브로드캐스트
    - TURN 벤더 ICE 자격증명 제공 (/ice, 60초 캐시)
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - SignalingRelay: 메시지 라우팅
    - RoomManager: 룸 및 참가자 연결 상태 관리
    - IceCredentialService: ICE 자격증명 캐시
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modules import SignalingRelay, RoomManager
from modules.signaling.config import relay_config
from routes import health_router, ice_router, signaling_router, init_relay

# Load 환경변수 from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in log_path.glob("server_*.log"):
        try:
            file_date = datetime.strptime(log_file.stem.replace("server_", ""), "%Y%m%d")
            if file_date < cutoff_date:
                log_file.unlink()
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


# 글로벌 릴레이 인스턴스
room_manager = RoomManager()
relay = SignalingRelay(room_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    시작 시 오래된 로그를 정리하고, 종료 시 남은 연결 수를 기록합니다.
    룸 상태는 프로세스 메모리에만 있으므로 재시작하면 사라집니다.
    """
    logger.info("시그널링 릴레이 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info(f"서버 종료 중... (룸 {len(room_manager.rooms)}개, "
                f"연결 {room_manager.get_connection_count()}개)")


app = FastAPI(title="WebRTC Watch Party Signaling Server", lifespan=lifespan)

# CORS - 허용 Origin은 RELAY_CORS_ORIGIN_REGEX로 지정
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=relay_config.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(ice_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 릴레이 인스턴스 전달
init_relay(relay)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트.

    Returns:
        dict: 서버 상태 정보를 포함하는 딕셔너리
            - status (str): 서버 상태
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "WebRTC Watch Party Signaling Server"}


@app.get("/api/rooms")
async def get_rooms_api():
    """활성화된 모든 룸의 목록을 조회합니다.

    Returns:
        dict: 룸 목록 (room_id, has_host, host_id, guest_count)
    """
    return {"rooms": room_manager.get_room_list()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
