"""룸 기반 참가자 관리 모듈.

이 모듈은 시그널링 릴레이의 룸(방)과 참가자 연결 상태를 담당합니다.
각 룸은 최대 한 명의 호스트와 여러 게스트를 가지며, 릴레이는 이 상태를
기준으로 시그널링 메시지를 전달합니다.

주요 기능:
    - 연결 등록 및 고유 연결 ID 발급
    - 룸 생성/삭제 (create/join 시 자동 생성, 호스트 퇴장 시 삭제)
    - 호스트 바인딩 (마지막 create가 우선)
    - 게스트 입장/퇴장 관리
    - 룸별 잠금 (같은 룸에 대한 변경 작업의 원자성 보장)

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → 룸 (host + guests)
    - connections: Dict[str, Participant] - 연결 ID → 참가자 (빠른 조회용)

Classes:
    Participant: 하나의 WebSocket 연결을 나타내는 데이터 클래스
    Room: 호스트 슬롯과 게스트 맵을 가진 룸 데이터 클래스
    RoomManager: 룸 및 참가자 관리 클래스

Examples:
    기본 사용법:
        >>> manager = RoomManager()
        >>> host = manager.register(ws1)
        >>> manager.bind_host("demo", host)
        >>> guest = manager.register(ws2)
        >>> manager.add_guest("demo", guest)
        >>> print(manager.get_room("demo").guest_count)
        1

See Also:
    relay.py: 시그널링 메시지 라우팅
    routes/signaling.py: WebSocket 엔드포인트
"""
import asyncio
import logging
import secrets
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from fastapi.websockets import WebSocketState

from .config import relay_config

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_GUEST = "guest"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(length: int) -> str:
    """base-36 랜덤 ID를 생성합니다."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


@dataclass(eq=False)
class Participant:
    """릴레이에 연결된 하나의 참가자 연결.

    연결 ID, 역할, 현재 룸, 송신 큐를 포함합니다. 릴레이의 모든 송신은
    송신 큐에 넣기만 하고 즉시 반환하며(fire-and-forget), 실제 전송은
    pump() 태스크가 담당합니다.

    Attributes:
        conn_id (str): 서버가 발급한 연결 ID
        websocket (WebSocket): 참가자의 WebSocket 연결 객체
        role (Optional[str]): "host" | "guest" | None (룸 미바인딩)
        room_id (Optional[str]): 현재 바인딩된 룸 ID
        outbox (asyncio.Queue): 전송 대기 메시지 큐
        closed (bool): 연결 종료 여부
    """
    conn_id: str
    websocket: Any
    role: Optional[str] = None
    room_id: Optional[str] = None
    outbox: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=relay_config.OUTBOX_SIZE)
    )
    closed: bool = False

    @property
    def is_open(self) -> bool:
        """연결이 열린 상태인지 여부."""
        if self.closed:
            return False
        return getattr(self.websocket, "client_state", None) == WebSocketState.CONNECTED

    def send(self, message: dict) -> bool:
        """메시지를 송신 큐에 넣습니다.

        연결이 닫혀 있거나 큐가 가득 차면 조용히 드랍합니다.

        Returns:
            bool: 큐에 들어갔으면 True
        """
        if not self.is_open:
            logger.debug(f"[Relay] 닫힌 연결 {self.conn_id}로의 전송 드랍: {message.get('type')}")
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"[Relay] 연결 {self.conn_id} 송신 큐 가득 참, 메시지 드랍: {message.get('type')}")
            return False
        return True

    def close(self) -> None:
        """연결을 닫힌 상태로 표시하고 pump 루프를 깨웁니다."""
        self.closed = True
        while True:
            try:
                self.outbox.put_nowait(None)
                return
            except asyncio.QueueFull:
                # Pending messages are dropped once the connection is gone
                try:
                    self.outbox.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def pump(self) -> None:
        """송신 큐의 메시지를 WebSocket으로 전송하는 루프.

        전송 실패 시 연결을 닫힌 상태로 표시하고 종료합니다.
        """
        while True:
            message = await self.outbox.get()
            if message is None or self.closed:
                break
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.debug(f"[Relay] 연결 {self.conn_id} 전송 실패: {e}")
                self.closed = True
                break


@dataclass
class Room:
    """최대 한 명의 호스트와 게스트 맵을 가진 룸.

    Attributes:
        room_id (str): 룸 ID
        host (Optional[Participant]): 현재 호스트 (없으면 None)
        guests (Dict[str, Participant]): 연결 ID → 게스트
        retired_ids (Set[str]): 룸 수명 동안 퇴장한 연결 ID (재사용 방지)
    """
    room_id: str
    host: Optional[Participant] = None
    guests: Dict[str, Participant] = field(default_factory=dict)
    retired_ids: Set[str] = field(default_factory=set)

    @property
    def guest_count(self) -> int:
        return len(self.guests)

    def find_target(self, conn_id: str) -> Optional[Participant]:
        """연결 ID로 수신 대상을 찾습니다 (게스트 우선, 다음 호스트)."""
        target = self.guests.get(conn_id)
        if target is not None:
            return target
        if self.host is not None and self.host.conn_id == conn_id:
            return self.host
        return None


class RoomManager:
    """룸과 참가자 연결을 관리하는 핵심 클래스.

    Attributes:
        rooms (Dict[str, Room]): 룸 ID를 키로 하는 룸 딕셔너리
        connections (Dict[str, Participant]): 연결 ID → 참가자 매핑

    Thread Safety:
        - asyncio 단일 스레드 환경에서 동작
        - 같은 룸에 대한 변경 작업은 lock(room_id)로 직렬화
        - 다른 룸에 대한 작업은 서로 독립적
    """

    def __init__(self):
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # conn_id -> Participant
        self.connections: Dict[str, Participant] = {}

        # room_id -> asyncio.Lock, 잠금 사용 중인 작업 수
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------
    # 연결 관리
    # ------------------------------------------------------------

    def register(self, websocket: Any) -> Participant:
        """새 연결을 등록하고 고유 연결 ID를 발급합니다.

        발급되는 ID는 현재 연결 중인 ID, 그리고 살아있는 룸에서 퇴장한 ID와
        겹치지 않습니다.

        Args:
            websocket: 참가자의 WebSocket 연결 객체

        Returns:
            Participant: 등록된 참가자
        """
        conn_id = generate_id(relay_config.CONNECTION_ID_LENGTH)
        while self._is_id_taken(conn_id):
            conn_id = generate_id(relay_config.CONNECTION_ID_LENGTH)

        participant = Participant(conn_id=conn_id, websocket=websocket)
        self.connections[conn_id] = participant
        logger.info(f"[Relay] 연결 등록: {conn_id} (총 {len(self.connections)}개)")
        return participant

    def unregister(self, participant: Participant) -> None:
        self.connections.pop(participant.conn_id, None)

    def _is_id_taken(self, conn_id: str) -> bool:
        if conn_id in self.connections:
            return True
        return any(conn_id in room.retired_ids for room in self.rooms.values())

    # ------------------------------------------------------------
    # 룸 관리
    # ------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, room_id: str) -> AsyncIterator[None]:
        """룸 단위 잠금 안에서 실행합니다.

        잠금을 보유하거나 기다리는 작업이 없어지면 잠금 객체는 정리됩니다.
        """
        room_lock = self._locks.get(room_id)
        if room_lock is None:
            room_lock = asyncio.Lock()
            self._locks[room_id] = room_lock
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with room_lock:
                yield
        finally:
            remaining = self._lock_users[room_id] - 1
            if remaining > 0:
                self._lock_users[room_id] = remaining
            else:
                del self._lock_users[room_id]
                del self._locks[room_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def get_room(self, room_id: Optional[str]) -> Optional[Room]:
        if room_id is None:
            return None
        return self.rooms.get(room_id)

    def get_or_create_room(self, room_id: str) -> Room:
        """룸을 조회하고 없으면 호스트 없는 빈 룸을 생성합니다."""
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self.rooms[room_id] = room
            logger.info(f"[Relay] 룸 '{room_id}' 생성")
        return room

    def remove_room(self, room_id: str) -> Optional[Room]:
        """룸을 삭제합니다. 남아있던 게스트의 바인딩도 해제합니다."""
        room = self.rooms.pop(room_id, None)
        if room is None:
            return None
        for guest in room.guests.values():
            guest.role = None
            guest.room_id = None
        logger.info(f"[Relay] 룸 '{room_id}' 삭제")
        return room

    def bind_host(self, room_id: str, participant: Participant) -> Optional[Participant]:
        """참가자를 룸의 호스트로 바인딩합니다.

        기존 호스트가 있으면 덮어쓰며(마지막 create 우선), 밀려난 호스트의
        바인딩은 해제됩니다.

        Args:
            room_id (str): 룸 ID
            participant (Participant): 새 호스트

        Returns:
            Optional[Participant]: 밀려난 이전 호스트. 없으면 None
        """
        room = self.get_or_create_room(room_id)
        displaced = room.host if room.host is not participant else None
        if displaced is not None:
            displaced.role = None
            displaced.room_id = None
            logger.info(f"[Relay] 룸 '{room_id}' 호스트 교체: {displaced.conn_id} -> {participant.conn_id}")

        room.host = participant
        participant.role = ROLE_HOST
        participant.room_id = room_id
        return displaced

    def add_guest(self, room_id: str, participant: Participant) -> Room:
        """참가자를 룸의 게스트로 추가합니다 (룸이 없으면 생성)."""
        room = self.get_or_create_room(room_id)
        room.guests[participant.conn_id] = participant
        participant.role = ROLE_GUEST
        participant.room_id = room_id
        logger.info(f"[Relay] 게스트 {participant.conn_id} 룸 '{room_id}' 입장. "
                    f"게스트 {room.guest_count}명")
        return room

    def remove_guest(self, room: Room, participant: Participant) -> bool:
        """게스트를 룸에서 제거합니다. 룸 자체는 유지됩니다."""
        if room.guests.pop(participant.conn_id, None) is None:
            return False
        room.retired_ids.add(participant.conn_id)
        participant.role = None
        participant.room_id = None
        logger.info(f"[Relay] 게스트 {participant.conn_id} 룸 '{room.room_id}' 퇴장. "
                    f"게스트 {room.guest_count}명")
        return True

    # ------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------

    def get_room_list(self) -> List[dict]:
        """모든 룸의 진단 정보를 리스트로 반환합니다.

        Returns:
            List[dict]: 각 룸의 room_id, has_host, host_id, guest_count
        """
        return [
            {
                "room_id": room_id,
                "has_host": room.host is not None,
                "host_id": room.host.conn_id if room.host else None,
                "guest_count": room.guest_count,
            }
            for room_id, room in self.rooms.items()
        ]

    def get_connection_count(self) -> int:
        return len(self.connections)
