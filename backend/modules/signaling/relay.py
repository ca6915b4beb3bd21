"""시그널링 메시지 라우팅 모듈.

릴레이는 미디어를 전달하지 않고 JSON 제어 메시지만 중계합니다.
룸 상태(RoomManager)를 기준으로 create/join, offer/answer/ice 전달,
호스트 전용 브로드캐스트, 연결 종료 정리를 처리합니다.

Routing Rules:
    - create: 송신자를 룸 호스트로 바인딩 (마지막 create 우선) → created
    - join: 송신자를 게스트로 등록 → joined, 호스트에게 new-peer
    - offer/answer/ice: from 필드를 송신자 ID로 덮어씀
        - to 지정: 해당 대상에게만 전달 (없으면 조용히 무시)
        - to 없음 + 호스트 송신: 모든 게스트에게 전달
        - to 없음 + 게스트 송신: 호스트에게만 전달
    - video_url/play/pause/seek/sync/screen-stopped: 현재 호스트만 허용,
      모든 게스트에게 그대로 전달
    - 연결 종료: 호스트면 host-left 후 룸 삭제, 게스트면 호스트에게 peer-left

Examples:
    >>> relay = SignalingRelay(RoomManager())
    >>> participant = relay.connect(websocket)
    >>> await relay.handle_raw(participant, '{"type": "create", "roomId": "demo"}')
    >>> await relay.disconnect(participant)
"""
import json
import logging
from typing import Any, Optional

from .config import (
    relay_config,
    MSG_CREATE, MSG_JOIN, MSG_CREATED, MSG_JOINED, MSG_NEW_PEER,
    MSG_HOST_LEFT, MSG_PEER_LEFT, NEGOTIATION_TYPES, HOST_ONLY_TYPES,
)
from .room_manager import RoomManager, Participant, generate_id, ROLE_HOST, ROLE_GUEST

logger = logging.getLogger(__name__)


class SignalingRelay:
    """룸 상태를 기준으로 시그널링 메시지를 중계하는 릴레이.

    모든 송신은 Participant.send()를 통한 비차단 전송이며, 닫힌 연결로의
    전송은 조용히 드랍됩니다. 같은 룸에 대한 작업은 룸 잠금 안에서
    수행됩니다.

    Attributes:
        rooms (RoomManager): 룸/참가자 상태
    """

    def __init__(self, room_manager: Optional[RoomManager] = None):
        self.rooms = room_manager or RoomManager()

    def connect(self, websocket: Any) -> Participant:
        """새 연결을 등록합니다."""
        return self.rooms.register(websocket)

    async def handle_raw(self, participant: Participant, raw: str) -> None:
        """수신한 텍스트 프레임을 파싱해 처리합니다. JSON 객체가 아니면 무시합니다."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"[Relay] 연결 {participant.conn_id} 잘못된 JSON 무시")
            return
        if not isinstance(message, dict):
            return
        await self.handle_message(participant, message)

    async def handle_message(self, participant: Participant, message: dict) -> None:
        """메시지 타입에 따라 처리합니다."""
        message_type = message.get("type")

        if message_type == MSG_CREATE:
            await self._handle_create(participant, message)
        elif message_type == MSG_JOIN:
            await self._handle_join(participant, message)
        elif message_type in NEGOTIATION_TYPES:
            await self._forward(participant, message)
        elif message_type in HOST_ONLY_TYPES:
            await self._broadcast_from_host(participant, message)
        else:
            logger.debug(f"[Relay] 알 수 없는 메시지 타입 무시: {message_type}")

    async def disconnect(self, participant: Participant) -> None:
        """연결 종료를 처리합니다.

        호스트였다면 모든 게스트에게 host-left를 보내고 룸을 삭제합니다.
        게스트였다면 룸에서 제거하고 호스트에게 peer-left를 보냅니다.
        """
        participant.close()
        self.rooms.unregister(participant)

        room_id = participant.room_id
        if room_id is not None:
            async with self.rooms.lock(room_id):
                self._detach(participant)
        logger.info(f"[Relay] 연결 {participant.conn_id} 정리 완료")

    # ------------------------------------------------------------
    # create / join
    # ------------------------------------------------------------

    async def _handle_create(self, participant: Participant, message: dict) -> None:
        room_id = message.get("roomId")
        if not room_id:
            room_id = relay_config.DEFAULT_ROOM_PREFIX + generate_id(
                relay_config.DEFAULT_ROOM_SUFFIX_LENGTH
            )

        await self._release_other_room(participant, room_id)

        async with self.rooms.lock(room_id):
            # A guest taking over its own room leaves the guest map first
            if participant.room_id == room_id and participant.role == ROLE_GUEST:
                self._detach(participant)
            self.rooms.bind_host(room_id, participant)
            participant.send({"type": MSG_CREATED, "id": participant.conn_id, "roomId": room_id})

        logger.info(f"[Relay] 룸 '{room_id}' 호스트: {participant.conn_id}")

    async def _handle_join(self, participant: Participant, message: dict) -> None:
        room_id = message.get("roomId")
        if not room_id:
            logger.warning(f"[Relay] roomId 없는 join 무시: {participant.conn_id}")
            return

        await self._release_other_room(participant, room_id)

        async with self.rooms.lock(room_id):
            # A host re-joining its own room as guest gives up the host slot first
            if participant.room_id == room_id and participant.role == ROLE_HOST:
                self._detach(participant)
            room = self.rooms.add_guest(room_id, participant)
            participant.send({"type": MSG_JOINED, "id": participant.conn_id})
            if room.host is not None and room.host.is_open:
                room.host.send({"type": MSG_NEW_PEER, "id": participant.conn_id})

    async def _release_other_room(self, participant: Participant, room_id: str) -> None:
        """다른 룸에 바인딩된 연결을 먼저 분리합니다."""
        previous = participant.room_id
        if previous is None or previous == room_id:
            return
        async with self.rooms.lock(previous):
            self._detach(participant)

    # ------------------------------------------------------------
    # offer / answer / ice
    # ------------------------------------------------------------

    async def _forward(self, participant: Participant, message: dict) -> None:
        """offer/answer/ice 메시지를 룸 안에서 전달합니다."""
        room_id = participant.room_id
        if room_id is None:
            logger.debug(f"[Relay] 룸 미바인딩 연결 {participant.conn_id}의 {message.get('type')} 무시")
            return

        claimed_room = message.get("roomId")
        if claimed_room is not None and claimed_room != room_id:
            logger.warning(f"[Relay] 연결 {participant.conn_id}가 다른 룸 '{claimed_room}'으로 "
                           f"{message.get('type')} 전송 시도, 무시")
            return

        async with self.rooms.lock(room_id):
            room = self.rooms.get_room(room_id)
            if room is None:
                return

            outgoing = dict(message)
            outgoing["from"] = participant.conn_id
            message_type = outgoing.get("type")

            target_id = outgoing.get("to")
            if target_id:
                target = room.find_target(target_id)
                if target is not None and target.is_open:
                    target.send(outgoing)
                    logger.debug(f"[Relay] {message_type} 전달: {participant.conn_id} -> {target_id}")
                else:
                    logger.debug(f"[Relay] {message_type} 대상 {target_id} 없음, 드랍")
                return

            if room.host is participant:
                for guest in room.guests.values():
                    guest.send(outgoing)
                logger.debug(f"[Relay] {message_type} 브로드캐스트: 호스트 {participant.conn_id} -> "
                             f"게스트 {room.guest_count}명")
            elif room.host is not None and room.host.is_open:
                room.host.send(outgoing)
                logger.debug(f"[Relay] {message_type} 전달: 게스트 {participant.conn_id} -> 호스트")

    # ------------------------------------------------------------
    # 호스트 전용 브로드캐스트
    # ------------------------------------------------------------

    async def _broadcast_from_host(self, participant: Participant, message: dict) -> None:
        room_id = participant.room_id
        if room_id is None:
            return

        async with self.rooms.lock(room_id):
            room = self.rooms.get_room(room_id)
            if room is None or room.host is not participant:
                logger.info(f"[Relay] 호스트가 아닌 연결 {participant.conn_id}의 "
                            f"{message.get('type')} 무시")
                return
            for guest in room.guests.values():
                guest.send(message)

    # ------------------------------------------------------------
    # 분리 (연결 종료 / 룸 재바인딩)
    # ------------------------------------------------------------

    def _detach(self, participant: Participant) -> None:
        """참가자를 현재 룸에서 분리합니다. 호출자가 룸 잠금을 보유해야 합니다."""
        room = self.rooms.get_room(participant.room_id)
        if room is None:
            participant.role = None
            participant.room_id = None
            return

        if room.host is participant:
            for guest in room.guests.values():
                guest.send({"type": MSG_HOST_LEFT})
            self.rooms.remove_room(room.room_id)
            logger.info(f"[Relay] 호스트 {participant.conn_id} 퇴장, 룸 '{room.room_id}' 제거 "
                        f"(게스트 {room.guest_count}명에게 host-left)")
        elif self.rooms.remove_guest(room, participant):
            if room.host is not None and room.host.is_open:
                room.host.send({"type": MSG_PEER_LEFT, "id": participant.conn_id})

        participant.role = None
        participant.room_id = None
