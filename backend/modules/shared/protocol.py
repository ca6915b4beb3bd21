"""Signaling wire message types shared by the relay and the client runtime."""

# 클라이언트 → 릴레이
MSG_CREATE = "create"
MSG_JOIN = "join"

# 릴레이 → 클라이언트
MSG_CREATED = "created"
MSG_JOINED = "joined"
MSG_NEW_PEER = "new-peer"
MSG_HOST_LEFT = "host-left"
MSG_PEER_LEFT = "peer-left"

# 양방향 (릴레이가 from 필드를 덮어씀)
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE = "ice"

# 호스트 → 릴레이 → 게스트
MSG_VIDEO_URL = "video_url"
MSG_PLAY = "play"
MSG_PAUSE = "pause"
MSG_SEEK = "seek"
MSG_SYNC = "sync"
MSG_SCREEN_STOPPED = "screen-stopped"

NEGOTIATION_TYPES = frozenset({MSG_OFFER, MSG_ANSWER, MSG_ICE})
PLAYBACK_TYPES = frozenset({MSG_VIDEO_URL, MSG_PLAY, MSG_PAUSE, MSG_SEEK, MSG_SYNC})
HOST_ONLY_TYPES = PLAYBACK_TYPES | {MSG_SCREEN_STOPPED}
