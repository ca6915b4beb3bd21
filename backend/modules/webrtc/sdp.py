"""SDP 유틸리티.

코덱 우선순위 재정렬, offer 지문(fingerprint) 계산, ICE candidate
직렬화/역직렬화 등 SDP 텍스트 처리를 담당합니다.
"""
import logging
import re
from typing import Iterable, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCRtpSender
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .config import client_config

logger = logging.getLogger(__name__)

_CANDIDATE_PREFIX = "candidate:"


def prefer_codec(sdp: str, codec_priority: Optional[Iterable[str]] = None) -> str:
    """video m-line의 payload type 목록에서 선호 코덱을 맨 앞으로 옮깁니다.

    우선순위 목록을 앞에서부터 시도하여 처음 발견된 코덱 하나만 적용합니다.
    video m-line이 없거나 일치하는 코덱이 없으면 원본을 그대로 반환합니다.

    Args:
        sdp (str): 세션 디스크립션 텍스트
        codec_priority (Iterable[str]): 코덱 이름 우선순위 (기본: VP8, H264)

    Returns:
        str: 재정렬된 SDP

    Examples:
        >>> prefer_codec("m=video 9 UDP/TLS/RTP/SAVPF 97 96\\r\\n"
        ...              "a=rtpmap:96 VP8/90000\\r\\na=rtpmap:97 H264/90000")
        'm=video 9 UDP/TLS/RTP/SAVPF 96 97\\r\\n...'
    """
    if not sdp:
        return sdp
    if codec_priority is None:
        codec_priority = client_config.CODEC_PRIORITY

    lines = sdp.split("\r\n")
    m_index = next((i for i, line in enumerate(lines) if line.startswith("m=video")), -1)
    if m_index == -1:
        return sdp

    # rtpmap lines of the video section only
    section_end = next(
        (i for i in range(m_index + 1, len(lines)) if lines[i].startswith("m=")),
        len(lines),
    )
    section = lines[m_index + 1:section_end]

    for codec in codec_priority:
        pattern = re.compile(rf"^a=rtpmap:(\d+) {re.escape(codec)}/\d+", re.IGNORECASE)
        payload = next((m.group(1) for m in map(pattern.match, section) if m), None)
        if payload is None:
            continue

        parts = lines[m_index].split(" ")
        lines[m_index] = " ".join(parts[:3] + [payload] + [p for p in parts[3:] if p != payload])
        return "\r\n".join(lines)

    return sdp


def sdp_fingerprint(sdp: Optional[str], length: Optional[int] = None) -> str:
    """offer 중복 판별용 지문 (SDP 앞부분 고정 길이)."""
    if length is None:
        length = client_config.FINGERPRINT_LENGTH
    return (sdp or "")[:length]


def apply_codec_preferences(pc: RTCPeerConnection, codec_priority: Optional[Iterable[str]] = None) -> None:
    """video 트랜시버에 코덱 우선순위를 설정합니다 (best-effort).

    SDP 텍스트 재정렬과 별개로, aiortc가 실제로 협상할 코덱 순서를
    트랜시버 수준에서 지정합니다.
    """
    if codec_priority is None:
        codec_priority = client_config.CODEC_PRIORITY
    priority = [name.lower() for name in codec_priority]

    try:
        codecs = list(RTCRtpSender.getCapabilities("video").codecs)
    except Exception as e:
        logger.debug(f"[WebRTC] video 코덱 목록 조회 실패: {e}")
        return

    def rank(codec) -> int:
        name = codec.mimeType.split("/")[-1].lower()
        return priority.index(name) if name in priority else len(priority)

    ordered = sorted(codecs, key=rank)
    for transceiver in pc.getTransceivers():
        if getattr(transceiver, "kind", None) != "video":
            continue
        try:
            transceiver.setCodecPreferences(ordered)
        except Exception as e:
            logger.warning(f"[WebRTC] 코덱 우선순위 설정 실패: {e}")


def candidate_to_message(candidate: RTCIceCandidate) -> dict:
    """RTCIceCandidate를 `ice` 메시지의 candidate 필드로 변환합니다."""
    return {
        "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_message(payload: Optional[dict]) -> Optional[RTCIceCandidate]:
    """`ice` 메시지의 candidate 필드를 RTCIceCandidate로 변환합니다.

    Returns:
        Optional[RTCIceCandidate]: 파싱 결과. 빈 candidate(end-of-candidates)나
        잘못된 형식이면 None
    """
    if not isinstance(payload, dict):
        return None
    text = payload.get("candidate") or ""
    if text.startswith(_CANDIDATE_PREFIX):
        text = text[len(_CANDIDATE_PREFIX):]
    if not text.strip():
        return None

    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, ValueError, IndexError):
        logger.debug(f"[WebRTC] 잘못된 ICE candidate 무시: {text!r}")
        return None

    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def set_origin_version(sdp: str, version: int) -> str:
    """o= 라인의 session version 필드를 바꿉니다.

    같은 초에 만들어진 두 offer도 서로 다른 지문을 갖도록 offer마다
    버전을 올려서 보냅니다.
    """
    lines = sdp.split("\r\n")
    for i, line in enumerate(lines):
        if line.startswith("o="):
            parts = line[2:].split(" ")
            if len(parts) >= 6:
                parts[2] = str(version)
                lines[i] = "o=" + " ".join(parts)
            break
    return "\r\n".join(lines)
