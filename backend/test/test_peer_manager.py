"""PeerSessionManager 단위 테스트

- 세션 생성 (ID당 하나, 호스트는 ctrl 채널 생성)
- offer 발행 (코덱 재정렬, 지문, 상태 전이)
- 중복 offer / 중복 answer 무시
- 피어별 협상 잠금, answer 대기 시간 제한
- ICE candidate 적용, 세션 종료
"""

import asyncio

import pytest

from modules.webrtc.peer_manager import PeerSessionManager, PeerState, ROLE_HOST, ROLE_GUEST
from modules.webrtc.sdp import candidate_from_message

from conftest import FakeVideoTrack, make_sdp

CANDIDATE = {
    "candidate": "candidate:1 1 udp 2122260223 192.168.0.5 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def _answer():
    return {"type": "answer", "sdp": make_sdp("3900000001")}


@pytest.fixture
def host_manager(message_log, ice_provider, pc_factory):
    return PeerSessionManager(
        ROLE_HOST, message_log, ice_provider=ice_provider, pc_factory=pc_factory, answer_wait_timeout=0.05
    )


@pytest.fixture
def guest_manager(message_log, ice_provider, guest_pc_factory):
    return PeerSessionManager(ROLE_GUEST, message_log, ice_provider=ice_provider, pc_factory=guest_pc_factory)


# ===== 세션 생성 =====


@pytest.mark.asyncio
async def test_ensure_session_is_idempotent(host_manager, pc_factory, ice_provider):
    first, second = await asyncio.gather(
        host_manager.ensure_session("g1"), host_manager.ensure_session("g1")
    )

    assert first is second
    assert len(pc_factory.created) == 1
    assert ice_provider.calls == 1
    assert first.state is PeerState.NEW


@pytest.mark.asyncio
async def test_host_session_opens_control_channel_and_attaches_local(message_log, ice_provider, pc_factory):
    attached = []
    manager = PeerSessionManager(
        ROLE_HOST, message_log, ice_provider=ice_provider, pc_factory=pc_factory,
        attach_local=lambda session: attached.append(session.remote_id),
    )

    session = await manager.ensure_session("g1")

    assert attached == ["g1"]
    assert [c.label for c in session.pc.channels] == ["ctrl"]
    assert session.control_channel is session.pc.channels[0]


@pytest.mark.asyncio
async def test_guest_session_waits_for_remote_channel(guest_manager):
    session = await guest_manager.ensure_session("h1")

    assert session.pc.channels == []
    assert session.control_channel is None


@pytest.mark.asyncio
async def test_local_candidate_is_sent_as_ice(host_manager, message_log):
    session = await host_manager.ensure_session("g1")

    session.pc.emit("icecandidate", candidate_from_message(CANDIDATE))
    await asyncio.sleep(0)

    ice = message_log.of_type("ice")
    assert len(ice) == 1
    assert ice[0]["to"] == "g1"
    assert ice[0]["candidate"]["candidate"].startswith("candidate:1 1 udp")


# ===== offer 발행 =====


@pytest.mark.asyncio
async def test_negotiate_sends_offer_with_preferred_codec(host_manager, message_log):
    await host_manager.ensure_session("g1")

    assert await host_manager.negotiate("g1") is True

    offer = message_log.of_type("offer")[0]
    assert offer["to"] == "g1"
    assert offer["sdp"]["type"] == "offer"
    assert "m=video 9 UDP/TLS/RTP/SAVPF 96 97" in offer["sdp"]["sdp"]
    assert offer["offerFingerprint"] == offer["sdp"]["sdp"][:120]

    session = host_manager.get("g1")
    assert session.state is PeerState.PENDING_LOCAL_OFFER
    assert session.offer_outstanding


@pytest.mark.asyncio
async def test_answer_establishes_and_renegotiation_transitions(host_manager, message_log):
    await host_manager.ensure_session("g1")
    await host_manager.negotiate("g1")

    assert await host_manager.apply_answer("g1", _answer()) is True
    session = host_manager.get("g1")
    assert session.state is PeerState.ESTABLISHED
    assert not session.offer_outstanding

    await host_manager.negotiate("g1")
    assert session.state is PeerState.RENEGOTIATING

    offers = message_log.of_type("offer")
    assert offers[0]["offerFingerprint"] != offers[1]["offerFingerprint"]


@pytest.mark.asyncio
async def test_guest_never_issues_offers(guest_manager, message_log):
    await guest_manager.ensure_session("h1")

    assert await guest_manager.negotiate("h1") is False
    assert message_log.of_type("offer") == []


@pytest.mark.asyncio
async def test_negotiate_unknown_peer_is_noop(host_manager):
    assert await host_manager.negotiate("ghost") is False


# ===== 중복 방지 =====


@pytest.mark.asyncio
async def test_duplicate_answer_applied_once(host_manager):
    session = await host_manager.ensure_session("g1")
    await host_manager.negotiate("g1")

    assert await host_manager.apply_answer("g1", _answer()) is True
    assert await host_manager.apply_answer("g1", _answer()) is False
    assert session.pc.remote_set_count == 1


@pytest.mark.asyncio
async def test_answer_without_session_is_dropped(host_manager):
    assert await host_manager.apply_answer("g9", _answer()) is False


@pytest.mark.asyncio
async def test_duplicate_offer_answered_once(guest_manager, message_log):
    offer = {"type": "offer", "sdp": make_sdp()}

    assert await guest_manager.accept_offer("h1", offer, "fp-1") is True
    assert await guest_manager.accept_offer("h1", offer, "fp-1") is False

    answers = message_log.of_type("answer")
    assert len(answers) == 1
    assert answers[0]["to"] == "h1"
    assert "m=video 9 UDP/TLS/RTP/SAVPF 96 97" in answers[0]["sdp"]["sdp"]
    assert guest_manager.get("h1").state is PeerState.ESTABLISHED


@pytest.mark.asyncio
async def test_offer_without_fingerprint_uses_sdp_prefix(guest_manager, message_log):
    offer = {"type": "offer", "sdp": make_sdp()}

    await guest_manager.accept_offer("h1", offer)
    await guest_manager.accept_offer("h1", offer)

    assert len(message_log.of_type("answer")) == 1
    assert make_sdp()[:120] in guest_manager.offer_guard


@pytest.mark.asyncio
async def test_host_ignores_offers(host_manager, message_log):
    assert await host_manager.accept_offer("g1", {"type": "offer", "sdp": make_sdp()}) is False
    assert message_log.of_type("answer") == []
    assert "g1" not in host_manager


@pytest.mark.asyncio
async def test_guest_records_remote_tracks(guest_manager):
    received = []
    guest_manager.on_remote_track = lambda remote_id, track: received.append(track.kind)

    await guest_manager.accept_offer("h1", {"type": "offer", "sdp": make_sdp()})

    session = guest_manager.get("h1")
    assert [t.kind for t in session.remote_tracks] == ["video", "audio"]
    assert received == ["video", "audio"]


# ===== 협상 잠금 =====


@pytest.mark.asyncio
async def test_next_offer_waits_for_answer(host_manager, message_log):
    await host_manager.ensure_session("g1")
    host_manager.answer_wait_timeout = 5
    await host_manager.negotiate("g1")

    second = asyncio.create_task(host_manager.negotiate("g1"))
    await asyncio.sleep(0.01)
    assert len(message_log.of_type("offer")) == 1

    await host_manager.apply_answer("g1", _answer())
    assert await asyncio.wait_for(second, timeout=1) is True
    assert len(message_log.of_type("offer")) == 2


@pytest.mark.asyncio
async def test_unanswered_offer_times_out_and_proceeds(host_manager, message_log):
    await host_manager.ensure_session("g1")
    await host_manager.negotiate("g1")

    assert await host_manager.negotiate("g1") is True

    assert len(message_log.of_type("offer")) == 2
    assert host_manager.get("g1").offer_round == 2


@pytest.mark.asyncio
async def test_late_answer_to_previous_offer_is_dropped(host_manager, message_log):
    """answer 대기 시간 초과 후 도착한 이전 라운드 answer는 현재 라운드에 적용되지 않음"""
    session = await host_manager.ensure_session("g1")
    await host_manager.negotiate("g1")
    await host_manager.negotiate("g1")
    first, second = [m["offerFingerprint"] for m in message_log.of_type("offer")]

    assert await host_manager.apply_answer("g1", _answer(), first) is False
    assert session.offer_outstanding

    assert await host_manager.apply_answer("g1", _answer(), second) is True
    assert session.state is PeerState.ESTABLISHED
    assert session.pc.remote_set_count == 1


@pytest.mark.asyncio
async def test_answer_echoes_offer_fingerprint(guest_manager, message_log):
    await guest_manager.accept_offer("h1", {"type": "offer", "sdp": make_sdp()}, "fp-1")

    assert message_log.of_type("answer")[0]["offerFingerprint"] == "fp-1"


@pytest.mark.asyncio
async def test_prepare_runs_inside_negotiation(host_manager):
    await host_manager.ensure_session("g1")
    track = FakeVideoTrack()

    await host_manager.negotiate("g1", prepare=lambda session: session.pc.addTrack(track))

    assert [s.track for s in host_manager.get("g1").pc.getSenders()] == [track]
    track.stop()


# ===== ICE / 종료 =====


@pytest.mark.asyncio
async def test_candidate_for_known_sender_goes_to_that_session(host_manager):
    g1 = await host_manager.ensure_session("g1")
    g2 = await host_manager.ensure_session("g2")

    assert await host_manager.add_ice_candidate("g1", CANDIDATE) == 1

    assert len(g1.pc.candidates) == 1
    assert g2.pc.candidates == []


@pytest.mark.asyncio
async def test_candidate_for_unknown_sender_applies_to_all(host_manager):
    g1 = await host_manager.ensure_session("g1")
    g2 = await host_manager.ensure_session("g2")

    assert await host_manager.add_ice_candidate("stale-id", CANDIDATE) == 2

    assert len(g1.pc.candidates) == 1
    assert len(g2.pc.candidates) == 1


@pytest.mark.asyncio
async def test_close_all_closes_sessions_and_clears_guards(guest_manager):
    await guest_manager.accept_offer("h1", {"type": "offer", "sdp": make_sdp()}, "fp-1")
    session = guest_manager.get("h1")
    tracks = list(session.remote_tracks)

    await guest_manager.close_all()

    assert session.pc.closed
    assert session.state is PeerState.CLOSED
    assert [t.readyState for t in tracks] == ["ended", "ended"]
    assert len(guest_manager) == 0
    assert len(guest_manager.offer_guard) == 0
