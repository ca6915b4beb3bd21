"""송출 소스 / 품질 제어 단위 테스트

- fallback 체인 (auto: 네이티브 → canvas, high/ultra: canvas → 네이티브)
- canvas 재렌더링 트랙 (목표 해상도, 렌더 루프 정리)
- 소스 교체 시 재협상 + 이전 소스 정지
- 인코딩 파라미터 적용
"""

import asyncio
from types import SimpleNamespace

import pytest

from modules.webrtc.capture import (
    CaptureUnavailableError,
    EncodingParameters,
    QualityController,
    apply_sender_parameters,
    MODE_CANVAS,
    MODE_NATIVE,
)
from modules.webrtc.config import QUALITY_PRESETS
from modules.webrtc.peer_manager import PeerSessionManager, PeerState, ROLE_HOST
from modules.webrtc.tracks import CanvasRenderTrack

from conftest import FakeVideoTrack, StalledVideoTrack, make_playback, make_sdp


@pytest.fixture
def controller(playback):
    quality = QualityController(playback, force_canvas=False, handover_delay=0)
    yield quality
    if quality.source is not None:
        quality.source.stop()


@pytest.fixture
def peers(message_log, ice_provider, pc_factory, controller):
    return PeerSessionManager(
        ROLE_HOST, message_log, ice_provider=ice_provider, pc_factory=pc_factory,
        attach_local=controller.install, answer_wait_timeout=0.05,
    )


async def _answer_all(peers):
    for remote_id in peers.remote_ids():
        await peers.apply_answer(remote_id, {"type": "answer", "sdp": make_sdp("3900000001")})


async def _wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.005)


# ===== fallback 체인 =====


@pytest.mark.asyncio
async def test_auto_prefers_native_capture(controller):
    source = controller.build_source("auto")

    assert source.mode == MODE_NATIVE
    assert source.kinds == ["video", "audio"]
    source.stop()


@pytest.mark.asyncio
async def test_auto_uses_canvas_on_constrained_runtime(playback):
    quality = QualityController(playback, force_canvas=True, handover_delay=0)

    source = quality.build_source("auto")

    assert source.mode == MODE_CANVAS
    assert (source.canvas.width, source.canvas.height) == (1280, 720)
    source.stop()


@pytest.mark.asyncio
async def test_auto_falls_back_to_canvas_without_native_capture():
    media = make_playback(native_capture=False)
    quality = QualityController(media, force_canvas=False, handover_delay=0)

    source = quality.build_source("auto")

    assert source.mode == MODE_CANVAS
    source.stop()
    media.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("level,size", [("high", (1280, 720)), ("ultra", (1920, 1080))])
async def test_high_and_ultra_render_canvas_with_audio(controller, level, size):
    source = controller.build_source(level)

    assert source.mode == MODE_CANVAS
    assert (source.canvas.width, source.canvas.height) == size
    assert source.kinds == ["video", "audio"]
    source.stop()


@pytest.mark.asyncio
async def test_high_falls_back_to_native_when_canvas_fails(controller, monkeypatch):
    def broken_canvas(preset):
        raise CaptureUnavailableError("canvas capture failed")

    monkeypatch.setattr(controller, "_canvas_source", broken_canvas)

    source = controller.build_source("high")

    assert source.mode == MODE_NATIVE
    assert source.preset is QUALITY_PRESETS["high"]
    source.stop()


@pytest.mark.asyncio
async def test_exhausted_chain_raises():
    media = make_playback(video=False)
    quality = QualityController(media, handover_delay=0)

    with pytest.raises(CaptureUnavailableError):
        quality.build_source("ultra")
    with pytest.raises(CaptureUnavailableError):
        QualityController(None).build_source("auto")
    media.stop()


# ===== canvas 트랙 =====


@pytest.mark.asyncio
async def test_canvas_track_renders_at_target_size():
    source = FakeVideoTrack(320, 240)
    canvas = CanvasRenderTrack(source, 640, 360)

    await _wait_for(lambda: canvas.frames_rendered > 0)
    frame = await canvas.recv()

    assert (frame.width, frame.height) == (640, 360)
    assert canvas.is_rendering
    canvas.stop()
    assert not canvas.is_rendering
    assert source.readyState == "ended"


@pytest.mark.asyncio
async def test_canvas_track_sends_blank_frame_before_first_frame():
    canvas = CanvasRenderTrack(StalledVideoTrack(), 320, 180)

    frame = await canvas.recv()

    assert (frame.width, frame.height) == (320, 180)
    canvas.stop()
    await asyncio.wait([canvas.render_task], timeout=1)
    assert canvas.render_task.done()


# ===== 재협상 =====


@pytest.mark.asyncio
async def test_activate_installs_source_and_offers_every_peer(controller, peers, message_log):
    await peers.ensure_session("g1")
    await peers.ensure_session("g2")

    source = await controller.activate(peers)

    assert controller.active
    for remote_id in ("g1", "g2"):
        session = peers.get(remote_id)
        assert session.source is source
        assert sorted(s.kind for s in session.pc.getSenders()) == ["audio", "video"]
        assert session.encoding == EncodingParameters(600_000, 30, 1.0)
    assert sorted(m["to"] for m in message_log.of_type("offer")) == ["g1", "g2"]


@pytest.mark.asyncio
async def test_quality_round_trip_stops_intermediate_source(controller, peers):
    """auto → high → auto 후 최종 소스는 auto 정책, high 렌더 루프는 정리됨"""
    await peers.ensure_session("g1")
    await controller.activate(peers)
    await _answer_all(peers)

    high = await controller.switch(peers, "high")
    await _answer_all(peers)
    assert high.mode == MODE_CANVAS
    assert high.canvas.is_rendering

    final = await controller.switch(peers, "auto")
    await _answer_all(peers)

    assert final.preset.name == "auto"
    assert final.preset.max_bitrate == 600_000
    assert high.stopped
    assert not high.canvas.is_rendering
    await asyncio.wait([high.canvas.render_task], timeout=1)
    assert high.canvas.render_task.done()
    assert all(track.readyState == "ended" for track in high.tracks)

    session = peers.get("g1")
    assert session.source is final
    assert session.state is PeerState.ESTABLISHED
    sender = next(s for s in session.pc.getSenders() if s.kind == "video")
    assert sender.parameters[-1]["encodings"][0]["maxBitrate"] == 600_000
    assert len(session.pc.getSenders()) == 2


@pytest.mark.asyncio
async def test_switch_while_inactive_records_preference(controller, peers, message_log):
    await peers.ensure_session("g1")

    assert await controller.switch(peers, "ultra") is None

    assert controller.level == "ultra"
    assert not controller.active
    assert message_log.of_type("offer") == []


@pytest.mark.asyncio
async def test_unknown_level_is_rejected(controller, peers):
    assert await controller.switch(peers, "8k") is None
    assert controller.level == "auto"


@pytest.mark.asyncio
async def test_failed_rebuild_keeps_current_source(controller, peers, monkeypatch):
    await peers.ensure_session("g1")
    current = await controller.activate(peers)

    def unavailable(level):
        raise CaptureUnavailableError("no video")

    monkeypatch.setattr(controller, "build_source", unavailable)

    assert await controller.switch(peers, "ultra") is current
    assert not current.stopped


@pytest.mark.asyncio
async def test_stop_detaches_senders_and_stops_source(controller, peers):
    await peers.ensure_session("g1")
    source = await controller.activate(peers)

    await controller.stop(peers)

    assert not controller.active
    assert source.stopped
    session = peers.get("g1")
    assert session.source is None
    assert all(s.track is None for s in session.pc.getSenders())


# ===== 인코딩 파라미터 =====


def test_encoding_parameters_from_preset():
    params = EncodingParameters.from_preset(QUALITY_PRESETS["ultra"])

    assert params.to_dict() == {"maxBitrate": 3_500_000, "maxFramerate": 30, "scaleResolutionDownBy": 1.0}


@pytest.mark.asyncio
async def test_apply_parameters_falls_back_to_encoder_bitrate():
    encoder = SimpleNamespace(target_bitrate=0)
    sender = SimpleNamespace(kind="video", track=object(), **{"_RTCRtpSender__encoder": encoder})
    pc = SimpleNamespace(getSenders=lambda: [sender])

    assert await apply_sender_parameters(pc, EncodingParameters(1_500_000, 30)) is True
    assert encoder.target_bitrate == 1_500_000


@pytest.mark.asyncio
async def test_apply_parameters_failure_is_not_raised():
    async def broken(parameters):
        raise RuntimeError("not supported")

    sender = SimpleNamespace(kind="video", track=object(), setParameters=broken)
    pc = SimpleNamespace(getSenders=lambda: [sender])

    assert await apply_sender_parameters(pc, EncodingParameters(600_000, 30)) is False
