"""SignalingClient 단위 테스트 (가짜 연결 사용)"""

import json

import pytest
from websockets.exceptions import ConnectionClosed

from modules.webrtc.signaling_client import SignalingClient


class FakeConnection:
    def __init__(self, frames, fail_send=False):
        self.frames = list(frames)
        self.fail_send = fail_send
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)

    async def send(self, data):
        if self.fail_send:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


class RecordingSession:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.handled = []

    async def handle_message(self, message):
        if message.get("type") == self.fail_on:
            raise ValueError("boom")
        self.handled.append(message["type"])


@pytest.mark.asyncio
async def test_run_skips_bad_frames_and_keeps_going():
    client = SignalingClient("ws://test/ws")
    client.conn = FakeConnection([
        json.dumps({"type": "created", "id": "h1"}),
        "not json",
        json.dumps(["not", "an", "object"]),
        json.dumps({"type": "new-peer", "id": "g1"}),
        json.dumps({"type": "peer-left", "id": "g1"}),
    ])
    session = RecordingSession(fail_on="new-peer")

    await client.run(session)

    assert session.handled == ["created", "peer-left"]


@pytest.mark.asyncio
async def test_send_serializes_and_drops_when_disconnected():
    client = SignalingClient("ws://test/ws")
    await client.send({"type": "join", "roomId": "demo"})

    client.conn = FakeConnection([])
    await client.send({"type": "join", "roomId": "demo"})
    assert client.conn.sent == [{"type": "join", "roomId": "demo"}]

    client.conn.fail_send = True
    await client.send({"type": "ice"})

    conn = client.conn
    await client.close()
    assert conn.closed
    assert client.conn is None
