"""
Unit tests for the call-stream WebSocket client.

These tests verify that CallStreamClient connects, sends well-formed
call-stream messages and drives a scripted call against a mocked socket.
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosed

from callflow.services.call_stream_client import CallStreamClient


@pytest.fixture
def stream_client():
    """Create a CallStreamClient instance for testing."""
    return CallStreamClient("ws://localhost:8000/ws/calls")


def connected(stream_client, *responses):
    stream_client.websocket = AsyncMock()
    stream_client.websocket.recv.side_effect = [json.dumps(r) for r in responses]
    return stream_client.websocket


def sent(websocket):
    return [json.loads(c.args[0]) for c in websocket.send.call_args_list]


@pytest.mark.asyncio
async def test_connect_success(stream_client):
    """Test successful connection to the call stream."""
    mock_ws = AsyncMock()
    mock_connect = AsyncMock(return_value=mock_ws)

    with patch("websockets.connect", mock_connect):
        result = await stream_client.connect()

    mock_connect.assert_called_once_with(stream_client.url)
    assert result is True
    assert stream_client.websocket is mock_ws


@pytest.mark.asyncio
async def test_connect_failure(stream_client):
    """Test connection failure to the call stream."""
    with patch("websockets.connect", AsyncMock(side_effect=OSError("Connection refused"))):
        result = await stream_client.connect()

    assert result is False
    assert stream_client.websocket is None


@pytest.mark.asyncio
async def test_requests_require_connection(stream_client):
    assert await stream_client.answer("call_1") is None
    assert await stream_client.end_call("call_1") is None


@pytest.mark.asyncio
async def test_send_audio(stream_client):
    """Test that audio is sent base64-encoded with the configured format."""
    websocket = connected(stream_client, {"type": "audio.reply", "callId": "call_1", "replyText": "Hi"})

    reply = await stream_client.send_audio("call_1", b"hello")

    assert reply["replyText"] == "Hi"
    message = sent(websocket)[0]
    assert message["type"] == "audio.input"
    assert message["mimeType"] == "audio/wav"
    assert base64.b64decode(message["audioChunk"]) == b"hello"


@pytest.mark.asyncio
async def test_hold_resume_and_end(stream_client):
    websocket = connected(
        stream_client,
        {"type": "call.status", "status": "on_hold"},
        {"type": "call.status", "status": "connected"},
        {"type": "call.ended", "summary": "done"},
    )

    await stream_client.hold("call_1")
    await stream_client.resume("call_1")
    ended = await stream_client.end_call("call_1", "agent_hangup")

    assert ended["type"] == "call.ended"
    assert [m["type"] for m in sent(websocket)] == ["call.hold", "call.resume", "call.end"]
    assert sent(websocket)[2]["reason"] == "agent_hangup"


@pytest.mark.asyncio
async def test_run_script_stops_on_transfer(stream_client):
    websocket = connected(
        stream_client,
        {"type": "call.answered", "callId": "call_1"},
        {"type": "audio.reply", "callId": "call_1", "shouldTransfer": True},
        {"type": "call.ended", "callId": "call_1"},
    )
    replies = []

    async def on_reply(reply):
        replies.append(reply)

    ended = await stream_client.run_script("call_1", [b"emergency!", b"never sent"], on_reply)

    assert ended["type"] == "call.ended"
    assert len(replies) == 1
    assert [m["type"] for m in sent(websocket)] == ["call.answer", "audio.input", "call.end"]


@pytest.mark.asyncio
async def test_run_script_unanswered_call(stream_client):
    connected(stream_client, {"type": "call.error", "callId": "call_1", "reason": "Call 'call_1' not found"})

    assert await stream_client.run_script("call_1", [b"hello"]) is None


@pytest.mark.asyncio
async def test_run_script_connection_closed(stream_client):
    websocket = connected(stream_client, {"type": "call.answered", "callId": "call_1"})
    websocket.recv.side_effect = [json.dumps({"type": "call.answered"}), ConnectionClosed(None, None)]

    assert await stream_client.run_script("call_1", [b"hello"]) is None
    assert stream_client.websocket is None


@pytest.mark.asyncio
async def test_close(stream_client):
    websocket = connected(stream_client)

    await stream_client.close()

    websocket.close.assert_called_once()
    assert stream_client.websocket is None


@pytest.mark.asyncio
async def test_run_script_stops_when_conversation_ends(stream_client):
    websocket = connected(
        stream_client,
        {"type": "call.answered", "callId": "call_1"},
        {"type": "audio.reply", "callId": "call_1", "intent": "goodbye", "shouldEnd": True},
        {"type": "call.ended", "callId": "call_1"},
    )

    ended = await stream_client.run_script("call_1", [b"thanks, bye", b"never sent"])

    assert ended["type"] == "call.ended"
    assert [m["type"] for m in sent(websocket)] == ["call.answer", "audio.input", "call.end"]
