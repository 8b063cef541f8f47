import base64
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocket, WebSocketDisconnect

from callflow.models.call import CallStatus
from callflow.models.message_schemas import CallStatusResponse
from callflow.websocket_manager import WebSocketManager


@pytest.fixture
def websocket_manager(orchestrator):
    return WebSocketManager(orchestrator)


def make_websocket(*messages):
    websocket = AsyncMock(spec=WebSocket)
    websocket.receive_text.side_effect = [
        m if isinstance(m, str) else json.dumps(m) for m in messages
    ] + [WebSocketDisconnect()]
    return websocket


def sent_messages(websocket):
    return [json.loads(c.args[0]) for c in websocket.send_text.call_args_list]


@pytest.mark.asyncio
async def test_websocket_manager_initialization(websocket_manager):
    """Test that WebSocketManager registers a handler per inbound type"""
    assert set(websocket_manager.handlers) == {
        "call.answer",
        "audio.input",
        "call.hold",
        "call.resume",
        "call.end",
    }


@pytest.mark.asyncio
async def test_handle_websocket_flow(websocket_manager, routed_call):
    """Test a full call over one connection"""
    websocket = make_websocket(
        {"type": "call.answer", "callId": routed_call},
        {
            "type": "audio.input",
            "callId": routed_call,
            "audioChunk": base64.b64encode(b"Can I get a quote?").decode("utf-8"),
        },
        {"type": "call.end", "callId": routed_call},
    )

    await websocket_manager.handle_websocket(websocket)

    websocket.accept.assert_called_once()
    assert [m["type"] for m in sent_messages(websocket)] == ["call.answered", "audio.reply", "call.ended"]
    assert sent_messages(websocket)[1]["intent"] == "pricing_request"
    websocket.close.assert_called_once()


@pytest.mark.asyncio
async def test_malformed_and_unknown_messages(websocket_manager):
    """Test that bad messages get call.error replies and the loop continues"""
    websocket = make_websocket("not json", {"type": "session.initiate", "callId": "call_1"})

    await websocket_manager.handle_websocket(websocket)

    errors = sent_messages(websocket)
    assert errors[0] == {"type": "call.error", "callId": None, "reason": "Malformed JSON"}
    assert errors[1]["reason"] == "Unknown message type: session.initiate"
    assert errors[1]["callId"] == "call_1"


@pytest.mark.asyncio
async def test_non_object_json_keeps_connection_open(websocket_manager, orchestrator, routed_call):
    """Test that JSON arrays and scalars are rejected without dropping the connection"""
    websocket = make_websocket("[1]", "42", {"type": "call.answer", "callId": routed_call})

    await websocket_manager.handle_websocket(websocket)

    replies = sent_messages(websocket)
    assert replies[0] == {"type": "call.error", "callId": None, "reason": "Message must be a JSON object"}
    assert replies[1]["reason"] == "Message must be a JSON object"
    assert replies[2]["type"] == "call.answered"


@pytest.mark.asyncio
async def test_dropped_connection_ends_open_calls(websocket_manager, orchestrator, routed_call):
    """Test that calls answered on a connection are ended when it drops"""
    websocket = make_websocket({"type": "call.answer", "callId": routed_call})

    await websocket_manager.handle_websocket(websocket)

    call = orchestrator.get_call(routed_call)
    assert call.status == CallStatus.COMPLETED
    assert call.end_reason == "connection_lost"


@pytest.mark.asyncio
async def test_handlers_are_dispatched_by_type(websocket_manager):
    """Test that messages reach the handler registered for their type"""
    hold_handler = AsyncMock(
        return_value=CallStatusResponse(type="call.status", callId="call_1", status="on_hold")
    )
    websocket_manager.handlers = {"call.hold": hold_handler}
    websocket = make_websocket({"type": "call.hold", "callId": "call_1"})

    await websocket_manager.handle_websocket(websocket)

    hold_handler.assert_called_once()
    assert hold_handler.call_args.args[0] == {"type": "call.hold", "callId": "call_1"}
    assert sent_messages(websocket)[0]["status"] == "on_hold"


@pytest.mark.asyncio
async def test_handle_websocket_exception(websocket_manager):
    """Test that exceptions are handled properly"""
    websocket = AsyncMock(spec=WebSocket)
    websocket.receive_text.side_effect = Exception("Test exception")

    await websocket_manager.handle_websocket(websocket)

    websocket.accept.assert_called_once()
    websocket.close.assert_called_once()
