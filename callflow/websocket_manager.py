"""
WebSocket connection manager for the call-stream protocol.

A media gateway keeps one WebSocket open and multiplexes its calls over it.
The manager accepts the connection, parses each JSON message, routes it to
the handler registered for its ``type`` and sends the handler's response
back. Calls still open when the connection drops are ended with reason
``connection_lost``.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from callflow.config.constants import (
    LOGGER_NAME,
    MESSAGE_TYPE_AUDIO_INPUT,
    MESSAGE_TYPE_CALL_ANSWER,
    MESSAGE_TYPE_CALL_ANSWERED,
    MESSAGE_TYPE_CALL_END,
    MESSAGE_TYPE_CALL_ENDED,
    MESSAGE_TYPE_CALL_HOLD,
    MESSAGE_TYPE_CALL_RESUME,
)
from callflow.core.orchestrator import CallflowOrchestrator
from callflow.errors import CallflowError
from callflow.handlers.call_handlers import (
    error_response,
    handle_audio_input,
    handle_call_answer,
    handle_call_end,
    handle_call_hold,
    handle_call_resume,
)
from callflow.models.message_schemas import OutgoingMessage

logger = logging.getLogger(LOGGER_NAME)

HandlerFunc = Callable[
    [Dict[str, Any], WebSocket, CallflowOrchestrator],
    Awaitable[OutgoingMessage],
]


class WebSocketManager:
    """Routes call-stream messages to handler functions by message type."""

    def __init__(self, orchestrator: CallflowOrchestrator):
        self.orchestrator = orchestrator
        self.handlers: Dict[str, HandlerFunc] = {
            MESSAGE_TYPE_CALL_ANSWER: handle_call_answer,
            MESSAGE_TYPE_AUDIO_INPUT: handle_audio_input,
            MESSAGE_TYPE_CALL_HOLD: handle_call_hold,
            MESSAGE_TYPE_CALL_RESUME: handle_call_resume,
            MESSAGE_TYPE_CALL_END: handle_call_end,
        }

    async def handle_websocket(self, websocket: WebSocket):
        """Serve one gateway connection until it disconnects.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object
        """
        await websocket.accept()
        logger.info("Call-stream WebSocket connection established")
        open_calls: Set[str] = set()

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_text(error_response(None, "Malformed JSON").model_dump_json())
                    continue
                if not isinstance(message, dict):
                    await websocket.send_text(
                        error_response(None, "Message must be a JSON object").model_dump_json()
                    )
                    continue

                message_type = message.get("type")
                call_id = message.get("callId")
                logger.debug(f"Received {message_type}" + (f" for call {call_id}" if call_id else ""))

                handler = self.handlers.get(message_type)
                if handler is None:
                    logger.warning(f"Unhandled message type received: {message_type}")
                    response = error_response(call_id, f"Unknown message type: {message_type}")
                else:
                    response = await handler(message, websocket, self.orchestrator)

                if response.type == MESSAGE_TYPE_CALL_ANSWERED and call_id:
                    open_calls.add(call_id)
                elif response.type == MESSAGE_TYPE_CALL_ENDED:
                    open_calls.discard(call_id)

                await websocket.send_text(response.model_dump_json())
        except WebSocketDisconnect:
            logger.info("Call-stream WebSocket disconnected")
        except Exception as e:
            logger.error(f"Error in WebSocket connection: {e}", exc_info=True)
        finally:
            for call_id in open_calls:
                try:
                    await self.orchestrator.end_call(call_id, "connection_lost")
                except CallflowError as e:
                    logger.warning(f"Could not end call {call_id} during cleanup: {e}")
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"WebSocket already closed: {e}")
            logger.info("Call-stream WebSocket connection closed")
