"""
WebSocket client for driving calls over the call-stream protocol.

This is the gateway side of ``/ws/calls``: it answers a routed call, streams
caller utterances and ends the call. It is used by integration tools and
load tests that stand in for a media gateway.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME
from callflow.models.message_schemas import (
    AudioInputMessage,
    CallAnswerMessage,
    CallEndMessage,
    CallHoldMessage,
    CallResumeMessage,
    encode_audio,
)

logger = logging.getLogger(LOGGER_NAME)


class CallStreamClient:
    """
    Client for a callflow server's call-stream WebSocket.

    Every request waits for the single response the server sends back, so
    the client must not be shared between concurrent tasks.
    """

    def __init__(self, url: str, mime_type: str = DEFAULT_AUDIO_MIME_TYPE):
        """
        Initialize the call-stream client.

        Args:
            url: The WebSocket URL, e.g. ws://localhost:8000/ws/calls
            mime_type: Format declared for streamed audio
        """
        self.url = url
        self.mime_type = mime_type
        self.websocket = None

    async def connect(self) -> bool:
        """
        Establish a connection to the call-stream endpoint.

        Returns:
            True if connection was successful, False otherwise
        """
        try:
            self.websocket = await websockets.connect(self.url)
            logger.info(f"Connected to call-stream WebSocket at {self.url}")
            return True
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to call stream: {e}")
            self.websocket = None
            return False

    async def _request(self, message) -> Optional[Dict[str, Any]]:
        if not self.websocket:
            logger.error(f"Cannot send {message.type}: Not connected")
            return None

        await self.websocket.send(message.model_dump_json())
        response = json.loads(await self.websocket.recv())
        if response.get("type") == "call.error":
            logger.warning(f"{message.type} for call {message.callId} failed: {response.get('reason')}")
        return response

    async def answer(self, call_id: str) -> Optional[Dict[str, Any]]:
        """
        Answer a call previously routed by the server.

        Args:
            call_id: Call id returned by call routing

        Returns:
            The call.answered (or call.error) response, None when not connected
        """
        return await self._request(CallAnswerMessage(type="call.answer", callId=call_id))

    async def send_audio(self, call_id: str, audio: bytes) -> Optional[Dict[str, Any]]:
        """
        Send one complete caller utterance.

        Args:
            call_id: The answered call
            audio: Raw audio bytes, base64-encoded on the wire

        Returns:
            The audio.reply (or call.error) response, None when not connected
        """
        message = AudioInputMessage(
            type="audio.input",
            callId=call_id,
            audioChunk=encode_audio(audio),
            mimeType=self.mime_type,
        )
        return await self._request(message)

    async def hold(self, call_id: str) -> Optional[Dict[str, Any]]:
        return await self._request(CallHoldMessage(type="call.hold", callId=call_id))

    async def resume(self, call_id: str) -> Optional[Dict[str, Any]]:
        return await self._request(CallResumeMessage(type="call.resume", callId=call_id))

    async def end_call(self, call_id: str, reason: str = "caller_hangup") -> Optional[Dict[str, Any]]:
        """
        End the call and return the server's summary.

        Args:
            call_id: The call to end
            reason: Why the call ended

        Returns:
            The call.ended (or call.error) response, None when not connected
        """
        response = await self._request(CallEndMessage(type="call.end", callId=call_id, reason=reason))
        if response is not None:
            logger.info(f"Ended call {call_id}: {reason}")
        return response

    async def close(self) -> None:
        """
        Close the WebSocket connection.
        """
        if self.websocket:
            await self.websocket.close()
            logger.info("Closed call-stream WebSocket connection")
            self.websocket = None

    async def run_script(
        self,
        call_id: str,
        utterances,
        on_reply: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Answer a call, send each utterance in turn and end the call.

        Stops early when the server asks for a transfer, says the conversation
        is over or reports an error.

        Args:
            call_id: Call id returned by call routing
            utterances: Iterable of audio byte strings
            on_reply: Optional coroutine called with each reply

        Returns:
            The call.ended response, or None if the call could not be answered
        """
        answered = await self.answer(call_id)
        if not answered or answered.get("type") != "call.answered":
            return None

        try:
            for audio in utterances:
                reply = await self.send_audio(call_id, audio)
                if reply is None:
                    return None
                if on_reply is not None:
                    await on_reply(reply)
                if reply.get("type") == "call.error" or reply.get("shouldTransfer") or reply.get("shouldEnd"):
                    break
        except ConnectionClosed:
            logger.info("Call-stream connection closed by server")
            self.websocket = None
            return None

        return await self.end_call(call_id)
