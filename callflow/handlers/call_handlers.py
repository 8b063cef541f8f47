"""
Handlers for call-stream WebSocket messages.

Each handler validates its message, performs the call operation on the
orchestrator and returns the response model; the WebSocket manager sends it.
Errors are reported to the gateway as ``call.error`` responses rather than
raised, so one bad message does not drop the connection.
"""

import logging
from typing import Any, Dict

from fastapi import WebSocket
from pydantic import ValidationError

from callflow.config.constants import LOGGER_NAME
from callflow.core.orchestrator import CallflowOrchestrator
from callflow.errors import CallflowError
from callflow.models.message_schemas import (
    AudioInputMessage,
    AudioReplyResponse,
    CallAnsweredResponse,
    CallAnswerMessage,
    CallEndedResponse,
    CallEndMessage,
    CallErrorResponse,
    CallHoldMessage,
    CallResumeMessage,
    CallStatusResponse,
    OutgoingMessage,
    encode_audio,
)

logger = logging.getLogger(LOGGER_NAME)


def error_response(call_id, reason: str) -> CallErrorResponse:
    return CallErrorResponse(type="call.error", callId=call_id, reason=reason)


async def handle_call_answer(
    message: Dict[str, Any], websocket: WebSocket, orchestrator: CallflowOrchestrator
) -> OutgoingMessage:
    """
    Answer a routed call and return the spoken welcome.

    Args:
        message: The call.answer message
        websocket: The gateway connection
        orchestrator: Owner of the call

    Returns:
        A call.answered response, or call.error if the call cannot be answered
    """
    try:
        answer = CallAnswerMessage(**message)
        greeting = await orchestrator.answer_call(answer.callId)
        return CallAnsweredResponse(
            type="call.answered",
            callId=answer.callId,
            welcomeMessage=greeting.welcome_message,
            audioChunk=encode_audio(greeting.audio.audio if greeting.audio else None),
        )
    except ValidationError as e:
        logger.error(f"Invalid call.answer message: {e}")
        return error_response(message.get("callId"), "Invalid call.answer message")
    except CallflowError as e:
        logger.warning(f"Could not answer call {message.get('callId')}: {e}")
        return error_response(message.get("callId"), str(e))


async def handle_audio_input(
    message: Dict[str, Any], websocket: WebSocket, orchestrator: CallflowOrchestrator
) -> OutgoingMessage:
    """
    Process one caller utterance.

    Args:
        message: The audio.input message with base64 audio
        websocket: The gateway connection
        orchestrator: Owner of the call

    Returns:
        An audio.reply response with transcript, reply text and reply audio
    """
    try:
        audio_message = AudioInputMessage(**message)
        turn = await orchestrator.process_audio_input(
            audio_message.callId, audio_message.audio_bytes(), audio_message.mimeType
        )
        return AudioReplyResponse(
            type="audio.reply",
            callId=audio_message.callId,
            transcript=turn.transcript,
            replyText=turn.reply.text,
            intent=turn.reply.intent.value,
            confidence=turn.reply.confidence,
            audioChunk=encode_audio(turn.audio_reply.audio if turn.audio_reply else None),
            shouldTransfer=turn.should_transfer,
            transferReason=turn.transfer_reason,
            shouldEnd=turn.should_end,
        )
    except ValidationError as e:
        logger.error(f"Invalid audio.input message: {e}")
        return error_response(message.get("callId"), "Invalid audio.input message")
    except CallflowError as e:
        logger.warning(f"Could not process audio for call {message.get('callId')}: {e}")
        return error_response(message.get("callId"), str(e))


async def handle_call_hold(
    message: Dict[str, Any], websocket: WebSocket, orchestrator: CallflowOrchestrator
) -> OutgoingMessage:
    try:
        hold = CallHoldMessage(**message)
        call = await orchestrator.hold_call(hold.callId)
        return CallStatusResponse(type="call.status", callId=call.id, status=call.status.value)
    except ValidationError as e:
        logger.error(f"Invalid call.hold message: {e}")
        return error_response(message.get("callId"), "Invalid call.hold message")
    except CallflowError as e:
        return error_response(message.get("callId"), str(e))


async def handle_call_resume(
    message: Dict[str, Any], websocket: WebSocket, orchestrator: CallflowOrchestrator
) -> OutgoingMessage:
    try:
        resume = CallResumeMessage(**message)
        call = await orchestrator.resume_call(resume.callId)
        return CallStatusResponse(type="call.status", callId=call.id, status=call.status.value)
    except ValidationError as e:
        logger.error(f"Invalid call.resume message: {e}")
        return error_response(message.get("callId"), "Invalid call.resume message")
    except CallflowError as e:
        return error_response(message.get("callId"), str(e))


async def handle_call_end(
    message: Dict[str, Any], websocket: WebSocket, orchestrator: CallflowOrchestrator
) -> OutgoingMessage:
    """
    End a call and return its summary.

    Args:
        message: The call.end message with an optional reason
        websocket: The gateway connection
        orchestrator: Owner of the call

    Returns:
        A call.ended response with the call summary
    """
    try:
        end = CallEndMessage(**message)
        summary = await orchestrator.end_call(end.callId, end.reason)
        logger.info(f"Call {end.callId} ended over WebSocket: {end.reason}")
        return CallEndedResponse(
            type="call.ended", callId=end.callId, summary=summary.text, duration=summary.duration
        )
    except ValidationError as e:
        logger.error(f"Invalid call.end message: {e}")
        return error_response(message.get("callId"), "Invalid call.end message")
    except CallflowError as e:
        return error_response(message.get("callId"), str(e))
