"""
Pydantic models for the call-stream WebSocket protocol.

A media gateway connected to ``/ws/calls`` drives calls with these JSON
messages: it answers a routed call, streams caller utterances as base64 audio,
holds/resumes and finally ends the call. Every inbound message carries the
``callId`` returned by call routing.
"""

import base64
import binascii
import logging
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

SUPPORTED_MEDIA_FORMATS = ["audio/wav", "audio/mpeg", "audio/ogg", "audio/l16", "text/plain"]


def encode_audio(audio: Optional[bytes]) -> Optional[str]:
    if audio is None:
        return None
    return base64.b64encode(audio).decode("utf-8")


class BaseMessage(BaseModel):
    """Base model for all call-stream messages."""

    type: str = Field(..., description="Message type identifier")
    callId: Optional[str] = Field(None, description="Identifier returned by call routing")

    @field_validator("callId")
    def validate_call_id(cls, v):
        """Validate that a call id, when given, is not blank."""
        if v is not None and not v.strip():
            raise ValueError("Call ID cannot be blank")
        return v


# Inbound
class CallAnswerMessage(BaseMessage):
    type: Literal["call.answer"]
    callId: str


class AudioInputMessage(BaseMessage):
    """One complete caller utterance."""

    type: Literal["audio.input"]
    callId: str
    audioChunk: str = Field(..., description="Base64-encoded audio data")
    mimeType: str = Field(DEFAULT_AUDIO_MIME_TYPE, description="Format of the audio")

    @field_validator("audioChunk")
    def validate_audio_chunk(cls, v):
        """Validate that audio chunk is valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoded audio data")
        return v

    @field_validator("mimeType")
    def validate_mime_type(cls, v):
        """Warn about formats the default codecs do not know."""
        if v not in SUPPORTED_MEDIA_FORMATS:
            logger.warning(f"Audio format not in supported list: {v}")
        return v

    def audio_bytes(self) -> bytes:
        return base64.b64decode(self.audioChunk)


class CallHoldMessage(BaseMessage):
    type: Literal["call.hold"]
    callId: str


class CallResumeMessage(BaseMessage):
    type: Literal["call.resume"]
    callId: str


class CallEndMessage(BaseMessage):
    type: Literal["call.end"]
    callId: str
    reason: str = Field("caller_hangup", description="Why the call ended")


# Outbound
class CallAnsweredResponse(BaseMessage):
    type: Literal["call.answered"]
    welcomeMessage: str
    audioChunk: Optional[str] = None


class AudioReplyResponse(BaseMessage):
    type: Literal["audio.reply"]
    transcript: str
    replyText: str
    intent: str
    confidence: float
    audioChunk: Optional[str] = Field(None, description="Base64 reply audio; absent when synthesis failed")
    shouldTransfer: bool = False
    transferReason: Optional[str] = None
    shouldEnd: bool = Field(False, description="The conversation is over and the gateway should end the call")


class CallStatusResponse(BaseMessage):
    type: Literal["call.status"]
    status: str


class CallEndedResponse(BaseMessage):
    type: Literal["call.ended"]
    summary: str
    duration: float


class CallErrorResponse(BaseMessage):
    type: Literal["call.error"]
    reason: str


IncomingMessage = Union[
    CallAnswerMessage,
    AudioInputMessage,
    CallHoldMessage,
    CallResumeMessage,
    CallEndMessage,
]

OutgoingMessage = Union[
    CallAnsweredResponse,
    AudioReplyResponse,
    CallStatusResponse,
    CallEndedResponse,
    CallErrorResponse,
]
