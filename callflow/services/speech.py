"""
Speech codec boundary.

Transcription and synthesis are black boxes to the call flow: audio bytes go
in, text comes out, and the reverse. Production deployments wire a vendor
codec; ``PassthroughSpeechCodec`` treats audio payloads as UTF-8 text so the
whole pipeline can be driven from tests and the development client.
"""

import logging
from typing import Protocol

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME
from callflow.models.call import AudioProcessingResult, TranscriptionResult, VoiceOptions, WordTiming

logger = logging.getLogger(LOGGER_NAME)

# Rough speaking rate used to estimate durations of passthrough audio
WORDS_PER_SECOND = 2.5


class SpeechCodec(Protocol):
    async def transcribe(
        self, audio: bytes, mime_type: str = DEFAULT_AUDIO_MIME_TYPE
    ) -> TranscriptionResult: ...

    async def synthesize(self, text: str, voice: VoiceOptions) -> AudioProcessingResult: ...


class PassthroughSpeechCodec:
    """Codec whose "audio" is the UTF-8 encoding of the spoken text."""

    async def transcribe(
        self, audio: bytes, mime_type: str = DEFAULT_AUDIO_MIME_TYPE
    ) -> TranscriptionResult:
        text = audio.decode("utf-8").strip()
        words = []
        position = 0.0
        for word in text.split():
            length = 1 / WORDS_PER_SECOND
            words.append(WordTiming(word=word, start=position, end=position + length))
            position += length
        logger.debug(f"Transcribed {len(audio)} bytes of {mime_type} into {len(words)} words")
        return TranscriptionResult(text=text, confidence=1.0 if text else 0.0, words=words)

    async def synthesize(self, text: str, voice: VoiceOptions) -> AudioProcessingResult:
        audio = text.encode("utf-8")
        return AudioProcessingResult(
            audio=audio,
            mime_type="text/plain",
            duration=len(text.split()) / WORDS_PER_SECOND,
            size=len(audio),
        )
