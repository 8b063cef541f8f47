"""
Phone agent: the lifecycle of calls answered by one configured agent.

A ``PhoneAgent`` is bound to a route. It opens a conversation for every
incoming call, turns caller audio into text through the speech codec, decides
whether the turn is an emergency, a transfer request or a normal turn, and
speaks the reply back. Emergency keywords are checked before transfer
keywords, and both before the conversation handler sees the text.

Call metrics are recomputed from the full call history whenever a call ends,
under a lock so that concurrent hang-ups do not interleave.
"""

import asyncio
import logging
import re
import time
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME, TRANSCRIBE_MAX_ATTEMPTS
from callflow.core.conversation_handler import (
    ConversationHandler,
    EventPublisher,
    clarification_response,
    fallback_response,
)
from callflow.errors import CallNotFoundError, ConversationClosedError, InvalidInputError
from callflow.models.call import (
    AudioProcessingResult,
    AudioTurnResult,
    CallGreeting,
    CallMetrics,
    CallStatus,
    CallSummary,
    IncomingCall,
    MetricsAnalysis,
    PhoneAgentConfig,
    PhoneCall,
    TranscriptionResult,
)
from callflow.models.conversation import (
    Channel,
    ConversationResponse,
    ConversationStatus,
    Intent,
    utcnow,
)
from callflow.services.speech import SpeechCodec

logger = logging.getLogger(LOGGER_NAME)

EMERGENCY_TEXT = (
    "I understand this is an emergency. I'm connecting you with our emergency response team "
    "right away. Please stay on the line."
)
TRANSFER_TEXT = (
    "I'll connect you with one of our team members who can better assist you. "
    "Please hold for just a moment."
)
CLOSED_TEXT = "Thanks again for calling. This call is ending now, goodbye!"
UNINTELLIGIBLE_MARKER = "[unintelligible audio]"


def _keyword_pattern(keywords: Iterable[str]) -> Optional[re.Pattern]:
    words = [re.escape(k.strip().lower()) for k in keywords if k.strip()]
    if not words:
        return None
    return re.compile(r"\b(" + "|".join(words) + r")\b", re.IGNORECASE)


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes}m {secs}s"


class PhoneAgent:
    """Handles the calls of one route.

    Args:
        config: Agent persona, voice and escalation settings
        conversation_handler: Shared conversation state machine
        speech_codec: Transcription and synthesis backend
        event_publisher: Optional workflow engine for escalation events
        clock: Returns the current aware datetime, injectable for tests
    """

    def __init__(
        self,
        config: PhoneAgentConfig,
        conversation_handler: ConversationHandler,
        speech_codec: SpeechCodec,
        event_publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.conversation_handler = conversation_handler
        self.speech_codec = speech_codec
        self.event_publisher = event_publisher
        self.clock = clock
        self.calls: Dict[str, PhoneCall] = {}
        self.call_history: List[PhoneCall] = []
        self.summaries: Dict[str, CallSummary] = {}
        self.metrics = CallMetrics()
        self.response_times: List[float] = []
        self._metrics_lock = asyncio.Lock()
        self._apply_config(config)

    def _apply_config(self, config: PhoneAgentConfig) -> None:
        self.config = config
        self._emergency_pattern = _keyword_pattern(config.emergency_keywords)
        self._escalation_pattern = _keyword_pattern(config.transfer_conditions.escalation_keywords)

    def update_config(self, **changes) -> PhoneAgentConfig:
        """Replace configuration fields; takes effect on the next turn."""
        config = PhoneAgentConfig(**{**self.config.model_dump(), **changes})
        self._apply_config(config)
        logger.info(f"Updated phone agent configuration for business {config.business_id}")
        return config

    # Lookups

    def get_call(self, call_id: str) -> PhoneCall:
        try:
            return self.calls[call_id]
        except KeyError:
            raise CallNotFoundError(call_id) from None

    def get_active_calls(self) -> List[PhoneCall]:
        return [call for call in self.calls.values() if not call.is_finished]

    def get_call_history(self, limit: Optional[int] = None) -> List[PhoneCall]:
        history = sorted(self.call_history, key=lambda call: call.started_at, reverse=True)
        return history[:limit] if limit is not None else history

    # Call lifecycle

    async def handle_incoming_call(
        self, incoming: IncomingCall, route_id: Optional[str] = None
    ) -> PhoneCall:
        conversation = await self.conversation_handler.start_conversation(
            business_id=incoming.business_id,
            channel=Channel.PHONE,
            customer_phone=incoming.from_number,
            customer_name=incoming.caller_name,
        )
        call = PhoneCall(
            id=incoming.call_id,
            business_id=incoming.business_id,
            from_number=incoming.from_number,
            to_number=incoming.to_number,
            caller_name=incoming.caller_name,
            direction=incoming.direction,
            conversation_id=conversation.id,
            route_id=route_id,
            started_at=self.clock(),
        )
        self.calls[call.id] = call
        async with self._metrics_lock:
            self.metrics.total_calls += 1
        logger.info(f"Incoming call {call.id} from {call.from_number} for business {call.business_id}")
        return call

    async def answer_call(self, call_id: str) -> CallGreeting:
        call = self.get_call(call_id)
        call.transition_to(CallStatus.CONNECTED)
        call.answered_at = self.clock()

        welcome = self.config.welcome_message
        await self.conversation_handler.record_agent_message(
            call.conversation_id, welcome, {"kind": "welcome"}
        )
        audio = await self._speak(welcome)
        logger.info(f"Answered call {call_id}")
        return CallGreeting(call=call, welcome_message=welcome, audio=audio)

    async def hold_call(self, call_id: str) -> PhoneCall:
        call = self.get_call(call_id)
        call.transition_to(CallStatus.ON_HOLD)
        await self.conversation_handler.hold_conversation(call.conversation_id)
        return call

    async def resume_call(self, call_id: str) -> PhoneCall:
        call = self.get_call(call_id)
        if call.status != CallStatus.ON_HOLD:
            raise InvalidInputError(f"Call '{call_id}' is not on hold")
        call.transition_to(CallStatus.CONNECTED)
        await self.conversation_handler.resume_conversation(call.conversation_id)
        return call

    async def transfer_call(self, call_id: str, reason: str) -> PhoneCall:
        call = self.get_call(call_id)
        call.transition_to(CallStatus.TRANSFERRED)
        call.transfer_reason = reason
        conversation = self.conversation_handler.get_conversation(call.conversation_id)
        if conversation.status in (ConversationStatus.ACTIVE, ConversationStatus.ON_HOLD):
            await self.conversation_handler.transfer_conversation(call.conversation_id, reason)
        logger.info(f"Call {call_id} transferred ({reason})")
        return call

    async def process_audio_input(
        self, call_id: str, audio: bytes, mime_type: str = DEFAULT_AUDIO_MIME_TYPE
    ) -> AudioTurnResult:
        """Run one caller turn from audio to spoken reply.

        Args:
            call_id: Connected call receiving the audio
            audio: Raw caller audio
            mime_type: Format hint passed to the speech codec

        Returns:
            Transcript, reply, synthesized audio and the transfer decision

        Raises:
            CallNotFoundError: Unknown call id
            InvalidInputError: The call is not connected
        """
        call = self.get_call(call_id)
        if call.status != CallStatus.CONNECTED:
            raise InvalidInputError(f"Call '{call_id}' is not connected (status: {call.status.value})")

        started = time.perf_counter()
        transcript = ""
        try:
            transcription = await self._transcribe(audio, mime_type)
            transcript = transcription.text.strip()

            if not transcript:
                result = await self._handle_empty_turn(call)
            elif self._emergency_pattern and self._emergency_pattern.search(transcript):
                result = await self._transfer_turn(
                    call, transcript, "emergency", EMERGENCY_TEXT, Intent.EMERGENCY, 0.98
                )
                await self._publish_emergency(call, transcript)
            elif self._wants_human(transcript):
                result = await self._transfer_turn(
                    call, transcript, "customer_request", TRANSFER_TEXT, Intent.TRANSFER, 0.95
                )
            else:
                result = await self._conversation_turn(call, transcription)
        except ConversationClosedError:
            result = self._closed_turn(call, transcript)
        except Exception as e:
            logger.error(f"Error processing audio for call {call_id}: {e}", exc_info=True)
            result = await self._failure_turn(call, transcript)

        self.response_times.append(time.perf_counter() - started)
        result.audio_reply = await self._speak(result.reply.text)
        return result

    async def _handle_empty_turn(self, call: PhoneCall) -> AudioTurnResult:
        call.failed_attempts += 1
        if call.failed_attempts >= self.config.transfer_conditions.max_failed_attempts:
            return await self._transfer_turn(
                call, "", "max_failed_attempts", TRANSFER_TEXT, Intent.TRANSFER, 0.95
            )
        reply = await self.conversation_handler.process_message(
            call.conversation_id, "", {"source": "audio", "empty_transcript": True}
        )
        return AudioTurnResult(transcript="", reply=reply)

    async def _conversation_turn(
        self, call: PhoneCall, transcription: TranscriptionResult
    ) -> AudioTurnResult:
        call.failed_attempts = 0
        reply = await self.conversation_handler.process_message(
            call.conversation_id,
            transcription.text.strip(),
            {"source": "audio", "confidence": transcription.confidence},
        )
        for action in reply.actions:
            if action.type == "book_appointment":
                call.appointment_booked = True
            elif action.type == "capture_lead":
                call.lead_captured = True

        result = AudioTurnResult(transcript=transcription.text.strip(), reply=reply)
        result.should_end = any(action.type == "end_conversation" for action in reply.actions)
        if reply.escalation_required:
            reason = reply.transfer_reason or "escalation"
            await self.transfer_call(call.id, reason)
            result.should_transfer = True
            result.transfer_reason = reason
        return result

    async def _transfer_turn(
        self,
        call: PhoneCall,
        transcript: str,
        reason: str,
        text: str,
        intent: Intent,
        confidence: float,
    ) -> AudioTurnResult:
        reply = ConversationResponse(
            text=text,
            intent=intent,
            confidence=confidence,
            escalation_required=True,
            transfer_reason=reason,
        )
        if not self.conversation_handler.get_conversation(call.conversation_id).is_closed:
            await self.conversation_handler.record_exchange(
                call.conversation_id, transcript, reply, {"source": "audio"}
            )
        await self.transfer_call(call.id, reason)
        return AudioTurnResult(
            transcript=transcript, reply=reply, should_transfer=True, transfer_reason=reason
        )

    def _closed_turn(self, call: PhoneCall, transcript: str) -> AudioTurnResult:
        # The caller kept talking after the conversation ended; close politely
        logger.info(f"Call {call.id} spoke after its conversation ended")
        reply = ConversationResponse(text=CLOSED_TEXT, intent=Intent.GOODBYE, confidence=1.0)
        return AudioTurnResult(transcript=transcript, reply=reply, should_end=True)

    async def _failure_turn(self, call: PhoneCall, transcript: str) -> AudioTurnResult:
        reply = fallback_response()
        try:
            await self.conversation_handler.record_exchange(
                call.conversation_id, transcript or UNINTELLIGIBLE_MARKER, reply, {"source": "audio"}
            )
            if call.status in (CallStatus.CONNECTED, CallStatus.ON_HOLD):
                await self.transfer_call(call.id, reply.transfer_reason)
        except Exception as e:
            logger.error(f"Could not escalate call {call.id} after failure: {e}", exc_info=True)
        return AudioTurnResult(
            transcript=transcript,
            reply=reply,
            should_transfer=True,
            transfer_reason=reply.transfer_reason,
        )

    def _wants_human(self, transcript: str) -> bool:
        if self._escalation_pattern and self._escalation_pattern.search(transcript):
            return True
        lowered = transcript.lower()
        return any(
            phrase.lower() in lowered for phrase in self.config.transfer_conditions.human_request_phrases
        )

    async def _publish_emergency(self, call: PhoneCall, transcript: str) -> None:
        if self.event_publisher is None:
            return
        try:
            await self.event_publisher.dispatch_event(
                "emergency_escalated",
                call.business_id,
                {
                    "call_id": call.id,
                    "conversation_id": call.conversation_id,
                    "customer_phone": call.from_number,
                    "customer_name": call.caller_name,
                    "transcript": transcript,
                },
            )
        except Exception as e:
            logger.error(f"Could not publish emergency for call {call.id}: {e}", exc_info=True)

    async def _transcribe(self, audio: bytes, mime_type: str) -> TranscriptionResult:
        attempts = max(1, TRANSCRIBE_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return await self.speech_codec.transcribe(audio, mime_type)
            except Exception as e:
                if attempt == attempts:
                    raise
                logger.warning(f"Transcription attempt {attempt} failed, retrying: {e}")

    async def _speak(self, text: str) -> Optional[AudioProcessingResult]:
        try:
            return await self.speech_codec.synthesize(text, self.config.voice)
        except Exception as e:
            # The caller still gets the text reply
            logger.warning(f"Speech synthesis failed: {e}")
            return None

    async def end_call(self, call_id: str, reason: str = "caller_hangup") -> CallSummary:
        """Finish a call, summarise it and refresh the metrics.

        Ending an already finished call returns its existing summary.
        """
        call = self.get_call(call_id)
        if call.is_finished:
            return self.summaries[call_id]

        if call.status == CallStatus.INCOMING:
            call.transition_to(CallStatus.FAILED)
        elif call.status in (CallStatus.CONNECTED, CallStatus.ON_HOLD):
            call.transition_to(CallStatus.COMPLETED)

        call.ended_at = self.clock()
        call.end_reason = reason
        call.duration = max(0.0, (call.ended_at - call.started_at).total_seconds())

        conversation = await self.conversation_handler.end_conversation(call.conversation_id, reason)
        topics = [intent.value for intent in conversation.intents_seen]
        turns = conversation.user_turns()
        caller = call.caller_name or call.from_number
        text = (
            f"Call with {caller} lasted {int(call.duration)} seconds. "
            f"Customer had {turns} interactions. "
            f"Primary topics: {', '.join(topics) if topics else 'none'}."
        )
        if call.transfer_reason:
            text += f" Call was transferred due to: {call.transfer_reason}."

        summary = CallSummary(
            call_id=call.id,
            duration=call.duration,
            user_turns=turns,
            topics=topics,
            transfer_reason=call.transfer_reason,
            text=text,
        )
        call.summary = text
        self.summaries[call.id] = summary
        self.call_history.append(call)

        async with self._metrics_lock:
            self._recompute_metrics()
        logger.info(f"Call {call_id} ended with status {call.status.value}: {text}")
        return summary

    # Metrics

    def _recompute_metrics(self) -> None:
        finished = self.call_history
        answered = [call for call in finished if call.answered_at is not None]
        transferred = [call for call in finished if call.status == CallStatus.TRANSFERRED]
        durations = [call.duration for call in answered if call.duration is not None]
        self.metrics = CallMetrics(
            total_calls=self.metrics.total_calls,
            answered_calls=len(answered),
            missed_calls=sum(1 for call in finished if call.answered_at is None),
            transferred_calls=len(transferred),
            average_call_duration=sum(durations) / len(durations) if durations else 0.0,
            average_response_time=(
                sum(self.response_times) / len(self.response_times) if self.response_times else 0.0
            ),
            appointments_booked=sum(1 for call in finished if call.appointment_booked),
            leads_captured=sum(1 for call in finished if call.lead_captured),
            escalation_rate=len(transferred) / len(finished) if finished else 0.0,
        )

    def get_metrics(self) -> CallMetrics:
        return self.metrics.model_copy()

    def analyze_metrics(self) -> MetricsAnalysis:
        metrics = self.metrics
        answer_rate = metrics.answered_calls / metrics.total_calls * 100 if metrics.total_calls else 0.0
        conversion_rate = (
            metrics.appointments_booked / metrics.answered_calls * 100 if metrics.answered_calls else 0.0
        )
        if answer_rate > 95 and metrics.escalation_rate < 0.1:
            performance = "Excellent"
        elif answer_rate > 85 and metrics.escalation_rate < 0.2:
            performance = "Good"
        else:
            performance = "Needs Improvement"
        return MetricsAnalysis(
            answer_rate=round(answer_rate, 2),
            conversion_rate=round(conversion_rate, 2),
            escalation_rate=round(metrics.escalation_rate * 100, 2),
            average_call_duration=format_duration(metrics.average_call_duration),
            performance=performance,
        )

    def daily_report(self, day: Optional[date] = None) -> Dict[str, object]:
        day = day or self.clock().date()
        calls = [call for call in self.call_history if call.started_at.date() == day]
        return {
            "date": day.isoformat(),
            "total_calls": len(calls),
            "answered_calls": sum(1 for call in calls if call.answered_at is not None),
            "transferred_calls": sum(1 for call in calls if call.status == CallStatus.TRANSFERRED),
            "appointments_booked": sum(1 for call in calls if call.appointment_booked),
            "summaries": [call.summary for call in calls if call.summary],
        }

    def get_overdue_calls(self) -> List[PhoneCall]:
        now = self.clock()
        return [
            call
            for call in self.get_active_calls()
            if (now - call.started_at).total_seconds() > self.config.max_call_duration
        ]

    def is_healthy(self) -> bool:
        return not self.get_overdue_calls()
