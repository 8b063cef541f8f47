"""
Unit tests for the phone agent call lifecycle.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from callflow.core.phone_agent import CLOSED_TEXT, EMERGENCY_TEXT, PhoneAgent, format_duration
from callflow.errors import CallNotFoundError, InvalidInputError, InvalidStateTransitionError
from callflow.models.call import (
    CallStatus,
    IncomingCall,
    PhoneAgentConfig,
    TransferConditions,
)
from callflow.models.conversation import ConversationStatus, Intent, MessageType
from callflow.services.speech import PassthroughSpeechCodec

CALLER = "+15551234567"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.dispatch_event = AsyncMock(return_value=[])
    return publisher


@pytest.fixture
def agent(business_id, conversation_handler, publisher, clock):
    config = PhoneAgentConfig(business_id=business_id, welcome_message="Acme Plumbing, how can we help?")
    return PhoneAgent(
        config, conversation_handler, PassthroughSpeechCodec(), event_publisher=publisher, clock=clock
    )


async def connected_call(agent, business_id, caller_name=None):
    incoming = IncomingCall(
        from_number=CALLER, to_number="+15550100", business_id=business_id, caller_name=caller_name
    )
    call = await agent.handle_incoming_call(incoming, route_id="route_1")
    await agent.answer_call(call.id)
    return call


@pytest.mark.asyncio
async def test_incoming_call_opens_conversation(agent, business_id):
    incoming = IncomingCall(from_number=CALLER, to_number="+15550100", business_id=business_id)

    call = await agent.handle_incoming_call(incoming, route_id="route_1")

    assert call.status == CallStatus.INCOMING
    assert call.route_id == "route_1"
    assert agent.metrics.total_calls == 1
    conversation = agent.conversation_handler.get_conversation(call.conversation_id)
    assert conversation.customer_info.phone == CALLER


@pytest.mark.asyncio
async def test_answer_speaks_welcome(agent, business_id):
    incoming = IncomingCall(from_number=CALLER, to_number="+15550100", business_id=business_id)
    call = await agent.handle_incoming_call(incoming)

    greeting = await agent.answer_call(call.id)

    assert greeting.call.status == CallStatus.CONNECTED
    assert greeting.welcome_message == "Acme Plumbing, how can we help?"
    assert greeting.audio.audio == b"Acme Plumbing, how can we help?"
    history = agent.conversation_handler.get_message_history(call.conversation_id)
    assert history[-1].type == MessageType.AGENT


@pytest.mark.asyncio
async def test_audio_requires_connected_call(agent, business_id):
    incoming = IncomingCall(from_number=CALLER, to_number="+15550100", business_id=business_id)
    call = await agent.handle_incoming_call(incoming)

    with pytest.raises(InvalidInputError):
        await agent.process_audio_input(call.id, b"hello")
    with pytest.raises(CallNotFoundError):
        await agent.process_audio_input("call_missing", b"hello")


@pytest.mark.asyncio
async def test_emergency_transfers_call(agent, publisher, business_id):
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"this is an emergency, my pipe broke")

    assert result.should_transfer is True
    assert result.transfer_reason == "emergency"
    assert result.reply.text == EMERGENCY_TEXT
    assert result.reply.intent == Intent.EMERGENCY
    assert result.reply.confidence == 0.98
    assert call.status == CallStatus.TRANSFERRED
    conversation = agent.conversation_handler.get_conversation(call.conversation_id)
    assert conversation.status == ConversationStatus.TRANSFERRED
    assert publisher.dispatch_event.await_args.args[0] == "emergency_escalated"
    assert publisher.dispatch_event.await_args.args[2]["customer_phone"] == CALLER


@pytest.mark.asyncio
async def test_emergency_checked_before_transfer_request(agent, business_id):
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"There is a leak, get me a manager")

    assert result.transfer_reason == "emergency"


@pytest.mark.asyncio
async def test_transfer_request(agent, business_id):
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"Can I talk to a person please")

    assert result.should_transfer is True
    assert result.transfer_reason == "customer_request"
    assert result.reply.intent == Intent.TRANSFER


@pytest.mark.asyncio
async def test_conversation_turn_marks_booking(agent, business_id):
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"Can I book a visit tomorrow at 10am")

    assert result.should_transfer is False
    assert result.transcript == "Can I book a visit tomorrow at 10am"
    assert result.reply.intent == Intent.APPOINTMENT_BOOKING
    assert result.audio_reply.audio == result.reply.text.encode("utf-8")
    assert call.appointment_booked is True


@pytest.mark.asyncio
async def test_goodbye_asks_gateway_to_end_call(agent, business_id):
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"thanks, goodbye")

    assert result.reply.intent == Intent.GOODBYE
    assert result.should_end is True
    assert result.should_transfer is False
    conversation = agent.conversation_handler.get_conversation(call.conversation_id)
    assert conversation.status == ConversationStatus.COMPLETED


@pytest.mark.asyncio
async def test_speaking_after_goodbye_gets_closing_reply(agent, business_id):
    call = await connected_call(agent, business_id)
    await agent.process_audio_input(call.id, b"thanks, goodbye")

    result = await agent.process_audio_input(call.id, b"oh wait, one more thing")

    assert result.transcript == "oh wait, one more thing"
    assert result.reply.text == CLOSED_TEXT
    assert result.should_end is True
    assert result.audio_reply.audio == CLOSED_TEXT.encode("utf-8")
    assert call.status == CallStatus.CONNECTED
    summary = await agent.end_call(call.id)
    assert call.status == CallStatus.COMPLETED
    assert summary.user_turns == 1


@pytest.mark.asyncio
async def test_emergency_after_goodbye_still_transfers(agent, business_id):
    call = await connected_call(agent, business_id)
    await agent.process_audio_input(call.id, b"thanks, goodbye")

    result = await agent.process_audio_input(call.id, b"wait, this is an emergency")

    assert result.should_transfer is True
    assert result.transfer_reason == "emergency"
    assert call.status == CallStatus.TRANSFERRED


@pytest.mark.asyncio
async def test_repeated_silence_transfers(agent, business_id):
    call = await connected_call(agent, business_id)

    first = await agent.process_audio_input(call.id, b"   ")
    second = await agent.process_audio_input(call.id, b"")
    third = await agent.process_audio_input(call.id, b"")

    assert first.reply.intent == Intent.CLARIFICATION_REQUEST
    assert second.should_transfer is False
    assert third.should_transfer is True
    assert third.transfer_reason == "max_failed_attempts"


@pytest.mark.asyncio
async def test_understood_turn_resets_failed_attempts(business_id, conversation_handler):
    config = PhoneAgentConfig(
        business_id=business_id, transfer_conditions=TransferConditions(max_failed_attempts=2)
    )
    agent = PhoneAgent(config, conversation_handler, PassthroughSpeechCodec())
    call = await connected_call(agent, business_id)

    await agent.process_audio_input(call.id, b"")
    await agent.process_audio_input(call.id, b"What services do you offer")
    result = await agent.process_audio_input(call.id, b"")

    assert result.should_transfer is False
    assert call.failed_attempts == 1


@pytest.mark.asyncio
async def test_transcription_failure_escalates(business_id, conversation_handler):
    codec = PassthroughSpeechCodec()
    codec.transcribe = AsyncMock(side_effect=RuntimeError("speech service down"))
    agent = PhoneAgent(PhoneAgentConfig(business_id=business_id), conversation_handler, codec)
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"hello")

    assert codec.transcribe.await_count >= 1
    assert result.should_transfer is True
    assert result.transfer_reason == "technical_error"
    assert call.status == CallStatus.TRANSFERRED


@pytest.mark.asyncio
async def test_synthesis_failure_still_returns_text(business_id, conversation_handler):
    codec = PassthroughSpeechCodec()
    codec.synthesize = AsyncMock(side_effect=RuntimeError("tts down"))
    agent = PhoneAgent(PhoneAgentConfig(business_id=business_id), conversation_handler, codec)
    call = await connected_call(agent, business_id)

    result = await agent.process_audio_input(call.id, b"What services do you offer")

    assert result.audio_reply is None
    assert result.reply.intent == Intent.SERVICE_INQUIRY


@pytest.mark.asyncio
async def test_end_call_builds_summary(agent, clock, business_id):
    call = await connected_call(agent, business_id, caller_name="Pat")
    await agent.process_audio_input(call.id, b"this is an emergency, my pipe broke")
    clock.advance(65)

    summary = await agent.end_call(call.id)

    assert summary.duration == 65
    assert summary.user_turns == 1
    assert summary.text == (
        "Call with Pat lasted 65 seconds. Customer had 1 interactions. "
        "Primary topics: emergency. Call was transferred due to: emergency."
    )
    assert call.status == CallStatus.TRANSFERRED
    assert call.end_reason == "caller_hangup"
    assert agent.get_active_calls() == []
    assert agent.metrics.transferred_calls == 1
    assert await agent.end_call(call.id) is summary


@pytest.mark.asyncio
async def test_unanswered_call_counts_as_missed(agent, business_id):
    incoming = IncomingCall(from_number=CALLER, to_number="+15550100", business_id=business_id)
    call = await agent.handle_incoming_call(incoming)

    await agent.end_call(call.id, "caller_abandoned")

    assert call.status == CallStatus.FAILED
    assert agent.metrics.missed_calls == 1
    assert agent.metrics.answered_calls == 0


@pytest.mark.asyncio
async def test_hold_and_resume(agent, business_id):
    call = await connected_call(agent, business_id)

    await agent.hold_call(call.id)
    assert call.status == CallStatus.ON_HOLD
    with pytest.raises(InvalidInputError):
        await agent.process_audio_input(call.id, b"hello")
    await agent.resume_call(call.id)
    assert call.status == CallStatus.CONNECTED

    with pytest.raises(InvalidInputError):
        await agent.resume_call(call.id)


@pytest.mark.asyncio
async def test_finished_call_cannot_be_answered(agent, business_id):
    call = await connected_call(agent, business_id)
    await agent.end_call(call.id)

    with pytest.raises(InvalidStateTransitionError):
        await agent.answer_call(call.id)


@pytest.mark.asyncio
async def test_metrics_analysis(agent, clock, business_id):
    for _ in range(2):
        call = await connected_call(agent, business_id)
        await agent.process_audio_input(call.id, b"Can I book a visit tomorrow at 10am")
        clock.advance(90)
        await agent.end_call(call.id)

    analysis = agent.analyze_metrics()

    assert analysis.answer_rate == 100.0
    assert analysis.conversion_rate == 100.0
    assert analysis.escalation_rate == 0.0
    assert analysis.average_call_duration == "1m 30s"
    assert analysis.performance == "Excellent"
    report = agent.daily_report()
    assert report["total_calls"] == 2
    assert report["appointments_booked"] == 2


@pytest.mark.asyncio
async def test_overdue_calls_make_agent_unhealthy(business_id, conversation_handler, clock):
    config = PhoneAgentConfig(business_id=business_id, max_call_duration=60)
    agent = PhoneAgent(config, conversation_handler, PassthroughSpeechCodec(), clock=clock)
    call = await connected_call(agent, business_id)

    assert agent.is_healthy() is True
    clock.advance(61)
    assert agent.get_overdue_calls() == [call]
    assert agent.is_healthy() is False


def test_format_duration():
    assert format_duration(0) == "0m 0s"
    assert format_duration(125.4) == "2m 5s"
