"""
Unit tests for the conversation state machine.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from callflow.core.conversation_handler import (
    CLARIFICATION_TEXT,
    FALLBACK_TEXT,
    ConversationHandler,
)
from callflow.errors import ConversationClosedError, ConversationNotFoundError
from callflow.models.conversation import (
    Channel,
    ConversationStatus,
    Intent,
    MessageType,
    Urgency,
)


def count(conversation, message_type):
    return sum(1 for message in conversation.messages if message.type == message_type)


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.dispatch_event = AsyncMock(return_value=["exec_1"])
    return publisher


@pytest.fixture
def handler(context_cache, publisher):
    return ConversationHandler(context_cache, event_publisher=publisher)


@pytest.mark.asyncio
async def test_start_conversation_logs_system_message(handler, business_id):
    conversation = await handler.start_conversation(business_id, channel=Channel.CHAT)

    assert conversation.status == ConversationStatus.ACTIVE
    assert conversation.channel == Channel.CHAT
    assert [m.type for m in conversation.messages] == [MessageType.SYSTEM]
    assert handler.get_active_conversations() == [conversation]


@pytest.mark.asyncio
async def test_each_message_adds_one_user_and_one_agent_entry(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    for text in ["Hello", "What services do you offer?", "How much does it cost?"]:
        await handler.process_message(conversation.id, text)

    assert count(conversation, MessageType.USER) == 3
    assert count(conversation, MessageType.AGENT) == 3


@pytest.mark.asyncio
async def test_booking_with_date_and_time_books_appointment(handler, publisher, business_id):
    conversation = await handler.start_conversation(business_id, customer_phone="+15551234567")

    response = await handler.process_message(
        conversation.id, "I need to schedule an appointment for tomorrow at 2pm"
    )

    assert response.intent == Intent.APPOINTMENT_BOOKING
    assert response.confidence == 0.9
    assert response.appointment_details == {"date": "tomorrow", "time": "2pm"}
    assert [a.type for a in response.actions] == ["check_availability", "book_appointment"]
    assert conversation.entities["date"] == "tomorrow"

    events = [c.args[0] for c in publisher.dispatch_event.await_args_list]
    assert events == ["availability_requested", "appointment_requested"]
    context = publisher.dispatch_event.await_args_list[1].args[2]
    assert context["customer_phone"] == "+15551234567"
    assert context["time"] == "2pm"


@pytest.mark.asyncio
async def test_booking_without_time_lists_services_and_slots(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "Can I book a visit?")

    assert "drain cleaning, water heater and leak repair" in response.text
    assert response.appointment_details is None
    assert [a.type for a in response.actions] == ["check_availability"]


@pytest.mark.asyncio
async def test_service_mentioned_in_text_is_detected(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "Do you provide leak repair?")

    assert response.intent == Intent.SERVICE_INQUIRY
    assert conversation.entities["service"] == "leak_repair"
    assert "leak repair" in response.text


@pytest.mark.asyncio
async def test_pricing_uses_average_job_value(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "Can I get a quote?")

    assert response.intent == Intent.PRICING_REQUEST
    assert "$300" in response.text
    assert response.actions[0].type == "gather_requirements"


@pytest.mark.asyncio
async def test_emergency_transfers_conversation(handler, publisher, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "This is urgent, water everywhere")

    assert response.intent == Intent.EMERGENCY
    assert response.escalation_required is True
    assert conversation.status == ConversationStatus.TRANSFERRED
    assert conversation.urgency == Urgency.URGENT
    event, event_business, _ = publisher.dispatch_event.await_args.args
    assert (event, event_business) == ("emergency_escalated", business_id)


@pytest.mark.asyncio
async def test_contact_details_capture_lead(handler, publisher, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(
        conversation.id, "Hi, I'm Dana Reyes and my email is dana@example.com"
    )

    lead = next(a for a in response.actions if a.type == "capture_lead")
    assert lead.data == {"name": "Dana Reyes", "email": "dana@example.com"}
    assert conversation.customer_info.email == "dana@example.com"
    assert publisher.dispatch_event.await_args.args[0] == "lead_captured"


@pytest.mark.asyncio
async def test_goodbye_completes_conversation(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "Thanks, bye")

    assert response.intent == Intent.GOODBYE
    assert conversation.status == ConversationStatus.COMPLETED
    assert conversation.end_reason == "customer_goodbye"
    with pytest.raises(ConversationClosedError):
        await handler.process_message(conversation.id, "One more thing")


@pytest.mark.asyncio
async def test_negative_sentiment_raises_urgency(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    await handler.process_message(conversation.id, "I am very upset about the last visit")

    assert conversation.urgency == Urgency.HIGH


@pytest.mark.asyncio
async def test_empty_text_asks_for_clarification(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "   ")

    assert response.text == CLARIFICATION_TEXT
    assert response.intent == Intent.CLARIFICATION_REQUEST
    assert count(conversation, MessageType.AGENT) == 1


@pytest.mark.asyncio
async def test_context_failure_returns_fallback(context_cache, business_id):
    handler = ConversationHandler(context_cache)
    conversation = await handler.start_conversation(business_id)
    context_cache.get = AsyncMock(side_effect=RuntimeError("cache exploded"))

    response = await handler.process_message(conversation.id, "Hello")

    assert response.text == FALLBACK_TEXT
    assert response.escalation_required is True
    assert response.transfer_reason == "technical_error"
    assert count(conversation, MessageType.USER) == 1
    assert count(conversation, MessageType.AGENT) == 1


@pytest.mark.asyncio
async def test_failing_publisher_does_not_break_reply(context_cache, business_id):
    publisher = MagicMock()
    publisher.dispatch_event = AsyncMock(side_effect=RuntimeError("engine down"))
    handler = ConversationHandler(context_cache, event_publisher=publisher)
    conversation = await handler.start_conversation(business_id)

    response = await handler.process_message(conversation.id, "Can I get a quote?")

    assert response.intent == Intent.PRICING_REQUEST
    assert count(conversation, MessageType.AGENT) == 1


@pytest.mark.asyncio
async def test_hold_resume_and_end(handler, business_id):
    conversation = await handler.start_conversation(business_id)

    await handler.hold_conversation(conversation.id)
    assert conversation.status == ConversationStatus.ON_HOLD
    await handler.resume_conversation(conversation.id)
    assert conversation.status == ConversationStatus.ACTIVE

    await handler.end_conversation(conversation.id, "caller_hangup")
    await handler.end_conversation(conversation.id, "ignored")

    assert conversation.end_reason == "caller_hangup"
    assert conversation.messages[-1].content == "Conversation ended: caller_hangup"
    assert handler.get_active_conversations() == []


@pytest.mark.asyncio
async def test_unknown_conversation(handler):
    with pytest.raises(ConversationNotFoundError):
        await handler.process_message("conv_missing", "Hello")


@pytest.mark.asyncio
async def test_oldest_closed_conversations_are_evicted(context_cache, business_id):
    handler = ConversationHandler(context_cache, max_closed_conversations=2)
    live = await handler.start_conversation(business_id)
    closed = [await handler.start_conversation(business_id) for _ in range(3)]

    for conversation in closed:
        await handler.end_conversation(conversation.id)

    with pytest.raises(ConversationNotFoundError):
        handler.get_conversation(closed[0].id)
    assert handler.get_conversation(closed[1].id) is closed[1]
    assert handler.get_conversation(closed[2].id) is closed[2]
    assert handler.get_active_conversations() == [live]
    assert set(handler._locks) == {live.id, closed[1].id, closed[2].id}
