"""
Conversation state machine.

``ConversationHandler`` owns every live conversation. Each inbound message is
appended to the history, analysed by the intent extractor, merged into the
conversation state and answered from a template chosen by intent and filled
from the business context. Replies may carry actions; actions change the
conversation state locally and publish workflow events.

Messages for one conversation are handled strictly in arrival order by a
per-conversation lock. A failure while producing a reply never escapes
``process_message``: the caller gets a scripted escalation reply instead.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol

from callflow.config.constants import CLOSED_CONVERSATION_LIMIT, LOGGER_NAME
from callflow.core.context_cache import ContextCache
from callflow.core.intent_extractor import IntentClassifier, PatternIntentExtractor
from callflow.errors import ConversationClosedError, ConversationNotFoundError
from callflow.models.business import BusinessContext
from callflow.models.conversation import (
    Channel,
    Conversation,
    ConversationAction,
    ConversationResponse,
    ConversationStatus,
    Intent,
    MessageAnalysis,
    MessageType,
    Sentiment,
    Urgency,
)

logger = logging.getLogger(LOGGER_NAME)

CLARIFICATION_TEXT = "I didn't catch that. Could you please repeat what you said?"
FALLBACK_TEXT = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Let me connect you with a human agent who can help you better."
)

# Workflow events published after an action has run
ACTION_EVENTS = {
    "check_availability": "availability_requested",
    "gather_requirements": "quote_requested",
    "book_appointment": "appointment_requested",
    "capture_lead": "lead_captured",
    "escalate_emergency": "emergency_escalated",
}

LEAD_ENTITIES = ("name", "phone", "email")


class EventPublisher(Protocol):
    async def dispatch_event(
        self, event: str, business_id: str, context: Optional[Dict[str, Any]] = None
    ) -> List[str]: ...


ActionHandler = Callable[[Conversation, ConversationAction], Awaitable[None]]


def clarification_response() -> ConversationResponse:
    return ConversationResponse(
        text=CLARIFICATION_TEXT, intent=Intent.CLARIFICATION_REQUEST, confidence=0.8
    )


def fallback_response() -> ConversationResponse:
    return ConversationResponse(
        text=FALLBACK_TEXT,
        intent=Intent.ESCALATION_REQUEST,
        confidence=0.5,
        escalation_required=True,
        transfer_reason="technical_error",
    )


def _join(items) -> str:
    items = [str(item).replace("_", " ") for item in items]
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    return ", ".join(items[:-1]) + f" and {items[-1]}"


class ConversationHandler:
    """Drives conversations from first message to completion.

    Args:
        context_cache: Source of business context snapshots
        extractor: Intent classifier, defaults to the pattern rules
        event_publisher: Optional workflow engine receiving action events
        max_closed_conversations: Completed conversations kept for history
            lookups; the oldest are evicted first
    """

    def __init__(
        self,
        context_cache: ContextCache,
        extractor: Optional[IntentClassifier] = None,
        event_publisher: Optional[EventPublisher] = None,
        max_closed_conversations: int = CLOSED_CONVERSATION_LIMIT,
    ):
        if max_closed_conversations < 1:
            raise ValueError("max_closed_conversations must be at least 1")
        self.context_cache = context_cache
        self.extractor = extractor or PatternIntentExtractor()
        self.event_publisher = event_publisher
        self.conversations: Dict[str, Conversation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.max_closed_conversations = max_closed_conversations
        self._closed: Deque[str] = deque()

        self.action_handlers: Dict[str, ActionHandler] = {
            "escalate_emergency": self._handle_escalate_emergency,
            "end_conversation": self._handle_end_conversation,
            "book_appointment": self._handle_book_appointment,
            "capture_lead": self._handle_capture_lead,
        }

    # Lifecycle

    async def start_conversation(
        self,
        business_id: str,
        channel: Channel = Channel.PHONE,
        customer_id: Optional[str] = None,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(business_id=business_id, channel=channel, customer_id=customer_id)
        conversation.customer_info.phone = customer_phone
        conversation.customer_info.name = customer_name
        self.conversations[conversation.id] = conversation
        self._locks[conversation.id] = asyncio.Lock()
        conversation.add_message(MessageType.SYSTEM, f"Conversation started on {channel.value}")
        logger.info(f"Started conversation {conversation.id} for business {business_id}")
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        try:
            return self.conversations[conversation_id]
        except KeyError:
            raise ConversationNotFoundError(conversation_id) from None

    def get_message_history(self, conversation_id: str):
        return list(self.get_conversation(conversation_id).messages)

    def get_active_conversations(self) -> List[Conversation]:
        return [c for c in self.conversations.values() if c.status != ConversationStatus.COMPLETED]

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def end_conversation(self, conversation_id: str, reason: str = "natural_end") -> Conversation:
        """Complete a conversation; ending a completed conversation is a no-op."""
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            self._complete(conversation, reason)
        return conversation

    def _complete(self, conversation: Conversation, reason: str) -> None:
        if conversation.is_closed:
            return
        conversation.transition_to(ConversationStatus.COMPLETED)
        conversation.end_reason = reason
        conversation.add_message(MessageType.SYSTEM, f"Conversation ended: {reason}", terminal=True)
        logger.info(f"Conversation {conversation.id} completed ({reason})")
        self._closed.append(conversation.id)
        while len(self._closed) > self.max_closed_conversations:
            evicted = self._closed.popleft()
            self.conversations.pop(evicted, None)
            self._locks.pop(evicted, None)

    async def hold_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            conversation.transition_to(ConversationStatus.ON_HOLD)
            conversation.add_message(MessageType.SYSTEM, "Conversation placed on hold")
        return conversation

    async def resume_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            conversation.transition_to(ConversationStatus.ACTIVE)
            conversation.add_message(MessageType.SYSTEM, "Conversation resumed")
        return conversation

    async def transfer_conversation(self, conversation_id: str, reason: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            self._transfer(conversation, reason)
        return conversation

    def _transfer(self, conversation: Conversation, reason: str) -> None:
        if conversation.status == ConversationStatus.TRANSFERRED:
            return
        conversation.transition_to(ConversationStatus.TRANSFERRED)
        conversation.transfer_reason = reason
        conversation.add_message(MessageType.SYSTEM, f"Conversation transferred: {reason}")
        logger.info(f"Conversation {conversation.id} transferred ({reason})")

    async def record_agent_message(
        self, conversation_id: str, text: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an agent utterance that was not produced by ``process_message``."""
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            conversation.add_message(MessageType.AGENT, text, metadata)

    async def record_exchange(
        self,
        conversation_id: str,
        user_text: str,
        response: ConversationResponse,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a user turn answered outside the normal reply pipeline."""
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            conversation.add_message(MessageType.USER, user_text, metadata)
            self._log_reply(conversation, response)
            conversation.intent = response.intent
            if response.intent not in conversation.intents_seen:
                conversation.intents_seen.append(response.intent)

    # Message processing

    async def process_message(
        self, conversation_id: str, text: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationResponse:
        """Handle one inbound message and return the reply.

        Exactly one user message and one agent message are appended per call,
        including when reply generation fails.

        Args:
            conversation_id: Target conversation
            text: Raw utterance or chat text
            metadata: Optional channel metadata stored on the user message

        Returns:
            The reply with its intent, confidence and actions

        Raises:
            ConversationNotFoundError: Unknown conversation id
            ConversationClosedError: The conversation is already completed
        """
        conversation = self.get_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            if conversation.is_closed:
                raise ConversationClosedError(f"Conversation '{conversation_id}' is completed")

            conversation.add_message(MessageType.USER, text, metadata)
            agent_logged = False
            try:
                if not text or not text.strip():
                    response = clarification_response()
                else:
                    analysis = self.extractor.analyze(text)
                    context = await self.context_cache.get(conversation.business_id)
                    self._detect_service(analysis, text, context)
                    self._merge_state(conversation, analysis)
                    response = self._generate_response(conversation, analysis, context)

                self._log_reply(conversation, response)
                agent_logged = True
                await self._execute_actions(conversation, response.actions)
                return response
            except Exception as e:
                logger.error(
                    f"Error processing message for conversation {conversation_id}: {e}",
                    exc_info=True,
                )
                response = fallback_response()
                if not agent_logged:
                    self._log_reply(conversation, response)
                return response

    @staticmethod
    def _log_reply(conversation: Conversation, response: ConversationResponse) -> None:
        conversation.add_message(
            MessageType.AGENT,
            response.text,
            {
                "intent": response.intent.value,
                "confidence": response.confidence,
                "actions": [action.type for action in response.actions],
            },
        )

    @staticmethod
    def _detect_service(analysis: MessageAnalysis, text: str, context: BusinessContext) -> None:
        lowered = text.lower()
        for service in context.business_profile.services:
            if service.replace("_", " ").lower() in lowered:
                analysis.entities.setdefault("service", service)
                return

    @staticmethod
    def _merge_state(conversation: Conversation, analysis: MessageAnalysis) -> None:
        conversation.intent = analysis.intent
        if analysis.intent not in conversation.intents_seen:
            conversation.intents_seen.append(analysis.intent)
        conversation.entities.update(analysis.entities)
        conversation.sentiment = analysis.sentiment
        if analysis.sentiment == Sentiment.NEGATIVE:
            conversation.raise_urgency(Urgency.HIGH)
        for key in LEAD_ENTITIES:
            if key in analysis.entities:
                setattr(conversation.customer_info, key, analysis.entities[key])

    def _generate_response(
        self, conversation: Conversation, analysis: MessageAnalysis, context: BusinessContext
    ) -> ConversationResponse:
        builders = {
            Intent.GREETING: self._greeting_response,
            Intent.APPOINTMENT_BOOKING: self._booking_response,
            Intent.SERVICE_INQUIRY: self._service_response,
            Intent.PRICING_REQUEST: self._pricing_response,
            Intent.EMERGENCY: self._emergency_response,
            Intent.GOODBYE: self._goodbye_response,
        }
        builder = builders.get(analysis.intent, self._general_response)
        response = builder(conversation, analysis, context)

        lead = {key: analysis.entities[key] for key in LEAD_ENTITIES if key in analysis.entities}
        if lead and analysis.intent != Intent.GOODBYE:
            response.actions.append(ConversationAction(type="capture_lead", data=lead))
        return response

    def _greeting_response(self, conversation, analysis, context) -> ConversationResponse:
        profile = context.business_profile
        name = conversation.customer_info.name
        return ConversationResponse(
            text=(
                f"Hello{', ' + name if name else ''}! Thank you for calling {profile.name}. "
                "How can I help you today?"
            ),
            intent=Intent.GREETING,
            confidence=analysis.confidence,
            suggested_responses=[
                "I'd like to schedule an appointment",
                "What services do you offer?",
                "I need a quote",
            ],
        )

    def _booking_response(self, conversation, analysis, context) -> ConversationResponse:
        profile = context.business_profile
        entities = conversation.entities
        date, time, service = entities.get("date"), entities.get("time"), entities.get("service")
        details = {key: value for key, value in (("date", date), ("time", time), ("service", service)) if value}
        actions = [ConversationAction(type="check_availability", data=dict(details))]

        if date and time:
            what = f" for {service.replace('_', ' ')}" if service else ""
            text = (
                f"I can book you in{what} {date} at {time}. "
                f"You'll receive a confirmation from {profile.name} shortly."
            )
            actions.append(ConversationAction(type="book_appointment", data=dict(details)))
            appointment = details
        else:
            text = (
                f"I'd be happy to help you schedule an appointment. We offer {_join(profile.services)}. "
                f"Our available times are {_join(profile.available_time_slots)}. "
                "Which service and time work best for you?"
            )
            appointment = None

        return ConversationResponse(
            text=text,
            intent=Intent.APPOINTMENT_BOOKING,
            confidence=analysis.confidence,
            actions=actions,
            suggested_responses=list(profile.available_time_slots[:3]),
            appointment_details=appointment,
        )

    def _service_response(self, conversation, analysis, context) -> ConversationResponse:
        profile = context.business_profile
        service = conversation.entities.get("service")
        if service:
            text = (
                f"Yes, {profile.name} provides {service.replace('_', ' ')}. "
                "Would you like to schedule an appointment?"
            )
        else:
            text = f"We offer {_join(profile.services)}. Which of these can we help you with?"
        return ConversationResponse(
            text=text,
            intent=Intent.SERVICE_INQUIRY,
            confidence=analysis.confidence,
            suggested_responses=[s.replace("_", " ").capitalize() for s in profile.services[:3]],
        )

    def _pricing_response(self, conversation, analysis, context) -> ConversationResponse:
        average = context.financial_snapshot.average_job_value
        if average > 0:
            opener = f"Pricing depends on the job; our typical job comes to about ${average:,.0f}."
        else:
            opener = "Pricing depends on the scope of the work."
        return ConversationResponse(
            text=f"{opener} Can you tell me a bit more about what you need so I can prepare an estimate?",
            intent=Intent.PRICING_REQUEST,
            confidence=analysis.confidence,
            actions=[
                ConversationAction(
                    type="gather_requirements",
                    data={"service": conversation.entities.get("service")},
                )
            ],
        )

    def _emergency_response(self, conversation, analysis, context) -> ConversationResponse:
        return ConversationResponse(
            text=(
                "I understand this is an emergency. I'm escalating your call to our team "
                "right away so someone can help you immediately."
            ),
            intent=Intent.EMERGENCY,
            confidence=analysis.confidence,
            actions=[
                ConversationAction(
                    type="escalate_emergency",
                    data={"reason": "emergency_situation"},
                    execute_immediately=True,
                )
            ],
            escalation_required=True,
            transfer_reason="emergency_situation",
        )

    def _goodbye_response(self, conversation, analysis, context) -> ConversationResponse:
        return ConversationResponse(
            text=f"Thank you for calling {context.business_profile.name}. Have a great day!",
            intent=Intent.GOODBYE,
            confidence=analysis.confidence,
            actions=[ConversationAction(type="end_conversation", data={"reason": "customer_goodbye"})],
        )

    def _general_response(self, conversation, analysis, context) -> ConversationResponse:
        profile = context.business_profile
        hours = profile.business_hours
        return ConversationResponse(
            text=(
                f"I'd be glad to help. {profile.name} is open from {hours.start} to {hours.end}. "
                "Could you tell me a little more about what you need?"
            ),
            intent=analysis.intent,
            confidence=0.6,
        )

    # Actions

    async def _execute_actions(
        self, conversation: Conversation, actions: List[ConversationAction]
    ) -> None:
        ordered = sorted(actions, key=lambda action: not action.execute_immediately)
        for action in ordered:
            try:
                handler = self.action_handlers.get(action.type)
                if handler is not None:
                    await handler(conversation, action)
                await self._publish(conversation, action)
            except Exception as e:
                logger.error(
                    f"Action {action.type} failed for conversation {conversation.id}: {e}",
                    exc_info=True,
                )

    async def _publish(self, conversation: Conversation, action: ConversationAction) -> None:
        event = ACTION_EVENTS.get(action.type)
        if event is None or self.event_publisher is None:
            return
        context = {
            **conversation.entities,
            **{k: v for k, v in action.data.items() if v is not None},
            "conversation_id": conversation.id,
            "channel": conversation.channel.value,
            "customer_name": conversation.customer_info.name,
            "customer_phone": conversation.customer_info.phone,
            "customer_email": conversation.customer_info.email,
        }
        execution_ids = await self.event_publisher.dispatch_event(event, conversation.business_id, context)
        if execution_ids:
            logger.info(f"Event {event} queued {len(execution_ids)} workflow run(s)")

    async def _handle_escalate_emergency(self, conversation, action) -> None:
        conversation.raise_urgency(Urgency.URGENT)
        self._transfer(conversation, action.data.get("reason", "emergency_situation"))

    async def _handle_end_conversation(self, conversation, action) -> None:
        self._complete(conversation, action.data.get("reason", "natural_end"))

    async def _handle_book_appointment(self, conversation, action) -> None:
        conversation.add_message(
            MessageType.SYSTEM,
            f"Appointment requested: {action.data.get('date')} at {action.data.get('time')}",
            {"appointment": action.data},
        )

    async def _handle_capture_lead(self, conversation, action) -> None:
        logger.info(f"Lead captured in conversation {conversation.id}: {sorted(action.data)}")
